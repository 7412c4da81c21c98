from __future__ import annotations

import os
from pathlib import Path


def _parse_env_line(line: str) -> tuple[str, str] | None:
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    if line.startswith("export "):
        line = line[len("export "):].lstrip()
    if "=" not in line:
        return None
    key, value = line.split("=", 1)
    key = key.strip()
    value = value.strip()
    if not key:
        return None
    # Strip optional quotes: KEY="value" or KEY='value'
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_env_if_present(*, override: bool = False, search: list[Path] | None = None) -> list[Path]:
    """Load .env files into process env if present.

    - Searches the working directory `.env`, then repo root `.env`, then `backend/.env`.
    - Does NOT override existing environment variables unless override=True.
    - Returns the files that were read.
    """

    # backend/app/core/env.py -> backend/app/core -> backend/app -> backend -> repo root
    repo_root = Path(__file__).resolve().parents[3]
    candidates = search if search is not None else [
        Path.cwd() / ".env",
        repo_root / ".env",
        repo_root / "backend" / ".env",
    ]

    loaded: list[Path] = []
    seen: set[Path] = set()
    for p in candidates:
        resolved = p.resolve()
        if resolved in seen or not p.exists() or not p.is_file():
            continue
        seen.add(resolved)
        try:
            content = p.read_text(encoding="utf-8")
        except OSError:
            continue
        loaded.append(p)
        for raw in content.splitlines():
            parsed = _parse_env_line(raw)
            if not parsed:
                continue
            k, v = parsed
            if not override and k in os.environ:
                continue
            os.environ[k] = v
    return loaded
