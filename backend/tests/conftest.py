from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

import pytest


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/` packages are importable as top-level `app`, `tracker`, `snapshot`.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from tracker.core.errors import FetchError  # noqa: E402
from tracker.core.state import CredentialSlot, FetchResult, NotFound  # noqa: E402


UTC = timezone.utc
KEY_A = "key-aaaaaaaaaaaaaaaa"
KEY_B = "key-bbbbbbbbbbbbbbbb"


class FakeClock:
    """Manual clock; its sleep() advances time instead of waiting."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class ScriptedClient:
    """Stand-in for BitmapClient.

    `results` maps a block number to the results returned on successive
    fetches; the last one repeats.
    """

    def __init__(
        self,
        results: Optional[dict[int, Iterable[FetchResult]]] = None,
        *,
        default: FetchResult = NotFound(),
        key_info: Optional[dict[int, dict]] = None,
        on_fetch=None,
    ) -> None:
        self.results = {k: list(v) for k, v in (results or {}).items()}
        self.default = default
        self.key_infos = key_info or {}
        self.on_fetch = on_fetch
        self.calls: list[tuple[int, int]] = []

    async def fetch(self, block_number: int, slot: CredentialSlot) -> FetchResult:
        self.calls.append((block_number, slot.index))
        if self.on_fetch is not None:
            self.on_fetch(block_number)
        queue = self.results.get(block_number)
        if not queue:
            return self.default
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def key_info(self, slot: CredentialSlot) -> dict:
        info = self.key_infos.get(slot.index)
        if info is None:
            raise FetchError(f"API error for {slot.label}: 1001 - Invalid API key")
        return info

    async def close(self) -> None:
        return None

    @property
    def fetched_blocks(self) -> list[int]:
        return [block for block, _ in self.calls]


def make_slot(clock: FakeClock, *, index: int = 0, api_key: str = KEY_A, **kwargs) -> CredentialSlot:
    return CredentialSlot(
        index=index,
        api_key=api_key,
        daily_limit=kwargs.pop("daily_limit", 2000),
        reset_at=clock.now + timedelta(days=1),
        **kwargs,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def csv_path(tmp_path: Path) -> Path:
    return tmp_path / "bitmap_data.csv"
