from __future__ import annotations

"""Controlled errors for dataset snapshots (git auto-commit).

Operational intent:
- Snapshotting is best-effort and must never affect the dataset or the queues.
- Errors are logged by the subscriber and never reach the store.
"""


class SnapshotError(RuntimeError):
    """Base error for the snapshot subscriber; should be caught and logged."""


class GitCommandError(SnapshotError):
    """Raised when a git command exits non-zero or times out."""

    def __init__(self, cmd: list[str], returncode: int | None, output: str) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        super().__init__(f"{' '.join(cmd)} failed ({returncode}): {output[:100]}")
