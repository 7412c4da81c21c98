from __future__ import annotations

"""Best-effort git snapshots of the dataset file.

Subscribes to the store's append notification. For each appended block:
- git add <csv>
- commit with the templated message when something is staged
- optionally push to the configured branch (10 s timeout)

Work runs on one background thread so the ingestion loop never waits on git.
Appends arriving while a commit is running collapse into one commit of the
latest block. Any failure is logged and dropped.
"""

import logging
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from snapshot.core.errors import GitCommandError, SnapshotError
from tracker.core.state import BlockRecord

logger = logging.getLogger(__name__)

PUSH_TIMEOUT_SECONDS = 10.0
COMMAND_TIMEOUT_SECONDS = 30.0

Runner = Callable[[list[str], Path, float], tuple[int, str]]


def _run(cmd: list[str], cwd: Path, timeout: float) -> tuple[int, str]:
    try:
        p = subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            shell=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise GitCommandError(cmd, None, f"timed out after {timeout:.0f}s") from e
    except OSError as e:
        raise GitCommandError(cmd, None, str(e)) from e
    out = (p.stdout or "") + (p.stderr or "")
    return p.returncode, out.strip()


@dataclass(frozen=True, slots=True)
class GitSnapshotConfig:
    csv_file: Path
    message_template: str = "Update Bitcoin bitmap data - Block {blockNumber}"
    push: bool = True
    branch: str = "main"
    repo_dir: Optional[Path] = None


class GitSnapshotter:
    """Store subscriber that commits the dataset after each append."""

    def __init__(self, config: GitSnapshotConfig, *, runner: Runner = _run, background: bool = True) -> None:
        self.config = config
        self._runner = runner
        self._csv_path = config.csv_file.resolve()
        self._repo_dir = config.repo_dir or self._csv_path.parent
        self._lock = threading.Lock()
        self._latest_block: Optional[int] = None
        self._pending: Optional[Future] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="git-snapshot") if background else None

    def on_append(self, record: BlockRecord) -> Optional[Future]:
        """Store listener: fire and forget, at most one commit queued."""
        if self._executor is None:
            self._commit_quietly(record.block_number)
            return None
        with self._lock:
            self._latest_block = record.block_number
            if self._pending is None:
                self._pending = self._executor.submit(self._drain)
            return self._pending

    def commit(self, block_number: int) -> bool:
        """
        Stage and commit the dataset; returns True if a commit was made.

        Raises GitCommandError on git failure (push failures excepted).
        """
        csv_path = str(self._csv_path)
        self._git(["git", "add", csv_path])

        # `git diff --cached --quiet` exits 1 when something is staged.
        code, _ = self._runner(["git", "diff", "--cached", "--quiet", "--", csv_path], self._repo_dir, COMMAND_TIMEOUT_SECONDS)
        if code == 0:
            return False

        message = self.config.message_template.replace("{blockNumber}", str(block_number))
        self._git(["git", "commit", "-m", message, "--", csv_path])
        logger.info(f"Git commit: Block {block_number}")

        if self.config.push:
            try:
                self._git(["git", "push", "origin", self.config.branch], timeout=PUSH_TIMEOUT_SECONDS)
                logger.info(f"Pushed to remote: Block {block_number}")
            except GitCommandError as e:
                logger.warning(f"Git push failed: {e}")
        return True

    def close(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _drain(self) -> bool:
        committed = False
        while True:
            with self._lock:
                block = self._latest_block
                self._latest_block = None
                if block is None:
                    self._pending = None
                    return committed
            committed = self._commit_quietly(block) or committed

    def _commit_quietly(self, block_number: int) -> bool:
        try:
            return self.commit(block_number)
        except SnapshotError as e:
            logger.warning(f"Git auto-commit failed: {e}")
            return False

    def _git(self, cmd: list[str], *, timeout: float = COMMAND_TIMEOUT_SECONDS) -> str:
        code, out = self._runner(cmd, self._repo_dir, timeout)
        if code != 0:
            raise GitCommandError(cmd, code, out)
        return out
