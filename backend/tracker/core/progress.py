from __future__ import annotations

"""Durable backfill progress and the confirmed-empty ledger.

Both files are tiny. The progress document is always rewritten as a full
snapshot (temp file + os.replace); the ledger is append-only.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from tracker.core.errors import StoreError
from tracker.core.state import ProgressRecord

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Highest block processed by the backfill, plus a running total."""

    def __init__(self, path: Path, *, start_block: int, save_every: int = 50) -> None:
        self.path = Path(path)
        self.start_block = start_block
        self.save_every = save_every
        self.record = self._fresh()

    @property
    def last_processed_block(self) -> int:
        return self.record.last_processed_block

    @property
    def total_processed(self) -> int:
        return self.record.total_processed

    def load(self) -> ProgressRecord:
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                self.record = ProgressRecord.model_validate(raw)
                logger.info(f"Loaded backfill progress: {self.record.last_processed_block}")
                return self.record
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Could not load backfill progress ({e}), starting fresh")
        self.record = self._fresh()
        return self.record

    def advance(self, block_number: int) -> None:
        """Count one completed backfill block; the marker only moves forward."""
        if block_number > self.record.last_processed_block:
            self.record.last_processed_block = block_number
        self.record.total_processed += 1
        if self.save_every and self.record.total_processed % self.save_every == 0:
            self.save()

    def skip_to(self, block_number: int) -> None:
        """Move the marker forward without counting blocks; never moves it back."""
        if block_number > self.record.last_processed_block:
            self.record.last_processed_block = block_number

    def save(self) -> None:
        snapshot = self.record.model_dump(by_alias=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot, fh, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            logger.error(f"Could not save backfill progress: {e}")

    def _fresh(self) -> ProgressRecord:
        return ProgressRecord(last_processed_block=self.start_block - 1)


class EmptyBlockLedger:
    """Append-only list of confirmed-empty block numbers, one per line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> set[int]:
        if not self.path.exists():
            return set()
        blocks: set[int] = set()
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Failed to read {self.path}: {e}") from e
        for line in text.splitlines():
            line = line.strip()
            if line.isdigit():
                blocks.add(int(line))
        logger.info(f"Loaded {len(blocks)} confirmed-empty blocks from {self.path}")
        return blocks

    def record(self, block_number: int) -> None:
        self.record_many([block_number])

    def record_many(self, block_numbers: Iterable[int]) -> None:
        lines = "".join(f"{n}\n" for n in block_numbers)
        if not lines:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(lines)
        except OSError as e:
            raise StoreError(f"Failed to append to {self.path}: {e}") from e
