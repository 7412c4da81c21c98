from __future__ import annotations

"""Dataset store: the bitmap CSV file.

Storage contract:
- Append-only during normal operation: one line per found block.
- Periodic sort + dedupe rewrites the whole file atomically
  (temp file in the same directory, then os.replace).
- Readers only ever see a complete file.
- First occurrence of a block number wins.

The store emits an "appended" notification after each successful write.
Subscriber failures are logged and never reach the writer.
"""

import csv
import io
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from tracker.core.errors import StoreError
from tracker.core.state import BlockRecord

logger = logging.getLogger(__name__)

HEADER = ("block_number", "inscription_id", "sat_number")
LEGACY_MARKERS = ("status", "timestamp")

AppendListener = Callable[[BlockRecord], None]


@dataclass(slots=True)
class OpenResult:
    """What the store knows about processed blocks after opening the file."""
    stored: set[int] = field(default_factory=set)
    # Blocks a legacy-format file listed as attempted but without a bitmap.
    legacy_empty: set[int] = field(default_factory=set)
    order_ok: bool = True


def _parse_row(row: list[str]) -> Optional[BlockRecord]:
    if not row or not row[0].strip():
        return None
    try:
        block_number = int(row[0].strip())
    except ValueError:
        return None
    if block_number < 0:
        return None
    inscription_id = row[1].strip() if len(row) > 1 and row[1].strip() else None
    sat_number = None
    if len(row) > 2 and row[2].strip():
        try:
            sat_number = int(row[2].strip())
        except ValueError:
            sat_number = None
    return BlockRecord(block_number=block_number, inscription_id=inscription_id, sat_number=sat_number)


def _format_row(record: BlockRecord) -> list[str]:
    sat = str(record.sat_number) if record.sat_number is not None else ""
    return [str(record.block_number), record.inscription_id or "", sat]


class DatasetStore:
    """Single-writer CSV store for found bitmap blocks."""

    def __init__(self, path: Path, *, sort_every: int = 50) -> None:
        self.path = Path(path)
        self.sort_every = sort_every
        self.sort_pending = False
        self._appends_since_sort = 0
        self._listeners: list[AppendListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> OpenResult:
        """Create, migrate or load the file and report what it holds."""
        if not self.path.exists() or self.path.stat().st_size == 0:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write_atomic([], header=HEADER)
            logger.info(f"Created dataset file: {self.path}")
            return OpenResult()

        header = self._read_header()
        if any(marker in header for marker in LEGACY_MARKERS):
            logger.info("Converting dataset from legacy format to clean format...")
            return self.migrate_legacy()

        if header != HEADER:
            self._write_atomic(list(self._iter_records()), header=HEADER)
            logger.info(f"Dataset header upgraded to: {','.join(HEADER)}")

        result = OpenResult(stored=self.block_numbers())
        result.order_ok = self.validate_order()
        logger.info(f"Loaded {len(result.stored)} stored blocks from {self.path}")
        return result

    def migrate_legacy(self) -> OpenResult:
        """
        Rewrite a legacy file (block,id,status,timestamp...) in clean format.

        Keeps only rows with status 'success' and an inscription id. Every
        parsable block number counts as processed.
        """
        content = self._read_text()
        backup = self.path.with_name(f"{self.path.stem}_backup{self.path.suffix}")
        backup.write_text(content, encoding="utf-8")
        logger.info(f"Backup created: {backup}")

        result = OpenResult()
        kept: list[BlockRecord] = []
        rows = list(csv.reader(io.StringIO(content)))
        for row in rows[1:]:
            record = _parse_row(row)
            if record is None:
                continue
            status = row[2].strip() if len(row) > 2 else ""
            if status == "success" and record.inscription_id and record.inscription_id != '""':
                kept.append(BlockRecord(block_number=record.block_number, inscription_id=record.inscription_id))
                result.stored.add(record.block_number)

        for row in rows[1:]:
            record = _parse_row(row)
            if record is not None and record.block_number not in result.stored:
                result.legacy_empty.add(record.block_number)

        self._write_atomic(kept, header=HEADER)
        logger.info(
            f"Converted to clean format: {len(kept)} entries with bitmaps, "
            f"{len(result.stored | result.legacy_empty)} total processed blocks"
        )
        return result

    def subscribe(self, listener: AppendListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, record: BlockRecord) -> None:
        """Append one record. Never rewrites earlier lines."""
        try:
            with self.path.open("a", encoding="utf-8", newline="") as fh:
                csv.writer(fh, lineterminator="\n").writerow(_format_row(record))
        except OSError as e:
            raise StoreError(f"Failed to append block {record.block_number}: {e}") from e

        self._appends_since_sort += 1
        if self._appends_since_sort >= self.sort_every:
            self._appends_since_sort = 0
            self.sort_pending = True

        for listener in self._listeners:
            try:
                listener(record)
            except Exception:  # noqa: BLE001
                logger.warning(f"Append listener failed for block {record.block_number}", exc_info=True)

    def sort_and_dedupe(self) -> tuple[int, int]:
        """
        Sort rows by block number and drop repeated block numbers.

        Returns (rows_before, rows_after).
        """
        self.sort_pending = False
        if not self.path.exists():
            return (0, 0)

        records = list(self._iter_records())
        # Stable sort keeps the earliest line first among equal block numbers.
        records.sort(key=lambda r: r.block_number)

        unique: list[BlockRecord] = []
        seen: set[int] = set()
        for record in records:
            if record.block_number in seen:
                continue
            seen.add(record.block_number)
            unique.append(record)

        self._write_atomic(unique, header=HEADER)

        if len(unique) != len(records):
            logger.info(f"Dataset sorted and cleaned: {len(records)} -> {len(unique)} entries")
        else:
            logger.info(f"Dataset sorted: {len(unique)} entries in sequential order")
        return (len(records), len(unique))

    def validate_order(self) -> bool:
        """Linear scan for strictly increasing block numbers."""
        previous = -1
        violations = 0
        for record in self._iter_records():
            if record.block_number <= previous:
                violations += 1
            previous = record.block_number

        if violations:
            logger.warning(f"Dataset has {violations} out-of-order entries, scheduling sort...")
            self.sort_pending = True
            return False
        return True

    # ------------------------------------------------------------------
    # Reads (query layer)
    # ------------------------------------------------------------------

    def lookup(self, block_number: int) -> Optional[BlockRecord]:
        for record in self._iter_records():
            if record.block_number == block_number:
                return record
        return None

    def range(self, offset: int, count: int) -> list[BlockRecord]:
        if offset < 0 or count <= 0:
            return []
        out: list[BlockRecord] = []
        for i, record in enumerate(self._iter_records()):
            if i < offset:
                continue
            out.append(record)
            if len(out) >= count:
                break
        return out

    def tail(self, count: int) -> list[BlockRecord]:
        if count <= 0:
            return []
        records = list(self._iter_records())
        return records[-count:]

    def search(self, query: str, limit: Optional[int] = None) -> list[BlockRecord]:
        """Substring match on block number, inscription id or sat number."""
        needle = query.strip().lower()
        if not needle:
            return []
        out: list[BlockRecord] = []
        for record in self._iter_records():
            haystacks = (
                str(record.block_number),
                (record.inscription_id or "").lower(),
                str(record.sat_number) if record.sat_number is not None else "",
            )
            if any(needle in h for h in haystacks):
                out.append(record)
                if limit is not None and len(out) >= limit:
                    break
        return out

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def block_numbers(self) -> set[int]:
        return {record.block_number for record in self._iter_records()}

    def count(self) -> int:
        return sum(1 for _ in self._iter_records())

    def _iter_records(self) -> Iterator[BlockRecord]:
        if not self.path.exists():
            return
        rows = csv.reader(io.StringIO(self._read_text()))
        next(rows, None)  # header
        for row in rows:
            record = _parse_row(row)
            if record is not None:
                yield record

    def _read_header(self) -> tuple[str, ...]:
        first = self._read_text().split("\n", 1)[0]
        return tuple(col.strip().lower() for col in first.split(","))

    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Failed to read {self.path}: {e}") from e

    def _write_atomic(self, records: list[BlockRecord], *, header: tuple[str, ...]) -> None:
        directory = self.path.parent
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                writer = csv.writer(fh, lineterminator="\n")
                writer.writerow(header)
                for record in records:
                    writer.writerow(_format_row(record))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StoreError(f"Failed to rewrite {self.path}: {e}") from e
