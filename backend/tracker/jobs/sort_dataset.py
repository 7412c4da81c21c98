"""Maintenance job: sort, validate or list gaps in the bitmap dataset CSV."""
import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, List, Optional

# Ensure app modules are importable
sys.path.append(str(Path(__file__).resolve().parent.parent.parent))

from tracker.core.errors import StoreError  # noqa: E402
from tracker.core.store import DatasetStore  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ACTIONS = ("sort", "validate", "gaps")


def sequence_gaps(block_numbers: Iterable[int]) -> List[int]:
    """Block numbers missing between consecutive stored blocks."""
    ordered = sorted(set(block_numbers))
    gaps: List[int] = []
    for previous, current in zip(ordered, ordered[1:]):
        gaps.extend(range(previous + 1, current))
    return gaps


def report_gaps(gaps: List[int]) -> None:
    if not gaps:
        logger.info("No gaps found - sequence is complete")
        return
    logger.info(f"Found {len(gaps)} gaps in sequence")
    if len(gaps) <= 20:
        logger.info(f"Missing blocks: {', '.join(str(b) for b in gaps)}")
    else:
        head = ", ".join(str(b) for b in gaps[:10])
        tail = ", ".join(str(b) for b in gaps[-10:])
        logger.info(f"Missing blocks: {head}...{tail}")
        logger.info(f"First gap: {gaps[0]}, Last gap: {gaps[-1]}")


def sort_file(store: DatasetStore) -> int:
    backup = store.path.with_name(f"{store.path.stem}_unsorted_backup{store.path.suffix}")
    backup.write_bytes(store.path.read_bytes())
    logger.info(f"Created backup: {backup}")

    before, after = store.sort_and_dedupe()
    if before != after:
        logger.info(f"Removed duplicates: {before} -> {after} entries")
    blocks = sorted(store.block_numbers())
    if blocks:
        logger.info(f"Range: Block {blocks[0]} to {blocks[-1]}")
    logger.info(f"Total entries: {after}")
    report_gaps(sequence_gaps(blocks))
    return 0


def run(csv_file: Path, action: str) -> int:
    store = DatasetStore(csv_file)
    if not store.path.exists():
        logger.error(f"CSV file not found: {csv_file}")
        return 1

    if action == "validate":
        ok = store.validate_order()
        logger.info("CSV is properly ordered" if ok else "CSV is not properly ordered")
        return 0 if ok else 1

    if action == "gaps":
        report_gaps(sequence_gaps(store.block_numbers()))
        return 0

    return sort_file(store)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sort or check the bitmap dataset CSV")
    parser.add_argument("csv_file", nargs="?", default="bitmap_data.csv", help="Dataset CSV path")
    parser.add_argument("action", nargs="?", default="sort", choices=ACTIONS)
    args = parser.parse_args(argv)

    try:
        return run(Path(args.csv_file), args.action)
    except (StoreError, OSError) as e:
        logger.error(f"Dataset maintenance failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
