"""
Queue Scheduler and Gap Detector for the block tracker.

This module decides WHAT gets fetched next.

Two queues:
- Priority: FIFO of block heights announced by the live feed.
- Backfill: sorted, duplicate-free catch-up scan. Gaps inside the already
  scanned range sort ahead of the range extension because they are smaller.

Invariants:
- A block in the processed set is never enqueued.
- A block is never both processed and queued.
- The backfill queue is ascending with no duplicates at every observation.
"""

from __future__ import annotations

import bisect
import logging
from collections import deque
from typing import Deque, Iterable, List, Optional, Set

from tracker.core.progress import ProgressTracker

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


class QueueScheduler:
    """
    Dual-priority work queue over block numbers.
    """

    def __init__(
        self,
        *,
        start_block: int,
        progress: ProgressTracker,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        processed: Optional[Iterable[int]] = None,
        current_height: int = 0,
    ):
        self.start_block = start_block
        self.chunk_size = chunk_size
        self.current_height = current_height
        self._progress = progress

        self.processed: Set[int] = set(processed or ())

        self._priority: Deque[int] = deque()
        self._priority_set: Set[int] = set()
        self._backfill: List[int] = []
        self._backfill_set: Set[int] = set()

    # --- Live feed side ---

    def enqueue_live(self, block_number: int) -> bool:
        """
        Queue a freshly announced block ahead of all backfill work.

        Returns True if the block was queued.
        """
        self.advance_height(block_number)
        if block_number in self.processed or block_number in self._priority_set:
            return False
        self._priority.append(block_number)
        self._priority_set.add(block_number)
        logger.info(f"New block detected: {block_number}")
        return True

    def advance_height(self, height: int) -> None:
        if height > self.current_height:
            self.current_height = height

    # --- Backfill side ---

    def refill(self) -> int:
        """
        Re-offer gaps and extend the backfill by the next unclaimed chunk.

        Returns how many blocks were added.
        """
        added = 0
        for block in self.detect_gaps():
            added += self._add_backfill(block)

        last = self._skip_processed_run()
        end = min(last + self.chunk_size, self.current_height)
        for block in range(max(last + 1, self.start_block), end + 1):
            if block not in self.processed:
                added += self._add_backfill(block)

        if added:
            logger.info(
                f"Backfill queue: {len(self._backfill)} blocks "
                f"(range {self._backfill[0]} to {self._backfill[-1]})"
            )
        return added

    def _skip_processed_run(self) -> int:
        """Move the marker past blocks already processed ahead of it (live feed, earlier runs)."""
        last = self._progress.last_processed_block
        block = max(last + 1, self.start_block)
        while block in self.processed:
            block += 1
        if block - 1 > last:
            self._progress.skip_to(block - 1)
            logger.info(f"Backfill progress moved over processed blocks: {last} -> {block - 1}")
        return self._progress.last_processed_block

    def detect_gaps(self) -> List[int]:
        """Blocks in [start_block, last_processed] without a processed confirmation."""
        last = self._progress.last_processed_block
        gaps = [b for b in range(self.start_block, last + 1) if b not in self.processed]
        if gaps:
            preview = ", ".join(str(b) for b in gaps[:10])
            more = "..." if len(gaps) > 10 else ""
            logger.warning(f"Found {len(gaps)} gaps to backfill: {preview}{more}")
        return gaps

    # --- Consumer side ---

    def next_priority(self) -> Optional[int]:
        if not self._priority:
            return None
        block = self._priority.popleft()
        self._priority_set.discard(block)
        return block

    def next_backfill(self) -> Optional[int]:
        if not self._backfill:
            return None
        block = self._backfill.pop(0)
        self._backfill_set.discard(block)
        return block

    def requeue_priority(self, block_number: int) -> None:
        """Put an unfinished live block back at the head of the queue."""
        if block_number in self.processed or block_number in self._priority_set:
            return
        self._priority.appendleft(block_number)
        self._priority_set.add(block_number)

    def requeue_backfill(self, block_number: int) -> None:
        self._add_backfill(block_number)

    def mark_processed(self, block_number: int) -> None:
        self.processed.add(block_number)
        if block_number in self._priority_set:
            self._priority.remove(block_number)
            self._priority_set.discard(block_number)
        if block_number in self._backfill_set:
            self._backfill.remove(block_number)
            self._backfill_set.discard(block_number)

    def is_processed(self, block_number: int) -> bool:
        return block_number in self.processed

    # --- Introspection ---

    @property
    def priority_queue(self) -> List[int]:
        return list(self._priority)

    @property
    def backfill_queue(self) -> List[int]:
        return list(self._backfill)

    @property
    def priority_size(self) -> int:
        return len(self._priority)

    @property
    def backfill_size(self) -> int:
        return len(self._backfill)

    def _add_backfill(self, block_number: int) -> int:
        if block_number in self.processed or block_number in self._backfill_set:
            return 0
        bisect.insort(self._backfill, block_number)
        self._backfill_set.add(block_number)
        return 1
