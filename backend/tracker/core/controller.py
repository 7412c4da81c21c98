"""
Ingestion Controller for the block tracker.

This module enforces the ingestion workflow. It is the single worker that
orchestrates the:
1. QueueScheduler (what to fetch)
2. CredentialRotator (with which key)
3. BitmapClient (execution)
4. DatasetStore / EmptyBlockLedger / ProgressTracker (results)

One fetch is in flight at a time. The live feed only ever adds to the
scheduler's priority queue.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from tracker.core.backoff import RetryPolicy
from tracker.core.credentials import CredentialRotator
from tracker.core.errors import FetchError
from tracker.core.network_client import BitmapClient
from tracker.core.progress import EmptyBlockLedger, ProgressTracker
from tracker.core.scheduler import QueueScheduler
from tracker.core.state import (
    TERMINAL_OUTCOMES,
    BlockRecord,
    CredentialSlot,
    Fatal,
    Found,
    NotFound,
    ProcessOutcome,
    Retryable,
)
from tracker.core.store import DatasetStore

logger = logging.getLogger(__name__)

REFILL_LOW_WATERMARK = 100
SORT_DELAY_SECONDS = 1.0


class ControllerState(str, Enum):
    IDLE = "idle"
    DRAINING_PRIORITY = "draining_priority"
    DRAINING_BACKFILL = "draining_backfill"
    COOLING_DOWN = "cooling_down"   # Combined daily budget nearly spent
    EXHAUSTED = "exhausted"         # No key can issue a request today


class IngestionController:
    """
    Sequential ingestion state machine.
    """

    def __init__(
        self,
        *,
        rotator: CredentialRotator,
        client: BitmapClient,
        store: DatasetStore,
        scheduler: QueueScheduler,
        progress: ProgressTracker,
        ledger: Optional[EmptyBlockLedger] = None,
        policy: RetryPolicy = RetryPolicy(),
        refill_low_watermark: int = REFILL_LOW_WATERMARK,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.rotator = rotator
        self.client = client
        self.store = store
        self.scheduler = scheduler
        self.progress = progress
        self.ledger = ledger
        self.policy = policy
        self.refill_low_watermark = refill_low_watermark

        self.state = ControllerState.IDLE
        self._sleep = sleep
        self._stop = asyncio.Event()
        self._reconciled = False
        self._sort_handle: Optional[asyncio.TimerHandle] = None

    # ---------------------------------------------------------
    # Loop
    # ---------------------------------------------------------

    async def run(self) -> None:
        """Cycle until stop is requested; the current block always finishes."""
        logger.info("Starting processing loop...")
        while not self._stop.is_set():
            try:
                await self.step()
            except Exception:  # noqa: BLE001
                logger.exception("Processing loop error")
                await self._pause(self.policy.error_delay)
        self.state = ControllerState.IDLE
        logger.info("Processing loop stopped")

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def step(self) -> ControllerState:
        """One cycle of the state machine."""
        # 1. Combined daily budget
        if self.over_daily_budget():
            self.state = ControllerState.COOLING_DOWN
            usage = self.rotator.total_usage()
            capacity = self.rotator.daily_capacity
            logger.warning(
                f"Approaching daily limit: {usage}/{capacity} requests "
                f"({usage / capacity * 100:.1f}%). Pausing to preserve quota..."
            )
            await self._pause(self.policy.daily_limit_cooldown)
            return self.state

        # 2. Live blocks first
        block = self.scheduler.next_priority()
        if block is not None:
            self.state = ControllerState.DRAINING_PRIORITY
            outcome = await self.process_block(block, priority=True)
            if outcome in (ProcessOutcome.EXHAUSTED, ProcessOutcome.INTERRUPTED):
                self.scheduler.requeue_priority(block)
            if outcome == ProcessOutcome.EXHAUSTED:
                await self._enter_exhausted()
            return self.state

        # 3. Historical backfill
        block = self.scheduler.next_backfill()
        if block is not None:
            self.state = ControllerState.DRAINING_BACKFILL
            outcome = await self.process_block(block)
            if outcome in TERMINAL_OUTCOMES:
                self.progress.advance(block)
            elif outcome in (ProcessOutcome.EXHAUSTED, ProcessOutcome.INTERRUPTED):
                self.scheduler.requeue_backfill(block)

            if outcome == ProcessOutcome.EXHAUSTED:
                await self._enter_exhausted()
            elif self.scheduler.backfill_size < self.refill_low_watermark:
                self.scheduler.refill()
            return self.state

        # 4. Nothing queued
        self.state = ControllerState.IDLE
        self.scheduler.refill()
        await self._pause(self.policy.idle_delay)
        return self.state

    def over_daily_budget(self) -> bool:
        return self.rotator.total_usage() >= self.rotator.daily_capacity - self.rotator.safety_buffer

    # ---------------------------------------------------------
    # Per-block processing
    # ---------------------------------------------------------

    async def process_block(self, block_number: int, *, priority: bool = False) -> ProcessOutcome:
        """
        Fetch one block until it reaches a terminal outcome, is deferred,
        or cannot be attempted.
        """
        tag = "live" if priority else "backfill"

        if self.scheduler.is_processed(block_number):
            logger.debug(f"[{tag}] Block {block_number}: already processed")
            return ProcessOutcome.SKIPPED

        attempt = 0
        while True:
            slot = await self._acquire_slot()
            if slot is None:
                return ProcessOutcome.INTERRUPTED if self.stopping else ProcessOutcome.EXHAUSTED

            result = await self.client.fetch(block_number, slot)
            if not (isinstance(result, Retryable) and not result.charged):
                self.rotator.record_use(slot)

            if isinstance(result, Found):
                self.store.append(
                    BlockRecord(
                        block_number=block_number,
                        inscription_id=result.inscription_id,
                        sat_number=result.sat_number,
                    )
                )
                self.scheduler.mark_processed(block_number)
                logger.info(f"[{tag}] Block {block_number}: {result.inscription_id}")
                if self.store.sort_pending:
                    self.schedule_sort()
                return ProcessOutcome.STORED

            if isinstance(result, NotFound):
                self.scheduler.mark_processed(block_number)
                if self.ledger is not None:
                    self.ledger.record(block_number)
                logger.info(f"[{tag}] Block {block_number}: no bitmap")
                return ProcessOutcome.EMPTY

            if isinstance(result, Fatal):
                # Marked processed for this run only; the operator has to fix the key.
                self.scheduler.mark_processed(block_number)
                logger.error(f"[{tag}] Block {block_number}: {result.reason} via {slot.label}; skipping block")
                return ProcessOutcome.FATAL

            if result.rate_limited:
                logger.warning(
                    f"[{tag}] Block {block_number}: {result.reason}; "
                    f"cooling down {self.policy.rate_limit_cooldown:.0f}s"
                )
                await self._pause(self.policy.rate_limit_cooldown)
            else:
                attempt += 1
                if self.policy.exceeded(attempt):
                    logger.error(
                        f"[{tag}] Block {block_number}: failed after {attempt} attempts "
                        f"({result.reason}); deferred to gap detection"
                    )
                    return ProcessOutcome.DEFERRED
                delay = self.policy.backoff(attempt)
                logger.warning(
                    f"[{tag}] Block {block_number}: {result.reason} - attempt {attempt}/{self.policy.max_retries}; "
                    f"backing off {delay:.0f}s"
                )
                await self._pause(delay)

            if self.stopping:
                return ProcessOutcome.INTERRUPTED

    async def _acquire_slot(self) -> Optional[CredentialSlot]:
        while not self.stopping:
            slot = self.rotator.next_usable()
            if slot is not None:
                self._reconciled = False
                return slot

            if self.rotator.is_exhausted():
                if not self._reconciled:
                    self._reconciled = True
                    if await self.reconcile_usage():
                        continue
                logger.warning("All API keys exhausted for today")
                return None

            await self._pause(max(self.rotator.seconds_until_available(), 0.01))
        return None

    async def reconcile_usage(self) -> bool:
        """
        Check local accounting against the provider's own counters.

        Returns True if some key turned out to have capacity left.
        """
        logger.info("No keys available according to local tracking, checking actual API usage...")
        for slot in list(self.rotator.slots):
            try:
                info = await self.client.key_info(slot)
            except FetchError as e:
                logger.warning(f"Key usage check failed: {e}")
                continue
            self.rotator.sync_usage(slot, info["requests_made"])
        available = not self.rotator.is_exhausted()
        if available:
            logger.info("Found available key after usage check")
        return available

    async def validate_credentials(self) -> int:
        """
        Ask the provider about every key; retire the ones it rejects.

        Returns the number of keys left.
        """
        logger.info("Validating API keys...")
        for slot in list(self.rotator.slots):
            try:
                info = await self.client.key_info(slot)
            except FetchError as e:
                logger.error(f"API {slot.label} invalid: {e}")
                self.rotator.retire(slot)
                continue
            self.rotator.sync_usage(slot, info["requests_made"])
            logger.info(f"API {slot.label}: {info['plan']} plan, {info['requests_left']} requests left today")
        return len(self.rotator.slots)

    async def _enter_exhausted(self) -> None:
        self.state = ControllerState.EXHAUSTED
        await self._pause(self.policy.exhausted_cooldown)

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early when stop is requested."""
        if seconds <= 0:
            return
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ---------------------------------------------------------
    # Store maintenance
    # ---------------------------------------------------------

    def schedule_sort(self, delay: float = SORT_DELAY_SECONDS) -> None:
        """Run sort_and_dedupe on the event loop shortly, not inline."""
        if self._sort_handle is not None and not self._sort_handle.cancelled():
            return
        loop = asyncio.get_running_loop()
        self._sort_handle = loop.call_later(delay, self._run_sort)

    def _run_sort(self) -> None:
        self._sort_handle = None
        try:
            self.store.sort_and_dedupe()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to sort dataset")

    def cancel_pending_sort(self) -> None:
        if self._sort_handle is not None:
            self._sort_handle.cancel()
            self._sort_handle = None

    # ---------------------------------------------------------
    # Observability
    # ---------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot for the periodic status report."""
        height = self.scheduler.current_height
        total_blocks = max(0, height - self.scheduler.start_block)
        processed = self.progress.total_processed
        percentage = round(processed / total_blocks * 100, 1) if total_blocks > 0 else 0.0
        return {
            "state": self.state.value,
            "priority_queue": self.scheduler.priority_size,
            "backfill_queue": self.scheduler.backfill_size,
            "processed": processed,
            "total_blocks": total_blocks,
            "progress_pct": percentage,
            "requests_today": self.rotator.total_usage(),
            "daily_capacity": self.rotator.daily_capacity,
            "current_block": height,
            "last_processed": self.progress.last_processed_block,
        }
