"""
Credential Rotator for the block tracker.

Owns the API keys and their daily accounting. Each key is a slot with its own
daily quota and minimum spacing between requests; the rotator hands out the
next slot that may be used right now, round-robin.

Design Principles:
- Nothing is charged until the caller records actual use.
- Counters reset lazily, the first time a slot is looked at after its
  midnight boundary.
- No locking: exactly one request is in flight at a time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from tracker.core.state import DEFAULT_USER_AGENT, CredentialSlot, next_midnight, utcnow

logger = logging.getLogger(__name__)


class CredentialRotator:
    """Round-robin selection over rate-limited credential slots."""

    def __init__(
        self,
        api_keys: Sequence[str],
        *,
        daily_limit: int,
        safety_buffer: int,
        min_interval: timedelta,
        user_agents: Sequence[str] = (),
        proxies: Sequence[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        if not api_keys:
            raise ValueError("CredentialRotator needs at least one API key")

        self._clock = clock
        self.daily_limit = daily_limit
        self.safety_buffer = safety_buffer
        self.min_interval = min_interval
        self._cursor = 0

        now = clock()
        agents = list(user_agents) or [DEFAULT_USER_AGENT]
        self.slots: List[CredentialSlot] = [
            CredentialSlot(
                index=i,
                api_key=key,
                daily_limit=daily_limit,
                reset_at=next_midnight(now),
                user_agent=agents[i % len(agents)],
                header_rotation=i % 3,
                proxy=proxies[i % len(proxies)] if proxies else None,
            )
            for i, key in enumerate(api_keys)
        ]

    @property
    def usable_limit(self) -> int:
        return self.daily_limit - self.safety_buffer

    @property
    def daily_capacity(self) -> int:
        return self.daily_limit * len(self.slots)

    def next_usable(self) -> Optional[CredentialSlot]:
        """
        Return the next slot that may issue a request now, or None.

        None is a "back off and ask again" signal; callers check
        is_exhausted() to tell it apart from the daily quota being spent.
        """
        now = self._clock()
        count = len(self.slots)

        for offset in range(count):
            idx = (self._cursor + offset) % count
            slot = self.slots[idx]
            self._maybe_reset(slot, now)

            if slot.requests_today >= self.usable_limit:
                continue
            if slot.last_request_at is not None and now - slot.last_request_at < self.min_interval:
                continue

            self._cursor = (idx + 1) % count
            return slot

        return None

    def record_use(self, slot: CredentialSlot) -> None:
        """Charge one completed request to the slot."""
        now = self._clock()
        self._maybe_reset(slot, now)
        slot.requests_today += 1
        slot.last_request_at = now
        logger.debug(f"Using API {slot.label}: {slot.requests_today}/{self.daily_limit} requests today")

    def sync_usage(self, slot: CredentialSlot, requests_made: int) -> None:
        """Replace local accounting with the provider's own count."""
        if requests_made != slot.requests_today:
            logger.info(f"API {slot.label} usage corrected {slot.requests_today} -> {requests_made}")
        slot.requests_today = max(0, requests_made)

    def retire(self, slot: CredentialSlot) -> None:
        """Stop offering a slot whose key the provider rejected."""
        if slot in self.slots:
            self.slots.remove(slot)
            self._cursor = self._cursor % len(self.slots) if self.slots else 0
            logger.warning(f"Retired API {slot.label}")

    def total_usage(self) -> int:
        now = self._clock()
        for slot in self.slots:
            self._maybe_reset(slot, now)
        return sum(slot.requests_today for slot in self.slots)

    def is_exhausted(self) -> bool:
        """True when every slot has spent its buffered daily allowance."""
        now = self._clock()
        for slot in self.slots:
            self._maybe_reset(slot, now)
        return all(slot.requests_today >= self.usable_limit for slot in self.slots)

    def seconds_until_available(self) -> float:
        """Shortest wait until some slot clears its minimum interval."""
        now = self._clock()
        waits = []
        for slot in self.slots:
            if slot.requests_today >= self.usable_limit:
                continue
            if slot.last_request_at is None:
                return 0.0
            remaining = (slot.last_request_at + self.min_interval - now).total_seconds()
            waits.append(max(0.0, remaining))
        return min(waits) if waits else self.min_interval.total_seconds()

    def _maybe_reset(self, slot: CredentialSlot, now: datetime) -> None:
        if now >= slot.reset_at:
            slot.requests_today = 0
            slot.reset_at = next_midnight(now)
            logger.info(f"Daily limit reset for API {slot.label}")
