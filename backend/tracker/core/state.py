"""
Core state models for the block tracker.

Separated to avoid circular dependencies between the client, the rotator
and the controller.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Shared Constants
DEFAULT_USER_AGENT = "Bitmap-Block-Tracker/1.0"
ACCEPT_LANGUAGES = (
    "en-US,en;q=0.9",
    "en-GB,en;q=0.8",
    "en-CA,en;q=0.7",
)


def next_midnight(now: datetime) -> datetime:
    """First midnight (in now's timezone) strictly after now."""
    tomorrow = (now + timedelta(days=1)).date()
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=now.tzinfo)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BlockRecord(BaseModel):
    """One row of the dataset: a block that carries a bitmap inscription."""
    block_number: int = Field(ge=0)
    inscription_id: Optional[str] = None
    sat_number: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class CredentialSlot(BaseModel):
    """
    One rate-limited API key plus its usage accounting.

    Counters live in memory only and are reset at each midnight boundary.
    """
    index: int
    api_key: str
    daily_limit: int

    requests_today: int = 0
    last_request_at: Optional[datetime] = None
    reset_at: datetime

    # Request diversity (sticky per slot)
    user_agent: str = DEFAULT_USER_AGENT
    header_rotation: int = 0
    proxy: Optional[str] = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def label(self) -> str:
        return f"key {self.index + 1} ({self.api_key[:8]}...)"

    def headers(self, rotate: bool = True) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate, br",
            "Api-Key": self.api_key,
            "User-Agent": self.user_agent,
        }
        if rotate:
            headers["Accept-Language"] = ACCEPT_LANGUAGES[self.header_rotation % len(ACCEPT_LANGUAGES)]
        return headers


class ProgressRecord(BaseModel):
    """Backfill progress, persisted as camelCase JSON."""
    last_processed_block: int = Field(alias="lastProcessedBlock")
    total_processed: int = Field(default=0, alias="totalProcessed")
    start_time: str = Field(default_factory=lambda: utcnow().isoformat(), alias="startTime")

    model_config = ConfigDict(populate_by_name=True)


# --- Fetch outcomes ---
# Provider status codes are mapped into these once, in the network client.

@dataclass(frozen=True)
class Found:
    inscription_id: str
    sat_number: Optional[int] = None


@dataclass(frozen=True)
class NotFound:
    """Confirmed-empty: the block has no bitmap. Terminal, not an error."""


@dataclass(frozen=True)
class Retryable:
    reason: str
    rate_limited: bool = False
    charged: bool = True  # False when the request never reached the provider


@dataclass(frozen=True)
class Fatal:
    reason: str


FetchResult = Union[Found, NotFound, Retryable, Fatal]


class ProcessOutcome(str, Enum):
    """What the controller did with a block."""
    STORED = "stored"          # Found, appended to the store
    EMPTY = "empty"            # Confirmed-empty
    SKIPPED = "skipped"        # Already processed
    FATAL = "fatal"            # Marked processed without result
    DEFERRED = "deferred"      # Retry ceiling exceeded, left for gap detection
    EXHAUSTED = "exhausted"    # No credential capacity left; block requeued
    INTERRUPTED = "interrupted"  # Shutdown requested during backoff


TERMINAL_OUTCOMES = frozenset({ProcessOutcome.STORED, ProcessOutcome.EMPTY, ProcessOutcome.FATAL})
