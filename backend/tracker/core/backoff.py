"""
Retry and cooldown policy for the block tracker.

Three distinct waits:
- Transient failures: exponential backoff, capped, bounded by a retry ceiling.
- Quota signalling: one long fixed cooldown, never counted against the ceiling.
- Daily capacity spent: a much longer pause before re-evaluating.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RetryPolicy(BaseModel):
    """Timing knobs for the ingestion loop, all in seconds."""
    base_delay: float = Field(default=5.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    rate_limit_cooldown: float = Field(default=60.0, ge=0)
    daily_limit_cooldown: float = Field(default=3600.0, ge=0)
    exhausted_cooldown: float = Field(default=30.0, ge=0)
    idle_delay: float = Field(default=1.0, ge=0)
    error_delay: float = Field(default=5.0, ge=0)

    model_config = ConfigDict(frozen=True)

    def backoff(self, attempt: int) -> float:
        """
        Delay after the given failed attempt (1-based).

        1st failure: base, 2nd: 2 x base, ... capped at max_delay.
        """
        attempt = max(1, attempt)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def exceeded(self, attempt: int) -> bool:
        """True once the failed attempts outnumber the allowed retries."""
        return attempt > self.max_retries


class ReconnectPolicy(BaseModel):
    """Capped exponential backoff for the live feed socket."""
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=10, ge=0)  # 0 = never give up

    model_config = ConfigDict(frozen=True)

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def gives_up(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt > self.max_attempts
