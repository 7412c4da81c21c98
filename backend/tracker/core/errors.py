from __future__ import annotations

"""Controlled errors for the block tracker.

Operational intent:
- The ingestion loop must never crash on a single block.
- Fetch problems are converted into tagged results at the client boundary;
  these errors are for conditions the caller has to decide about.
"""


class TrackerError(RuntimeError):
    """Base error for the tracker."""


class ConfigError(TrackerError):
    """Raised when settings cannot be built (no usable key, bad integer)."""


class StoreError(TrackerError):
    """Raised when the dataset file cannot be read or rewritten."""


class FetchError(TrackerError):
    """Raised when an auxiliary provider call (key info, tip height) fails."""


class FeedError(TrackerError):
    """Raised when a live feed message cannot be interpreted."""
