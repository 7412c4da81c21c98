"""Tracker core primitives for the bitmap block tracker.

Block ingestion for bitmap inscriptions:
- Fetch one block at a time through rotating API keys
- Append found blocks to the CSV dataset; never rewrite in place
- Live blocks first, historical backfill and gaps after
"""

from tracker.core.backoff import ReconnectPolicy, RetryPolicy
from tracker.core.controller import ControllerState, IngestionController
from tracker.core.credentials import CredentialRotator
from tracker.core.errors import ConfigError, FeedError, FetchError, StoreError, TrackerError
from tracker.core.live_feed import MempoolBlockFeed
from tracker.core.network_client import BitmapClient
from tracker.core.progress import EmptyBlockLedger, ProgressTracker
from tracker.core.scheduler import QueueScheduler
from tracker.core.state import BlockRecord, ProcessOutcome
from tracker.core.store import DatasetStore

__all__ = [
    "BitmapClient",
    "BlockRecord",
    "ConfigError",
    "ControllerState",
    "CredentialRotator",
    "DatasetStore",
    "EmptyBlockLedger",
    "FeedError",
    "FetchError",
    "IngestionController",
    "MempoolBlockFeed",
    "ProcessOutcome",
    "ProgressTracker",
    "QueueScheduler",
    "ReconnectPolicy",
    "RetryPolicy",
    "StoreError",
    "TrackerError",
]
