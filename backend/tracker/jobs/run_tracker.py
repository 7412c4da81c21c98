from __future__ import annotations

"""Tracker entry point: live feed + backfill -> bitmap dataset CSV.

STRICT:
- One block fetch in flight at a time.
- The dataset file is append-only; sorting rewrites it atomically.
- Live blocks always go ahead of backfill work.
- SIGINT/SIGTERM finish the current block, persist progress, then exit 0.

Run:
  python tracker/jobs/run_tracker.py
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Callable, Optional

# Ensure `backend/` is on sys.path so `import tracker...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

import httpx  # noqa: E402

from app.core.config import TrackerSettings, load_settings  # noqa: E402
from snapshot.core.git_committer import GitSnapshotConfig, GitSnapshotter  # noqa: E402
from tracker.core.controller import IngestionController  # noqa: E402
from tracker.core.credentials import CredentialRotator  # noqa: E402
from tracker.core.errors import ConfigError, FetchError  # noqa: E402
from tracker.core.live_feed import MempoolBlockFeed, fetch_tip_height  # noqa: E402
from tracker.core.network_client import BitmapClient  # noqa: E402
from tracker.core.progress import EmptyBlockLedger, ProgressTracker  # noqa: E402
from tracker.core.scheduler import QueueScheduler  # noqa: E402
from tracker.core.store import DatasetStore  # noqa: E402


logger = logging.getLogger("bitmap.tracker")
logger.setLevel(logging.INFO)

# Ensure logs are visible when run from a service manager / console.
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

EXIT_OK = 0
EXIT_CONFIG = 2


def _log(event: dict) -> None:
    # Structured logs only; never log API keys.
    logger.info(json.dumps(event, ensure_ascii=False))


def open_dataset(settings: TrackerSettings) -> tuple[DatasetStore, EmptyBlockLedger, set[int]]:
    """Open the dataset and the empty ledger; returns them plus every processed block."""
    store = DatasetStore(settings.csv_file, sort_every=settings.sort_every)
    opened = store.open()

    ledger = EmptyBlockLedger(settings.empty_ledger_file)
    empties = ledger.load()

    # Blocks a legacy file listed without a bitmap become ledger entries once.
    carried = sorted(opened.legacy_empty - empties)
    if carried:
        ledger.record_many(carried)
        empties.update(carried)

    return store, ledger, opened.stored | empties


async def _every(seconds: float, fn: Callable[[], None]) -> None:
    while True:
        await asyncio.sleep(seconds)
        try:
            fn()
        except Exception:  # noqa: BLE001
            logger.exception("Periodic task failed")


def _install_signal_handlers(controller: IngestionController) -> None:
    loop = asyncio.get_running_loop()

    def _stop(signame: str) -> None:
        _log({"event": "shutdown_requested", "signal": signame})
        controller.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt in main().
            pass


async def run(settings: TrackerSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    if not settings.api_keys:
        raise ConfigError("No valid API keys found. Please configure GENIIDATA_API_KEYS in .env")

    store, ledger, processed = open_dataset(settings)

    progress = ProgressTracker(
        settings.progress_file,
        start_block=settings.historical_start_block,
        save_every=settings.progress_save_every,
    )
    progress.load()

    scheduler = QueueScheduler(
        start_block=settings.historical_start_block,
        progress=progress,
        chunk_size=settings.backfill_chunk_size,
        processed=processed,
    )

    rotator = CredentialRotator(
        settings.api_keys,
        daily_limit=settings.max_requests_per_day_per_key,
        safety_buffer=settings.daily_limit_buffer,
        min_interval=settings.min_interval,
        user_agents=settings.user_agents,
        proxies=settings.active_proxies,
    )
    client = BitmapClient(
        api_url=settings.api_url,
        key_info_url=settings.key_info_url,
        min_interval_seconds=settings.min_interval.total_seconds(),
        rotate_headers=settings.rotate_request_headers,
        transport=transport,
    )
    controller = IngestionController(
        rotator=rotator,
        client=client,
        store=store,
        scheduler=scheduler,
        progress=progress,
        ledger=ledger,
        policy=settings.retry_policy(),
    )

    snapshotter: Optional[GitSnapshotter] = None
    if settings.auto_commit_csv:
        snapshotter = GitSnapshotter(
            GitSnapshotConfig(
                csv_file=settings.csv_file,
                message_template=settings.git_commit_message,
                push=settings.git_push_to_remote,
                branch=settings.git_branch,
            )
        )
        store.subscribe(snapshotter.on_append)

    _log(
        {
            "event": "tracker_start",
            "api_keys": len(rotator.slots),
            "daily_capacity": rotator.daily_capacity,
            "stored_or_empty": len(processed),
            "last_processed": progress.last_processed_block,
            "proxies": len(settings.active_proxies),
        }
    )

    feed: Optional[MempoolBlockFeed] = None
    background: list[asyncio.Task] = []
    try:
        if settings.validate_keys_on_start:
            remaining = await controller.validate_credentials()
            if remaining == 0:
                raise ConfigError("No valid API keys remain after validation")

        async with httpx.AsyncClient(transport=transport) as http:
            try:
                height = await fetch_tip_height(http, settings.tip_height_url)
                scheduler.advance_height(height)
                _log({"event": "tip_height", "height": height})
            except FetchError as e:
                # Backfill waits for the live feed to report a height.
                logger.error(str(e))

        scheduler.refill()
        if store.sort_pending:
            controller.schedule_sort()

        feed = MempoolBlockFeed(scheduler.enqueue_live, url=settings.ws_url)
        background = [
            asyncio.create_task(feed.run(), name="live-feed"),
            asyncio.create_task(
                _every(settings.status_interval_s, lambda: _log({"event": "status", **controller.status()})),
                name="status-report",
            ),
            asyncio.create_task(_every(settings.progress_save_interval_s, progress.save), name="progress-save"),
        ]

        _install_signal_handlers(controller)
        await controller.run()
    finally:
        for task in background:
            task.cancel()
        if feed is not None:
            await feed.close()
        await asyncio.gather(*background, return_exceptions=True)

        progress.save()
        await client.close()

        controller.cancel_pending_sort()
        if store.sort_pending:
            store.sort_and_dedupe()
        if snapshotter is not None:
            snapshotter.close()

        _log({"event": "tracker_stop", **controller.status()})

    return EXIT_OK


def main() -> int:
    try:
        settings = load_settings()
        return asyncio.run(run(settings))
    except ConfigError as e:
        _log({"event": "config_error", "error": str(e)})
        return EXIT_CONFIG
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
