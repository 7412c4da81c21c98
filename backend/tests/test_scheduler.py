from __future__ import annotations

from tracker.core.progress import ProgressTracker
from tracker.core.scheduler import QueueScheduler


START = 840000


def _scheduler(tmp_path, *, processed=(), height=0, chunk=1000) -> QueueScheduler:
    progress = ProgressTracker(tmp_path / "progress.json", start_block=START, save_every=0)
    progress.load()
    return QueueScheduler(
        start_block=START,
        progress=progress,
        chunk_size=chunk,
        processed=processed,
        current_height=height,
    )


def _drain_backfill(s: QueueScheduler) -> list[int]:
    out = []
    while (block := s.next_backfill()) is not None:
        out.append(block)
    return out


def test_empty_store_fills_from_start_block(tmp_path):
    s = _scheduler(tmp_path, height=840003)
    assert s.refill() == 4
    assert s.backfill_queue == [840000, 840001, 840002, 840003]


def test_confirmed_empty_blocks_are_not_reoffered(tmp_path):
    # 840001 has no store row but is in the processed set.
    s = _scheduler(tmp_path, processed={840000, 840001, 840002}, height=840003)
    s.refill()
    assert s.backfill_queue == [840003]


def test_refill_is_bounded_by_chunk_and_height(tmp_path):
    s = _scheduler(tmp_path, height=850000, chunk=5)
    s.refill()
    assert s.backfill_queue == [840000, 840001, 840002, 840003, 840004]

    s2 = _scheduler(tmp_path, height=0)
    assert s2.refill() == 0
    assert s2.backfill_queue == []


def test_gaps_behind_progress_are_reoffered_first(tmp_path):
    s = _scheduler(tmp_path, processed={840000, 840001, 840003}, height=840006, chunk=2)
    s._progress.advance(840003)

    assert s.detect_gaps() == [840002]
    s.refill()
    assert s.backfill_queue == [840002, 840004, 840005]


def test_deferred_block_is_reoffered_by_refill(tmp_path):
    s = _scheduler(tmp_path, height=840006)
    s.refill()
    for block in _drain_backfill(s):
        # 840005 exhausted its retries: popped but never marked processed.
        if block != 840005:
            s.mark_processed(block)
            s._progress.advance(block)

    assert s.detect_gaps() == [840005]
    s.refill()
    assert s.backfill_queue == [840005]


def test_refill_moves_past_blocks_processed_ahead_of_progress(tmp_path):
    # Fresh progress file while store and ledger already cover more than a chunk.
    s = _scheduler(tmp_path, processed=range(840000, 841500), height=842000)

    assert s.refill() > 0
    assert s.backfill_queue[0] == 841500
    assert s._progress.last_processed_block == 841499
    assert s._progress.total_processed == 0


def test_deferred_live_block_beyond_a_chunk_is_reoffered(tmp_path):
    # Live blocks processed far past the marker, one of them deferred.
    processed = set(range(840000, 841501)) - {841200}
    s = _scheduler(tmp_path, processed=processed, height=841501, chunk=100)
    s._progress.advance(840000)

    s.refill()

    assert s.backfill_queue == [841200]
    assert s._progress.last_processed_block == 841199


def test_queue_stays_sorted_and_unique(tmp_path):
    s = _scheduler(tmp_path, height=840004)
    s.refill()
    s.refill()
    s.requeue_backfill(840002)
    assert s.backfill_queue == [840000, 840001, 840002, 840003, 840004]

    assert s.next_backfill() == 840000
    s.requeue_backfill(840000)
    assert s.backfill_queue[0] == 840000


def test_live_blocks_are_fifo_and_deduplicated(tmp_path):
    s = _scheduler(tmp_path, processed={841001})
    assert s.enqueue_live(841000)
    assert not s.enqueue_live(841000)
    assert not s.enqueue_live(841001)
    assert s.enqueue_live(841002)

    assert s.current_height == 841002
    assert s.next_priority() == 841000
    s.requeue_priority(841000)
    assert s.priority_queue == [841000, 841002]


def test_mark_processed_removes_from_both_queues(tmp_path):
    s = _scheduler(tmp_path, height=840002)
    s.refill()
    s.enqueue_live(840001)

    s.mark_processed(840001)

    assert s.is_processed(840001)
    assert 840001 not in s.backfill_queue
    assert 840001 not in s.priority_queue
    s.refill()
    assert 840001 not in s.backfill_queue
