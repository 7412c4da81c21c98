from __future__ import annotations

import json

from tracker.core.progress import EmptyBlockLedger, ProgressTracker


def test_fresh_progress_starts_before_start_block(tmp_path):
    p = ProgressTracker(tmp_path / "progress.json", start_block=840000)
    record = p.load()
    assert record.last_processed_block == 839999
    assert p.total_processed == 0


def test_advance_is_monotonic(tmp_path):
    p = ProgressTracker(tmp_path / "progress.json", start_block=840000, save_every=0)
    p.advance(840010)
    p.advance(840005)
    assert p.last_processed_block == 840010
    assert p.total_processed == 2


def test_save_writes_camel_case_and_reloads(tmp_path):
    path = tmp_path / "progress.json"
    p = ProgressTracker(path, start_block=840000, save_every=0)
    p.advance(840000)
    p.advance(840001)
    p.save()

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["lastProcessedBlock"] == 840001
    assert raw["totalProcessed"] == 2
    assert "startTime" in raw

    again = ProgressTracker(path, start_block=840000)
    again.load()
    assert again.last_processed_block == 840001
    assert again.total_processed == 2


def test_periodic_save_every_n_blocks(tmp_path):
    path = tmp_path / "progress.json"
    p = ProgressTracker(path, start_block=840000, save_every=2)
    p.advance(840000)
    assert not path.exists()
    p.advance(840001)
    assert path.exists()


def test_corrupt_progress_falls_back_to_fresh(tmp_path):
    path = tmp_path / "progress.json"
    path.write_text("{not json", encoding="utf-8")
    p = ProgressTracker(path, start_block=840000)
    p.load()
    assert p.last_processed_block == 839999


def test_empty_ledger_appends_and_loads(tmp_path):
    ledger = EmptyBlockLedger(tmp_path / "bitmap_empty.txt")
    assert ledger.load() == set()

    ledger.record(840001)
    ledger.record_many([840003, 840004])
    ledger.record_many([])

    assert ledger.load() == {840001, 840003, 840004}
    assert ledger.path.read_text(encoding="utf-8") == "840001\n840003\n840004\n"
