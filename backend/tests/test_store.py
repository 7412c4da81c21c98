from __future__ import annotations

from tracker.core.state import BlockRecord
from tracker.core.store import DatasetStore


def _rec(n: int, inscription: str = None, sat: int = None) -> BlockRecord:
    return BlockRecord(block_number=n, inscription_id=inscription or f"insc{n}i0", sat_number=sat)


def _lines(path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


def test_open_creates_file_with_header(csv_path):
    store = DatasetStore(csv_path)
    result = store.open()
    assert result.stored == set()
    assert result.order_ok
    assert _lines(csv_path) == ["block_number,inscription_id,sat_number"]


def test_append_is_line_oriented(csv_path):
    store = DatasetStore(csv_path)
    store.open()
    store.append(_rec(840000))
    store.append(_rec(840002, sat=1234))
    assert _lines(csv_path) == [
        "block_number,inscription_id,sat_number",
        "840000,insc840000i0,",
        "840002,insc840002i0,1234",
    ]
    assert store.block_numbers() == {840000, 840002}


def test_reopen_reports_stored_blocks(csv_path):
    store = DatasetStore(csv_path)
    store.open()
    store.append(_rec(840000))
    store.append(_rec(840002))

    result = DatasetStore(csv_path).open()
    assert result.stored == {840000, 840002}
    assert result.order_ok


def test_sort_and_dedupe_first_occurrence_wins(csv_path):
    store = DatasetStore(csv_path)
    store.open()
    store.append(_rec(840005, "first"))
    store.append(_rec(840003))
    store.append(_rec(840005, "second"))
    store.append(_rec(840001))

    before, after = store.sort_and_dedupe()

    assert (before, after) == (4, 3)
    assert [r.block_number for r in store.range(0, 10)] == [840001, 840003, 840005]
    assert store.lookup(840005).inscription_id == "first"
    assert store.validate_order()


def test_header_always_names_the_sat_column(csv_path):
    store = DatasetStore(csv_path)
    store.open()
    store.append(_rec(840002, sat=99))
    store.append(_rec(840001))
    store.sort_and_dedupe()
    assert _lines(csv_path) == [
        "block_number,inscription_id,sat_number",
        "840001,insc840001i0,",
        "840002,insc840002i0,99",
    ]


def test_sort_pending_after_n_appends(csv_path):
    store = DatasetStore(csv_path, sort_every=3)
    store.open()
    store.append(_rec(1))
    store.append(_rec(2))
    assert not store.sort_pending
    store.append(_rec(3))
    assert store.sort_pending
    store.sort_and_dedupe()
    assert not store.sort_pending


def test_out_of_order_file_flags_sort(csv_path):
    csv_path.write_text("block_number,inscription_id\n840002,b\n840001,a\n", encoding="utf-8")
    store = DatasetStore(csv_path)
    result = store.open()
    assert result.stored == {840001, 840002}
    assert not result.order_ok
    assert store.sort_pending


def test_two_column_file_gets_full_header(csv_path):
    csv_path.write_text("block_number,inscription_id\n840001,a\n840003,b\n", encoding="utf-8")
    store = DatasetStore(csv_path)
    result = store.open()
    assert result.stored == {840001, 840003}
    assert _lines(csv_path) == ["block_number,inscription_id,sat_number", "840001,a,", "840003,b,"]

    store.append(_rec(840004, sat=7))
    assert _lines(csv_path)[-1] == "840004,insc840004i0,7"


def test_legacy_file_is_migrated(csv_path):
    csv_path.write_text(
        "block_number,inscription_id,status,timestamp\n"
        "840000,abci0,success,2024-04-20T00:00:00Z\n"
        "840001,,no_bitmap,2024-04-20T00:01:00Z\n"
        "840002,,error,2024-04-20T00:02:00Z\n",
        encoding="utf-8",
    )
    store = DatasetStore(csv_path)
    result = store.open()

    assert result.stored == {840000}
    assert result.legacy_empty == {840001, 840002}
    assert _lines(csv_path) == ["block_number,inscription_id,sat_number", "840000,abci0,"]
    backup = csv_path.with_name("bitmap_data_backup.csv")
    assert backup.exists()
    assert "status" in backup.read_text(encoding="utf-8")


def test_listener_failure_does_not_reach_writer(csv_path):
    store = DatasetStore(csv_path)
    store.open()
    seen = []

    def broken(record):
        raise RuntimeError("boom")

    store.subscribe(broken)
    store.subscribe(lambda record: seen.append(record.block_number))
    store.append(_rec(840000))

    assert seen == [840000]
    assert store.block_numbers() == {840000}


def test_read_operations(csv_path):
    store = DatasetStore(csv_path)
    store.open()
    for n in (840000, 840001, 840004, 840007):
        store.append(_rec(n, sat=5000 + n if n == 840004 else None))

    assert store.lookup(840004).sat_number == 845004
    assert store.lookup(840002) is None
    assert [r.block_number for r in store.range(1, 2)] == [840001, 840004]
    assert store.range(10, 5) == []
    assert store.range(0, 0) == []
    assert [r.block_number for r in store.tail(2)] == [840004, 840007]
    assert store.tail(0) == []
    assert [r.block_number for r in store.search("insc84000")] == [840000, 840001, 840004, 840007]
    assert [r.block_number for r in store.search("840007")] == [840007]
    assert [r.block_number for r in store.search("845004")] == [840004]
    assert len(store.search("INSC", limit=2)) == 2
    assert store.search("   ") == []
    assert store.count() == 4
