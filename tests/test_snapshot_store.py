from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from orderbook_replay.store.snapshots import SnapshotStore, SnapshotStoreError

BIDS = (("100.10", "1.5"), ("100.00", "2.0"))
ASKS = (("100.20", "0.7"), ("100.30", "3.1"))


def _store(tmp_path: Path) -> SnapshotStore:
    store = SnapshotStore(tmp_path / "nested" / "snapshots.sqlite")
    store.connect()
    return store


def test_connect_creates_database_file(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.db_path.exists()
    assert store.is_connected is True
    store.close()
    assert store.is_connected is False


def test_query_range_is_inclusive_and_ascending(tmp_path: Path) -> None:
    store = _store(tmp_path)
    base = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    for offset in (3, 0, 2, 1, 4):
        store.append(base + timedelta(seconds=offset), BIDS, ASKS)

    rows = store.query_range(base + timedelta(seconds=1), base + timedelta(seconds=3))

    assert [row.timestamp for row in rows] == [base + timedelta(seconds=offset) for offset in (1, 2, 3)]


def test_query_range_excludes_rows_before_sub_millisecond_start(tmp_path: Path) -> None:
    store = _store(tmp_path)
    base = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    store.append(base, BIDS, ASKS)
    store.append(base + timedelta(milliseconds=1), BIDS, ASKS)

    rows = store.query_range(base + timedelta(microseconds=500), base + timedelta(seconds=1))

    assert [row.timestamp for row in rows] == [base + timedelta(milliseconds=1)]


def test_query_range_preserves_levels_as_delivered(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ts = datetime(2026, 1, 15, 10, 0, 0, 250_000, tzinfo=UTC)
    store.append(ts, BIDS, ASKS)

    (row,) = store.query_range(ts, ts)

    assert row.timestamp == ts
    assert row.bids == BIDS
    assert row.asks == ASKS
    assert row.best_bid() == 100.10
    assert row.best_ask() == 100.20


def test_duplicate_timestamps_are_kept_in_insertion_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ts = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    store.append(ts, (("1", "1"),), ASKS)
    store.append(ts, (("2", "1"),), ASKS)

    rows = store.query_range(ts, ts)

    assert [row.bids[0][0] for row in rows] == ["1", "2"]


def test_empty_range_returns_empty_list(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append(datetime(2026, 1, 15, 10, 0, tzinfo=UTC), BIDS, ASKS)

    rows = store.query_range(datetime(2026, 1, 16, tzinfo=UTC), datetime(2026, 1, 17, tzinfo=UTC))

    assert rows == []


def test_summary_reports_count_and_bounds(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.summary().row_count == 0
    assert store.summary().first_timestamp is None

    first = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    last = first + timedelta(minutes=5)
    store.append(last, BIDS, ASKS)
    store.append(first, BIDS, ASKS)

    summary = store.summary()
    assert summary.row_count == 2
    assert summary.first_timestamp == first
    assert summary.last_timestamp == last


def test_operations_fail_after_close_and_close_is_idempotent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.close()
    store.close()

    with pytest.raises(SnapshotStoreError):
        store.append(datetime(2026, 1, 15, tzinfo=UTC), BIDS, ASKS)
    with pytest.raises(SnapshotStoreError):
        store.query_range(datetime(2026, 1, 15, tzinfo=UTC), datetime(2026, 1, 16, tzinfo=UTC))


def test_operations_require_connect(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path / "snapshots.sqlite")

    with pytest.raises(SnapshotStoreError):
        store.append(datetime(2026, 1, 15, tzinfo=UTC), BIDS, ASKS)


def test_connect_failure_raises_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied", encoding="utf-8")
    store = SnapshotStore(blocker / "snapshots.sqlite")

    with pytest.raises(SnapshotStoreError):
        store.connect()
