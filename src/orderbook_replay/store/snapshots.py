from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from orderbook_replay.core.models import OrderBookSnapshot, PriceLevels, levels_from_json, levels_to_json
from orderbook_replay.core.time_utils import from_epoch_ms, to_epoch_ms, to_epoch_ms_ceil

logger = logging.getLogger(__name__)


class SnapshotStoreError(RuntimeError):
    """Raised when the snapshot database cannot be reached, written or read."""


@dataclass(frozen=True, slots=True)
class StoreSummary:
    row_count: int
    first_timestamp: datetime | None
    last_timestamp: datetime | None


class SnapshotStore:
    """SQLite-backed append/range store for order-book snapshots.

    Every operation opens its own short-lived connection, so one instance can be shared
    between the ingestion thread and replay worker threads. WAL journaling lets appends
    and range reads proceed concurrently.
    """

    def __init__(self, db_path: Path, *, timeout_seconds: float = 5.0) -> None:
        self._db_path = db_path
        self._timeout_seconds = timeout_seconds
        self._state_lock = threading.Lock()
        self._connected = False
        self._closed = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        with self._state_lock:
            return self._connected and not self._closed

    def connect(self) -> None:
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._open() as connection:
                connection.execute("PRAGMA journal_mode=WAL")
                connection.execute("PRAGMA synchronous=NORMAL")
                connection.execute(
                    """
                    CREATE TABLE IF NOT EXISTS orderbook_snapshots (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        timestamp_ms INTEGER NOT NULL,
                        bids_json TEXT NOT NULL,
                        asks_json TEXT NOT NULL
                    )
                    """
                )
                connection.execute(
                    "CREATE INDEX IF NOT EXISTS idx_orderbook_snapshots_timestamp "
                    "ON orderbook_snapshots(timestamp_ms)"
                )
                connection.commit()
        except (sqlite3.Error, OSError) as exc:
            raise SnapshotStoreError(f"Cannot open snapshot store at {self._db_path}: {exc}") from exc

        with self._state_lock:
            self._connected = True
            self._closed = False
        logger.info("Connected to snapshot store", extra={"db_path": str(self._db_path)})

    def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            was_connected = self._connected
            self._connected = False
        if was_connected:
            logger.info("Disconnected from snapshot store", extra={"db_path": str(self._db_path)})

    def append(self, timestamp: datetime, bids: PriceLevels, asks: PriceLevels) -> int:
        self._ensure_open()
        try:
            with self._open() as connection:
                cursor = connection.execute(
                    """
                    INSERT INTO orderbook_snapshots(timestamp_ms, bids_json, asks_json)
                    VALUES (?, ?, ?)
                    """,
                    (to_epoch_ms(timestamp), levels_to_json(bids), levels_to_json(asks)),
                )
                connection.commit()
                return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise SnapshotStoreError(f"Snapshot append failed: {exc}") from exc

    def query_range(self, start: datetime, end: datetime) -> list[OrderBookSnapshot]:
        """Return snapshots with ``start <= timestamp <= end``, oldest first."""
        self._ensure_open()
        try:
            with self._open() as connection:
                rows = connection.execute(
                    """
                    SELECT timestamp_ms, bids_json, asks_json
                    FROM orderbook_snapshots
                    WHERE timestamp_ms BETWEEN ? AND ?
                    ORDER BY timestamp_ms ASC, id ASC
                    """,
                    (to_epoch_ms_ceil(start), to_epoch_ms(end)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise SnapshotStoreError(f"Snapshot range query failed: {exc}") from exc

        return [
            OrderBookSnapshot(
                timestamp=from_epoch_ms(int(timestamp_ms)),
                bids=levels_from_json(bids_json),
                asks=levels_from_json(asks_json),
            )
            for timestamp_ms, bids_json, asks_json in rows
        ]

    def summary(self) -> StoreSummary:
        self._ensure_open()
        try:
            with self._open() as connection:
                row_count, first_ms, last_ms = connection.execute(
                    "SELECT COUNT(*), MIN(timestamp_ms), MAX(timestamp_ms) FROM orderbook_snapshots"
                ).fetchone()
        except sqlite3.Error as exc:
            raise SnapshotStoreError(f"Snapshot summary failed: {exc}") from exc

        return StoreSummary(
            row_count=int(row_count),
            first_timestamp=from_epoch_ms(int(first_ms)) if first_ms is not None else None,
            last_timestamp=from_epoch_ms(int(last_ms)) if last_ms is not None else None,
        )

    def _ensure_open(self) -> None:
        with self._state_lock:
            if self._closed:
                raise SnapshotStoreError("Snapshot store is closed")
            if not self._connected:
                raise SnapshotStoreError("Snapshot store is not connected; call connect() first")

    @contextmanager
    def _open(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path, timeout=self._timeout_seconds)
        try:
            yield connection
        finally:
            connection.close()
