from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from orderbook_replay.core.config import Settings
from orderbook_replay.core.models import PriceLevels
from orderbook_replay.sources.feed import FeedConnector
from orderbook_replay.store.snapshots import SnapshotStore, SnapshotStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordOutcome:
    timestamp: datetime
    stored: bool
    row_id: int | None = None
    error: str | None = None


class IngestionCoordinator:
    """Write each decoded snapshot to the store, one append per snapshot.

    Durability is at-most-once: a failed append is logged and the snapshot is dropped so
    the feed loop never waits on storage retries.
    """

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._stored_count = 0
        self._dropped_count = 0

    @property
    def stored_count(self) -> int:
        with self._lock:
            return self._stored_count

    @property
    def dropped_count(self) -> int:
        with self._lock:
            return self._dropped_count

    def record(self, bids: PriceLevels, asks: PriceLevels, timestamp: datetime) -> RecordOutcome:
        if not bids or not asks:
            self._bump(stored=False)
            logger.warning("Refusing snapshot without bids and asks", extra={"timestamp": timestamp.isoformat()})
            return RecordOutcome(timestamp=timestamp, stored=False, error="bids and asks are required")

        try:
            row_id = self._store.append(timestamp, bids, asks)
        except SnapshotStoreError as exc:
            self._bump(stored=False)
            logger.error(
                "Dropping snapshot after store failure",
                extra={"timestamp": timestamp.isoformat(), "error": str(exc)},
            )
            return RecordOutcome(timestamp=timestamp, stored=False, error=str(exc))

        self._bump(stored=True)
        logger.debug("Inserted snapshot", extra={"timestamp": timestamp.isoformat(), "row_id": row_id})
        return RecordOutcome(timestamp=timestamp, stored=True, row_id=row_id)

    def _bump(self, *, stored: bool) -> None:
        with self._lock:
            if stored:
                self._stored_count += 1
            else:
                self._dropped_count += 1


class LiveIngestionService:
    """Feed connector wired to an ingestion coordinator over a shared store."""

    def __init__(self, settings: Settings, store: SnapshotStore) -> None:
        self._coordinator = IngestionCoordinator(store)
        self._connector = FeedConnector(
            url=settings.feed_url,
            on_snapshot=self._coordinator.record,
            reconnect_seconds=settings.feed_reconnect_seconds,
            connect_timeout_seconds=settings.feed_connect_timeout_seconds,
            read_timeout_seconds=settings.feed_read_timeout_seconds,
        )

    @property
    def coordinator(self) -> IngestionCoordinator:
        return self._coordinator

    @property
    def connector(self) -> FeedConnector:
        return self._connector

    def start(self) -> None:
        logger.info("Ingestion started", extra={"url": self._connector.url})
        self._connector.start()

    def stop(self) -> None:
        self._connector.stop()
        logger.info(
            "Ingestion stopped",
            extra={
                "stored": self._coordinator.stored_count,
                "dropped": self._coordinator.dropped_count,
            },
        )
