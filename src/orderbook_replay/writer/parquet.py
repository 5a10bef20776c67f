from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from pathlib import Path

import polars as pl

from orderbook_replay.core.models import OrderBookSnapshot, levels_to_json
from orderbook_replay.core.time_utils import floor_to_hour
from orderbook_replay.store.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

_DEDUP_COLUMNS = ["timestamp", "bids_json", "asks_json"]
_PARTITION_SCHEMA: dict[str, pl.DataType] = {
    "timestamp": pl.Datetime(time_unit="ms", time_zone="UTC"),
    "bids_json": pl.Utf8(),
    "asks_json": pl.Utf8(),
    "bid_levels": pl.Int32(),
    "ask_levels": pl.Int32(),
    "best_bid": pl.Float64(),
    "best_ask": pl.Float64(),
}


def snapshots_to_frame(snapshots: list[OrderBookSnapshot]) -> pl.DataFrame:
    rows = [
        {
            "timestamp": snapshot.timestamp,
            "bids_json": levels_to_json(snapshot.bids),
            "asks_json": levels_to_json(snapshot.asks),
            "bid_levels": len(snapshot.bids),
            "ask_levels": len(snapshot.asks),
            "best_bid": snapshot.best_bid(),
            "best_ask": snapshot.best_ask(),
        }
        for snapshot in snapshots
    ]
    return pl.DataFrame(rows, schema=_PARTITION_SCHEMA)


class SnapshotParquetExporter:
    """Copy stored snapshots into hourly parquet partitions for offline analysis."""

    def __init__(self, root_dir: Path, store: SnapshotStore) -> None:
        self._root_dir = root_dir
        self._store = store

    def export_range(self, start: datetime, end: datetime) -> list[Path]:
        by_hour: dict[datetime, list[OrderBookSnapshot]] = defaultdict(list)
        for snapshot in self._store.query_range(start, end):
            by_hour[floor_to_hour(snapshot.timestamp)].append(snapshot)

        written: list[Path] = []
        for hour_start in sorted(by_hour):
            written.append(self.write_hour_partition(hour_start, snapshots_to_frame(by_hour[hour_start])))
        logger.info(
            "Exported snapshots to parquet",
            extra={"start": start.isoformat(), "end": end.isoformat(), "partitions": len(written)},
        )
        return written

    def write_hour_partition(self, hour_start: datetime, frame: pl.DataFrame) -> Path:
        final_path = self.partition_path(hour_start)
        final_path.parent.mkdir(parents=True, exist_ok=True)

        effective_frame = frame
        if final_path.exists():
            existing_frame = pl.read_parquet(final_path)
            effective_frame = self._merge_partition_frames(existing_frame=existing_frame, new_frame=frame)

        tmp_dir = self._root_dir / ".tmp"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = tmp_dir / f"{uuid.uuid4().hex}.parquet"

        effective_frame.write_parquet(tmp_path, compression="zstd", statistics=True)
        tmp_path.replace(final_path)
        return final_path

    @staticmethod
    def _merge_partition_frames(existing_frame: pl.DataFrame, new_frame: pl.DataFrame) -> pl.DataFrame:
        merged = pl.concat([existing_frame, new_frame], how="vertical_relaxed")
        return merged.unique(subset=_DEDUP_COLUMNS, keep="first", maintain_order=True).sort(
            "timestamp", maintain_order=True
        )

    def partition_path(self, hour_start: datetime) -> Path:
        return (
            self._root_dir
            / "orderbook"
            / "snapshots"
            / f"year={hour_start:%Y}"
            / f"month={hour_start:%m}"
            / f"day={hour_start:%d}"
            / f"hour={hour_start:%H}"
            / "part.parquet"
        )
