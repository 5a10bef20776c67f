from __future__ import annotations

import asyncio
import logging
import signal
import threading
from datetime import datetime
from pathlib import Path

import duckdb
import typer
from rich.console import Console

from orderbook_replay.core.config import Settings
from orderbook_replay.core.logging import configure_logging
from orderbook_replay.core.time_utils import isoformat_utc, parse_utc_datetime
from orderbook_replay.pipeline.ingestion import LiveIngestionService
from orderbook_replay.replay.server import serve_until_signalled
from orderbook_replay.store.snapshots import SnapshotStore, SnapshotStoreError
from orderbook_replay.writer.parquet import SnapshotParquetExporter

app = typer.Typer(help="Order-book snapshot ingestion and replay CLI")
console = Console()
logger = logging.getLogger(__name__)


def _open_store(settings: Settings) -> SnapshotStore:
    store = SnapshotStore(settings.snapshot_db)
    try:
        store.connect()
    except SnapshotStoreError as exc:
        logger.error("Error connecting to snapshot store", extra={"error": str(exc)})
        console.print(f"[red]Cannot open snapshot store:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    return store


def _parse_cli_datetime(value: str, *, name: str) -> datetime:
    try:
        return parse_utc_datetime(value)
    except ValueError as exc:
        raise typer.BadParameter(f"{name} must be an ISO datetime, got {value!r}") from exc


def _duckdb_parquet_pattern(export_root: Path) -> str:
    root_resolved = export_root.expanduser().resolve()
    return str(
        root_resolved
        / "orderbook"
        / "snapshots"
        / "year=*"
        / "month=*"
        / "day=*"
        / "hour=*"
        / "part.parquet"
    )


def _starter_queries_sql() -> str:
    return (
        "-- Starter queries for the order-book snapshot view\n"
        "SELECT COUNT(*) AS snapshots_total FROM snapshots;\n\n"
        "SELECT timestamp, best_bid, best_ask, best_ask - best_bid AS spread\n"
        "FROM snapshots\n"
        "ORDER BY timestamp DESC\nLIMIT 200;\n\n"
        "SELECT date_trunc('hour', timestamp) AS hour_utc, COUNT(*) AS snapshots_per_hour\n"
        "FROM snapshots\n"
        "GROUP BY 1\n"
        "ORDER BY 1 DESC\nLIMIT 48;\n"
    )


@app.command("init-store")
def init_store() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    store = _open_store(settings)
    store.close()
    console.print(f"Snapshot store initialized at [bold]{settings.snapshot_db}[/bold]")


@app.command("stats")
def stats() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    store = _open_store(settings)
    try:
        summary = store.summary()
    finally:
        store.close()

    if summary.row_count == 0:
        console.print("No snapshots stored yet")
        return
    console.print(
        f"Snapshots: [bold]{summary.row_count}[/bold], "
        f"first={isoformat_utc(summary.first_timestamp)}, "
        f"last={isoformat_utc(summary.last_timestamp)}"
    )


@app.command("ingest")
def ingest(
    feed_url: str | None = typer.Option(default=None, help="Override the upstream websocket URL"),
) -> None:
    """
    Connect to the live feed and append every order-book snapshot until interrupted.
    """
    settings = Settings()
    if feed_url is not None:
        settings = settings.model_copy(update={"feed_url": feed_url})
    configure_logging(settings.log_level)

    store = _open_store(settings)
    service = LiveIngestionService(settings, store)
    stop = threading.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop.set())

    service.start()
    console.print(f"Ingesting from {settings.feed_url}")
    try:
        stop.wait()
    finally:
        service.stop()
        store.close()

    console.print(
        "Ingestion stopped: "
        f"stored={service.coordinator.stored_count}, "
        f"dropped={service.coordinator.dropped_count}"
    )


@app.command("serve")
def serve(
    port: int | None = typer.Option(default=None, min=0, max=65535, help="Override OBR_REPLAY_PORT"),
    pacing_seconds: float | None = typer.Option(default=None, min=0.0, help="Delay between replayed snapshots"),
) -> None:
    """
    Run the backtesting replay server until SIGINT/SIGTERM.
    """
    settings = _with_replay_overrides(Settings(), port=port, pacing_seconds=pacing_seconds)
    configure_logging(settings.log_level)

    store = _open_store(settings)
    asyncio.run(serve_until_signalled(settings, store))
    console.print("Replay server stopped")


@app.command("run")
def run(
    port: int | None = typer.Option(default=None, min=0, max=65535, help="Override OBR_REPLAY_PORT"),
    pacing_seconds: float | None = typer.Option(default=None, min=0.0, help="Delay between replayed snapshots"),
) -> None:
    """
    Run live ingestion and the replay server in one process over a shared store.
    """
    settings = _with_replay_overrides(Settings(), port=port, pacing_seconds=pacing_seconds)
    configure_logging(settings.log_level)

    store = _open_store(settings)
    service = LiveIngestionService(settings, store)
    asyncio.run(serve_until_signalled(settings, store, ingestion=service))
    console.print(
        "Stopped: "
        f"stored={service.coordinator.stored_count}, "
        f"dropped={service.coordinator.dropped_count}"
    )


@app.command("export-parquet")
def export_parquet(
    start: str = typer.Option(help="Start datetime in ISO format (UTC if no timezone)"),
    end: str = typer.Option(help="End datetime in ISO format (UTC if no timezone)"),
    export_root: Path | None = typer.Option(default=None, help="Lake root (default: OBR_EXPORT_ROOT)"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    start_utc = _parse_cli_datetime(start, name="start")
    end_utc = _parse_cli_datetime(end, name="end")
    if end_utc < start_utc:
        raise typer.BadParameter("end must be >= start")

    store = _open_store(settings)
    try:
        exporter = SnapshotParquetExporter(export_root or settings.export_root, store)
        written = exporter.export_range(start_utc, end_utc)
    finally:
        store.close()

    if not written:
        console.print("No snapshots in range; nothing exported")
        return
    console.print(f"[green]Exported {len(written)} hourly partition(s).[/green]")
    for path in written:
        console.print(f" - {path}")


@app.command("materialize-duckdb")
def materialize_duckdb(
    db_path: Path = typer.Option(Path("data/snapshots.duckdb"), help="Output DuckDB file"),
    export_root: Path | None = typer.Option(default=None, help="Lake root (default: OBR_EXPORT_ROOT)"),
    write_queries: bool = typer.Option(
        True,
        "--write-queries/--no-write-queries",
        help="Write a SQL starter file beside the DuckDB file.",
    ),
) -> None:
    """
    Create/update a DuckDB database with a `snapshots` view over the exported parquet partitions.
    """
    settings = Settings()
    configure_logging(settings.log_level)
    db_path_resolved = db_path.expanduser().resolve()
    db_path_resolved.parent.mkdir(parents=True, exist_ok=True)

    pattern = _duckdb_parquet_pattern(export_root or settings.export_root)
    pattern_sql = pattern.replace("'", "''")
    console.print(f"Building DuckDB at {db_path_resolved} from {pattern}")

    con = duckdb.connect(str(db_path_resolved))
    try:
        con.execute(
            f"""
            CREATE OR REPLACE VIEW snapshots AS
            SELECT *
            FROM read_parquet('{pattern_sql}', hive_partitioning=true);
            """
        )
    finally:
        con.close()

    console.print(f"[green]DuckDB view `snapshots` ready at {db_path_resolved}.[/green]")
    if write_queries:
        query_file = db_path_resolved.with_name(f"{db_path_resolved.stem}.queries.sql")
        query_file.write_text(_starter_queries_sql(), encoding="utf-8")
        console.print(f"[green]SQL starter created at {query_file}.[/green]")


def _with_replay_overrides(settings: Settings, *, port: int | None, pacing_seconds: float | None) -> Settings:
    update: dict[str, object] = {}
    if port is not None:
        update["replay_port"] = port
    if pacing_seconds is not None:
        update["replay_pacing_seconds"] = pacing_seconds
    if not update:
        return settings
    return settings.model_copy(update=update)


if __name__ == "__main__":
    app()
