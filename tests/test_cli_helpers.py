import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import duckdb
from typer.testing import CliRunner

from orderbook_replay.cli import app as cli_app
from orderbook_replay.cli.app import _duckdb_parquet_pattern, _starter_queries_sql, app
from orderbook_replay.core.logging import ExtraFieldsFormatter
from orderbook_replay.store.snapshots import SnapshotStore
from orderbook_replay.writer.parquet import SnapshotParquetExporter


def test_duckdb_parquet_pattern_is_absolute_and_hive_partitioned(tmp_path: Path) -> None:
    pattern = _duckdb_parquet_pattern(tmp_path)

    assert pattern.startswith(str(tmp_path.resolve()))
    assert "orderbook/snapshots/year=*" in pattern
    assert pattern.endswith("part.parquet")


def test_starter_queries_sql_targets_snapshots_view() -> None:
    sql = _starter_queries_sql()
    assert "FROM snapshots" in sql
    assert "best_ask - best_bid" in sql


def test_extra_fields_formatter_appends_context() -> None:
    formatter = ExtraFieldsFormatter("%(message)s")
    record = logging.LogRecord("orderbook_replay", logging.INFO, __file__, 1, "Feed connected", None, None)
    record.url = "wss://example.invalid/ws"
    record.attempt = 2

    assert formatter.format(record) == "Feed connected [attempt=2 url=wss://example.invalid/ws]"


def test_init_store_and_stats_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("OBR_SNAPSHOT_DB", str(tmp_path / "db" / "snapshots.sqlite"))
    runner = CliRunner()

    init_result = runner.invoke(app, ["init-store"])
    stats_result = runner.invoke(app, ["stats"])

    assert init_result.exit_code == 0
    assert (tmp_path / "db" / "snapshots.sqlite").exists()
    assert stats_result.exit_code == 0
    assert "No snapshots stored yet" in stats_result.output


def test_unreachable_store_exits_with_code_one(tmp_path: Path, monkeypatch) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    monkeypatch.setenv("OBR_SNAPSHOT_DB", str(blocker / "snapshots.sqlite"))

    result = CliRunner().invoke(app, ["stats"])

    assert result.exit_code == 1


def test_materialize_duckdb_configures_logging_and_builds_view(tmp_path: Path, monkeypatch) -> None:
    store = SnapshotStore(tmp_path / "snapshots.sqlite")
    store.connect()
    moment = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    store.append(moment, (("100.0", "1.0"),), (("101.0", "1.0"),))
    SnapshotParquetExporter(tmp_path / "lake", store).export_range(moment, moment + timedelta(hours=1))
    store.close()

    levels: list[str] = []
    monkeypatch.setattr(cli_app, "configure_logging", levels.append)
    monkeypatch.setenv("OBR_LOG_LEVEL", "DEBUG")
    db_path = tmp_path / "duck" / "snapshots.duckdb"

    result = CliRunner().invoke(
        app,
        ["materialize-duckdb", "--db-path", str(db_path), "--export-root", str(tmp_path / "lake"), "--no-write-queries"],
    )

    assert result.exit_code == 0, result.output
    assert levels == ["DEBUG"]
    con = duckdb.connect(str(db_path))
    try:
        assert con.execute("SELECT COUNT(*) FROM snapshots").fetchone() == (1,)
    finally:
        con.close()
