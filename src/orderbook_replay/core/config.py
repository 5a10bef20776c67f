from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    feed_url: str = Field(default="wss://stream.binance.com:9443/ws/btcusdt@depth20@1000ms")
    feed_reconnect_seconds: float = Field(default=5.0, gt=0)
    feed_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    feed_read_timeout_seconds: float = Field(default=1.0, gt=0)

    snapshot_db: Path = Field(default=Path("./data/orderbook_snapshots.sqlite"))

    replay_host: str = Field(default="0.0.0.0")
    replay_port: int = Field(default=8080, ge=0, le=65535)
    replay_pacing_seconds: float = Field(default=1.0, ge=0)

    export_root: Path = Field(default=Path("./data/lake"))

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="OBR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
