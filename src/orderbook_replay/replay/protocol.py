from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from orderbook_replay.core.models import OrderBookSnapshot
from orderbook_replay.core.time_utils import isoformat_utc, parse_utc_datetime

MISSING_DATES_MESSAGE = "Start date and end date are required"
INVALID_FORMAT_MESSAGE = "Invalid configuration format"
SESSION_ACTIVE_MESSAGE = "Replay session already in progress"
NO_DATA_MESSAGE = "No data found for the specified date range"
STREAM_FAILED_MESSAGE = "Error during data streaming"


class ReplayRequestError(ValueError):
    """Raised for a client configuration that cannot start a replay session."""


class ReplayRequest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    start: datetime = Field(alias="startDate")
    end: datetime = Field(alias="endDate")

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_point_in_time(cls, value: Any) -> datetime:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            try:
                return value.astimezone(UTC)
            except OverflowError as exc:
                raise ValueError("date/time is out of range") from exc
        if not isinstance(value, str):
            raise ValueError("expected an ISO-8601 date/time string")
        try:
            return parse_utc_datetime(value)
        except OverflowError as exc:
            # offsets at the year 1 / 9999 edges cannot be shifted to UTC
            raise ValueError("date/time is out of range") from exc

    @model_validator(mode="after")
    def _check_order(self) -> ReplayRequest:
        if self.start > self.end:
            raise ValueError("startDate must not be after endDate")
        return self


def parse_replay_request(raw: str | bytes) -> ReplayRequest:
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as exc:
        raise ReplayRequestError(INVALID_FORMAT_MESSAGE) from exc

    if not isinstance(message, dict):
        raise ReplayRequestError(INVALID_FORMAT_MESSAGE)
    if not message.get("startDate") or not message.get("endDate"):
        raise ReplayRequestError(MISSING_DATES_MESSAGE)

    try:
        return ReplayRequest.model_validate(message)
    except ValidationError as exc:
        raise ReplayRequestError(_describe_validation_error(exc)) from exc


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    reason = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"Invalid {location}: {reason}"
    return reason


def connected_message() -> dict[str, Any]:
    return {
        "status": "connected",
        "message": "Connected to backtesting server. Send configuration to begin.",
    }


def config_error_message(reason: str) -> dict[str, Any]:
    return {"error": reason}


def no_data_message() -> dict[str, Any]:
    return {"status": "error", "message": NO_DATA_MESSAGE}


def stream_failed_message() -> dict[str, Any]:
    return {"status": "error", "message": STREAM_FAILED_MESSAGE}


def started_message(total: int, start: datetime, end: datetime) -> dict[str, Any]:
    return {
        "status": "started",
        "totalSnapshots": total,
        "startTime": isoformat_utc(start),
        "endTime": isoformat_utc(end),
    }


def tick_message(snapshot: OrderBookSnapshot, index: int, total: int) -> dict[str, Any]:
    return {
        "timestamp": isoformat_utc(snapshot.timestamp),
        "bids": [list(level) for level in snapshot.bids],
        "asks": [list(level) for level in snapshot.asks],
        "progress": f"{index + 1}/{total}",
    }


def completed_message() -> dict[str, Any]:
    return {"status": "completed", "message": "Backtesting session completed"}


def shutdown_message() -> dict[str, Any]:
    return {"status": "shutdown", "message": "Server shutting down"}
