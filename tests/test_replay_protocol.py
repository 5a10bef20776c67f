from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from orderbook_replay.core.models import OrderBookSnapshot
from orderbook_replay.replay.protocol import (
    INVALID_FORMAT_MESSAGE,
    MISSING_DATES_MESSAGE,
    ReplayRequestError,
    parse_replay_request,
    started_message,
    tick_message,
)


def test_parse_accepts_iso_dates_and_defaults_to_utc() -> None:
    request = parse_replay_request(
        json.dumps({"startDate": "2026-01-15T10:00:00", "endDate": "2026-01-15T12:00:00+02:00"})
    )

    assert request.start == datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    assert request.end == datetime(2026, 1, 15, 10, 0, tzinfo=UTC)


def test_parse_accepts_zulu_suffix_and_bytes() -> None:
    request = parse_replay_request(b'{"startDate": "2026-01-15T10:00:00Z", "endDate": "2026-01-15T10:00:01.500Z"}')

    assert request.end == datetime(2026, 1, 15, 10, 0, 1, 500_000, tzinfo=UTC)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("{not json", INVALID_FORMAT_MESSAGE),
        ('["2026-01-15", "2026-01-16"]', INVALID_FORMAT_MESSAGE),
        ('{"startDate": "2026-01-15"}', MISSING_DATES_MESSAGE),
        ('{"startDate": "", "endDate": "2026-01-16"}', MISSING_DATES_MESSAGE),
    ],
)
def test_parse_rejects_bad_shapes(raw: str, expected: str) -> None:
    with pytest.raises(ReplayRequestError) as excinfo:
        parse_replay_request(raw)

    assert str(excinfo.value) == expected


@pytest.mark.parametrize(
    ("start", "end"),
    [
        ("yesterday", "2026-01-16"),
        ("0001-01-01T00:00:00+01:00", "2024-01-01T00:00:00Z"),
        ("2024-01-01T00:00:00Z", "9999-12-31T23:59:59-01:00"),
    ],
)
def test_parse_rejects_unparseable_dates(start: str, end: str) -> None:
    with pytest.raises(ReplayRequestError) as excinfo:
        parse_replay_request(json.dumps({"startDate": start, "endDate": end}))

    assert "Invalid" in str(excinfo.value)


def test_parse_rejects_deeply_nested_json() -> None:
    with pytest.raises(ReplayRequestError) as excinfo:
        parse_replay_request("[" * 200_000)

    assert str(excinfo.value) == INVALID_FORMAT_MESSAGE


def test_parse_rejects_inverted_range_but_accepts_zero_length() -> None:
    with pytest.raises(ReplayRequestError) as excinfo:
        parse_replay_request('{"startDate": "2026-01-16", "endDate": "2026-01-15"}')
    assert "after" in str(excinfo.value)

    request = parse_replay_request('{"startDate": "2026-01-15", "endDate": "2026-01-15"}')
    assert request.start == request.end


def test_started_and_tick_payload_shapes() -> None:
    snapshot = OrderBookSnapshot(
        timestamp=datetime(2026, 1, 15, 10, 0, 1, tzinfo=UTC),
        bids=(("100.0", "1.0"),),
        asks=(("101.0", "2.0"),),
    )

    started = started_message(2, datetime(2026, 1, 15, 10, tzinfo=UTC), datetime(2026, 1, 15, 11, tzinfo=UTC))
    tick = tick_message(snapshot, index=1, total=2)

    assert started == {
        "status": "started",
        "totalSnapshots": 2,
        "startTime": "2026-01-15T10:00:00.000Z",
        "endTime": "2026-01-15T11:00:00.000Z",
    }
    assert tick == {
        "timestamp": "2026-01-15T10:00:01.000Z",
        "bids": [["100.0", "1.0"]],
        "asks": [["101.0", "2.0"]],
        "progress": "2/2",
    }
