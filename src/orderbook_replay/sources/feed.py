from __future__ import annotations

import asyncio
import enum
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from websockets.asyncio.client import connect as websockets_connect
from websockets.exceptions import ConnectionClosed

from orderbook_replay.core.models import LevelFormatError, PriceLevels, normalize_levels
from orderbook_replay.core.time_utils import utc_now

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[PriceLevels, PriceLevels, datetime], Any]


class FeedConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class FeedDecodeError(ValueError):
    """Raised when a feed frame cannot be turned into a bids/asks pair."""


@dataclass(frozen=True, slots=True)
class DecodedBook:
    bids: PriceLevels
    asks: PriceLevels


def decode_feed_message(raw: str | bytes) -> DecodedBook:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FeedDecodeError(f"Frame is not valid UTF-8: {exc}") from exc

    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise FeedDecodeError(f"Frame is not valid JSON: {exc}") from exc

    if not isinstance(message, dict):
        raise FeedDecodeError("Frame is not a JSON object")

    # combined-stream envelope: {"stream": "...", "data": {...}}
    data = message.get("data")
    if isinstance(message.get("stream"), str) and isinstance(data, dict):
        message = data

    if "bids" not in message or "asks" not in message:
        raise FeedDecodeError("Missing bids or asks in message")

    try:
        bids = normalize_levels(message["bids"], side="bids")
        asks = normalize_levels(message["asks"], side="asks")
    except LevelFormatError as exc:
        raise FeedDecodeError(str(exc)) from exc
    return DecodedBook(bids=bids, asks=asks)


class FeedConnector:
    """Own the upstream websocket: connect, receive, decode, reconnect forever.

    One worker thread runs one connect/receive loop, so at most one connection attempt is
    ever in flight. Transport failures never leave the worker; they end the current
    connection and schedule the next attempt after ``reconnect_seconds``.
    """

    def __init__(
        self,
        *,
        url: str,
        on_snapshot: SnapshotCallback,
        reconnect_seconds: float = 5.0,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 1.0,
        connect: Callable[..., Any] = websockets_connect,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._url = url
        self._on_snapshot = on_snapshot
        self._reconnect_seconds = reconnect_seconds
        self._connect_timeout_seconds = connect_timeout_seconds
        self._read_timeout_seconds = read_timeout_seconds
        self._connect = connect
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()
        self._state = FeedConnectionState.DISCONNECTED
        self._connection_attempts = 0
        self._messages_forwarded = 0
        self._messages_discarded = 0

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> FeedConnectionState:
        with self._state_lock:
            return self._state

    @property
    def connection_attempts(self) -> int:
        with self._state_lock:
            return self._connection_attempts

    @property
    def messages_forwarded(self) -> int:
        with self._state_lock:
            return self._messages_forwarded

    @property
    def messages_discarded(self) -> int:
        with self._state_lock:
            return self._messages_discarded

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="feed-connector", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def on_message(self, raw: str | bytes) -> bool:
        """Decode one frame and forward it; return whether it reached the callback."""
        receipt_time = self._clock()
        try:
            book = decode_feed_message(raw)
        except FeedDecodeError as exc:
            self._count(discarded=True)
            logger.warning("Discarding feed message", extra={"reason": str(exc)})
            return False

        try:
            self._on_snapshot(book.bids, book.asks, receipt_time)
        except Exception:
            self._count(discarded=True)
            logger.exception("Snapshot handler failed", extra={"timestamp": receipt_time.isoformat()})
            return False

        self._count(discarded=False)
        return True

    def _run_loop(self) -> None:
        with asyncio.Runner() as runner:
            while not self._stop_event.is_set():
                try:
                    runner.run(self._run_once())
                except ConnectionClosed as exc:
                    close_code = exc.rcvd.code if exc.rcvd is not None else None
                    logger.warning(
                        "Feed connection closed; reconnecting",
                        extra={"url": self._url, "close_code": close_code},
                    )
                except Exception:
                    logger.exception("Feed connection failed; reconnecting", extra={"url": self._url})
                finally:
                    self._set_state(FeedConnectionState.DISCONNECTED)

                if self._stop_event.wait(self._reconnect_seconds):
                    break
        logger.info("Feed connector stopped", extra={"url": self._url})

    async def _run_once(self) -> None:
        self._set_state(FeedConnectionState.CONNECTING)
        with self._state_lock:
            self._connection_attempts += 1
            attempt = self._connection_attempts

        async with self._connect(
            self._url,
            open_timeout=self._connect_timeout_seconds,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=5,
            max_size=2**22,
        ) as websocket:
            self._set_state(FeedConnectionState.CONNECTED)
            logger.info("Feed connected", extra={"url": self._url, "attempt": attempt})

            while not self._stop_event.is_set():
                try:
                    payload = await asyncio.wait_for(websocket.recv(), timeout=self._read_timeout_seconds)
                except TimeoutError:
                    continue
                self.on_message(payload)

    def _set_state(self, state: FeedConnectionState) -> None:
        with self._state_lock:
            self._state = state

    def _count(self, *, discarded: bool) -> None:
        with self._state_lock:
            if discarded:
                self._messages_discarded += 1
            else:
                self._messages_forwarded += 1
