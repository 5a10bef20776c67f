from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Any, Protocol

from orderbook_replay.core.models import OrderBookSnapshot
from orderbook_replay.replay.protocol import (
    ReplayRequest,
    completed_message,
    no_data_message,
    started_message,
    stream_failed_message,
    tick_message,
)
from orderbook_replay.store.snapshots import SnapshotStore, SnapshotStoreError

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    AWAITING_CONFIG = "awaiting_config"
    FETCHING = "fetching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ABORTED, SessionState.FAILED})


class ClientDisconnected(ConnectionError):
    """Raised by a replay client when the peer went away mid-send."""


class ReplayClient(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, payload: dict[str, Any]) -> None: ...


class ReplaySession:
    """Fetch one time range and stream it to one client, a snapshot per pacing tick.

    The client's liveness is checked before every send; a closed client or an ``abort()``
    ends the session as ABORTED without any further messages.
    """

    def __init__(
        self,
        *,
        client: ReplayClient,
        store: SnapshotStore,
        request: ReplayRequest,
        pacing_seconds: float = 1.0,
    ) -> None:
        self._client = client
        self._store = store
        self._request = request
        self._pacing_seconds = pacing_seconds
        self._abort_event = asyncio.Event()
        self._state = SessionState.AWAITING_CONFIG
        self._cursor = 0
        self._total = 0
        self._session_id = uuid.uuid4().hex[:12]

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def request(self) -> ReplayRequest:
        return self._request

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def total(self) -> int:
        return self._total

    def abort(self) -> None:
        self._abort_event.set()

    async def run(self) -> SessionState:
        if self._state is not SessionState.AWAITING_CONFIG:
            raise RuntimeError(f"Replay session {self._session_id} has already run")

        try:
            await self._run()
        except ClientDisconnected:
            self._finish(SessionState.ABORTED, reason="client went away during send")
        except Exception:
            logger.exception("Replay session crashed", extra={"session": self._session_id})
            self._finish(SessionState.FAILED)
            await self._send_if_live(stream_failed_message())
        return self._state

    async def _run(self) -> None:
        start, end = self._request.start, self._request.end
        self._state = SessionState.FETCHING
        logger.info(
            "Fetching replay range",
            extra={"session": self._session_id, "start": start.isoformat(), "end": end.isoformat()},
        )

        try:
            snapshots: list[OrderBookSnapshot] = await asyncio.to_thread(self._store.query_range, start, end)
        except SnapshotStoreError as exc:
            logger.error("Replay range query failed", extra={"session": self._session_id, "error": str(exc)})
            self._finish(SessionState.FAILED)
            await self._send_if_live(stream_failed_message())
            return

        if not self._is_live():
            self._finish(SessionState.ABORTED, reason="client gone before streaming")
            return

        if not snapshots:
            await self._client.send(no_data_message())
            self._finish(SessionState.COMPLETED, reason="no data")
            return

        self._total = len(snapshots)
        self._state = SessionState.STREAMING
        await self._client.send(started_message(self._total, start, end))

        for index, snapshot in enumerate(snapshots):
            if index > 0:
                await self._pause()
            if not self._is_live():
                snapshots.clear()
                self._finish(SessionState.ABORTED, reason="client disconnected during streaming")
                return
            await self._client.send(tick_message(snapshot, index, self._total))
            self._cursor = index + 1

        snapshots.clear()
        self._finish(SessionState.COMPLETED)
        await self._send_if_live(completed_message())

    async def _pause(self) -> None:
        if self._pacing_seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=self._pacing_seconds)
        except TimeoutError:
            pass

    def _is_live(self) -> bool:
        return not self._abort_event.is_set() and self._client.is_open

    async def _send_if_live(self, payload: dict[str, Any]) -> None:
        if not self._is_live():
            return
        try:
            await self._client.send(payload)
        except ClientDisconnected:
            logger.debug("Client gone before final message", extra={"session": self._session_id})

    def _finish(self, state: SessionState, *, reason: str | None = None) -> None:
        self._state = state
        logger.info(
            "Replay session finished",
            extra={
                "session": self._session_id,
                "state": state.value,
                "sent": self._cursor,
                "total": self._total,
                "reason": reason,
            },
        )
