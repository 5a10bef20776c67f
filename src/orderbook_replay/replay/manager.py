from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from orderbook_replay.replay.protocol import (
    SESSION_ACTIVE_MESSAGE,
    ReplayRequestError,
    config_error_message,
    connected_message,
    parse_replay_request,
    shutdown_message,
)
from orderbook_replay.replay.session import ClientDisconnected, ReplaySession
from orderbook_replay.store.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class WebSocketReplayClient:
    """Replay client backed by a ``websockets`` server connection."""

    def __init__(self, connection: ServerConnection) -> None:
        self._connection = connection
        self.client_id = uuid.uuid4().hex[:12]

    @property
    def connection(self) -> ServerConnection:
        return self._connection

    @property
    def is_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def send(self, payload: dict[str, Any]) -> None:
        try:
            await self._connection.send(json.dumps(payload, separators=(",", ":")))
        except ConnectionClosed as exc:
            raise ClientDisconnected(f"client {self.client_id} closed the connection") from exc

    async def close(self) -> None:
        await self._connection.close()


@dataclass(slots=True)
class _ClientSlot:
    client: WebSocketReplayClient
    session: ReplaySession | None = None
    task: asyncio.Task[Any] | None = None

    @property
    def has_active_session(self) -> bool:
        return self.task is not None and not self.task.done()


class SessionManager:
    """Serve replay clients: one slot per connection, at most one running session per slot."""

    def __init__(self, store: SnapshotStore, *, pacing_seconds: float = 1.0) -> None:
        self._store = store
        self._pacing_seconds = pacing_seconds
        self._slots: dict[str, _ClientSlot] = {}
        self._shutdown_started = False

    @property
    def client_count(self) -> int:
        return len(self._slots)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_started

    async def handle(self, connection: ServerConnection) -> None:
        client = WebSocketReplayClient(connection)
        if self._shutdown_started:
            logger.info("Refusing client during shutdown", extra={"client": client.client_id})
            try:
                await client.send(shutdown_message())
            except ClientDisconnected:
                pass
            await client.close()
            return

        slot = self.on_client_connect(client)
        try:
            await client.send(connected_message())
            async for raw in connection:
                await self.on_client_message(slot, raw)
        except (ConnectionClosed, ClientDisconnected):
            logger.debug("Client connection dropped", extra={"client": client.client_id})
        finally:
            await self.on_client_disconnect(client)

    def on_client_connect(self, client: WebSocketReplayClient) -> _ClientSlot:
        slot = _ClientSlot(client=client)
        self._slots[client.client_id] = slot
        logger.info("Client connected to backtesting server", extra={"client": client.client_id})
        return slot

    async def on_client_message(self, slot: _ClientSlot, raw: str | bytes) -> ReplaySession | None:
        client = slot.client
        if self._shutdown_started:
            return None
        if slot.has_active_session:
            await client.send(config_error_message(SESSION_ACTIVE_MESSAGE))
            return None

        try:
            request = parse_replay_request(raw)
        except ReplayRequestError as exc:
            logger.warning("Rejected replay configuration", extra={"client": client.client_id, "reason": str(exc)})
            await client.send(config_error_message(str(exc)))
            return None

        session = ReplaySession(
            client=client,
            store=self._store,
            request=request,
            pacing_seconds=self._pacing_seconds,
        )
        slot.session = session
        slot.task = asyncio.create_task(session.run(), name=f"replay-{session.session_id}")
        logger.info(
            "Replay session started",
            extra={"client": client.client_id, "session": session.session_id},
        )
        return session

    async def on_client_disconnect(self, client: WebSocketReplayClient) -> None:
        slot = self._slots.pop(client.client_id, None)
        if slot is None:
            return
        if slot.session is not None:
            slot.session.abort()
        if slot.task is not None:
            await asyncio.gather(slot.task, return_exceptions=True)
        logger.info("Client disconnected from backtesting server", extra={"client": client.client_id})

    async def shutdown(self) -> None:
        """Notify and close every client, then close the store. Later calls are no-ops."""
        if self._shutdown_started:
            return
        self._shutdown_started = True

        slots = list(self._slots.values())
        logger.info("Shutting down backtesting server", extra={"clients": len(slots)})

        for slot in slots:
            if slot.session is not None:
                slot.session.abort()

        for slot in slots:
            if not slot.client.is_open:
                continue
            try:
                await slot.client.send(shutdown_message())
            except ClientDisconnected:
                continue

        tasks = [slot.task for slot in slots if slot.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for slot in slots:
            await slot.client.close()

        await asyncio.to_thread(self._store.close)
