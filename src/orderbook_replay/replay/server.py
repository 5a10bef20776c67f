from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

from websockets.asyncio.server import serve

from orderbook_replay.core.config import Settings
from orderbook_replay.pipeline.ingestion import LiveIngestionService
from orderbook_replay.replay.manager import SessionManager
from orderbook_replay.store.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class ReplayServer:
    """Websocket front door for the session manager.

    When an ingestion service is attached it runs for the lifetime of the server and is
    stopped before the shutdown broadcast, so the store is closed only after the last append.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        manager: SessionManager,
        ingestion: LiveIngestionService | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._manager = manager
        self._ingestion = ingestion
        self._bound_port: int | None = None

    @property
    def manager(self) -> SessionManager:
        return self._manager

    @property
    def bound_port(self) -> int | None:
        return self._bound_port

    async def run(self, stop: asyncio.Event, on_ready: Callable[[int], None] | None = None) -> None:
        async with serve(self._manager.handle, self._host, self._port) as server:
            self._bound_port = int(server.sockets[0].getsockname()[1])
            logger.info(
                "Backtesting WebSocket server started",
                extra={"host": self._host, "port": self._bound_port},
            )
            if self._ingestion is not None:
                self._ingestion.start()
            try:
                if on_ready is not None:
                    on_ready(self._bound_port)
                await stop.wait()
            finally:
                if self._ingestion is not None:
                    await asyncio.to_thread(self._ingestion.stop)
                await self._manager.shutdown()


async def serve_until_signalled(
    settings: Settings,
    store: SnapshotStore,
    *,
    ingestion: LiveIngestionService | None = None,
) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    manager = SessionManager(store, pacing_seconds=settings.replay_pacing_seconds)
    server = ReplayServer(
        host=settings.replay_host,
        port=settings.replay_port,
        manager=manager,
        ingestion=ingestion,
    )
    try:
        await server.run(stop)
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
