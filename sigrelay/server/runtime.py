from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from sigrelay.core import proto
from sigrelay.core.handshake import RegistrationHandshake
from sigrelay.core.ice import IceServerProvider
from sigrelay.core.registry import Connection, ConnectionRegistry
from sigrelay.core.router import MessageRouter
from sigrelay.core.store import DurableQueue
from sigrelay.server.http import HttpFrontend
from sigrelay.utils import codec

log = logging.getLogger("sigrelay.server.runtime")


class RelayRuntime:
    """Signaling relay: WebSocket routing plus the HTTP side endpoints."""

    def __init__(self, config: Dict[str, Any], *, now=proto.now_ms) -> None:
        self.cfg = config
        self.now = now
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:8000"))
        self.db_path = str(config.get("db_path", "sigrelay.db"))
        self.static_dir = Path(config.get("static_dir", "public"))
        self.poll_interval_s = int(config.get("poll_interval_ms", proto.POLL_INTERVAL_MS)) / 1000
        self.message_ttl_ms = int(config.get("message_ttl_ms", proto.MESSAGE_TTL_MS))
        self.sweep_interval_secs = float(config.get("sweep_interval_secs", 5))
        twilio = config.get("twilio") or {}
        self.twilio_account_sid: Optional[str] = twilio.get("account_sid")
        self.twilio_auth_token: Optional[str] = twilio.get("auth_token")

        self.registry = ConnectionRegistry()
        self.queue: Optional[DurableQueue] = None
        self.router: Optional[MessageRouter] = None
        self.handshake: Optional[RegistrationHandshake] = None
        self.ice_provider: Optional[IceServerProvider] = None
        self.http: Optional[HttpFrontend] = None

        self._connections: set[Connection] = set()
        self._ws_server: Optional[Server] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.queue = await DurableQueue.open(self.db_path, now=self.now)
        self.router = MessageRouter(self.registry, self.queue, ttl_ms=self.message_ttl_ms, now=self.now)
        self.handshake = RegistrationHandshake(self.registry, self.queue, poll_interval_s=self.poll_interval_s)
        self.ice_provider = IceServerProvider(self.twilio_account_sid, self.twilio_auth_token)
        if not self.ice_provider.configured:
            log.warning("Twilio credentials not set; /ice-servers will only offer public STUN")
        self.http = HttpFrontend(self.static_dir, self.ice_provider)

        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            process_request=self.http.process_request,
        )
        log.info("server starting on %s:%d", self.listen_host, self.port)

        self._tasks.append(
            asyncio.create_task(self.queue.run_sweeper(self.sweep_interval_secs), name="queue-sweeper")
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for conn in list(self._connections):
            await conn.stop_polling()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        self._connections.clear()

        if self.ice_provider is not None:
            await self.ice_provider.aclose()
        if self.queue is not None:
            await self.queue.close()
            self.queue = None

    @property
    def port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket, identity=proto.new_id())
        self.registry.open(conn.identity, conn)
        self._connections.add(conn)
        log.info("client connected: %s from %s", conn.identity, self._fmt_remote(websocket))
        try:
            async for raw in websocket:
                await self._dispatch(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._on_disconnect(conn)

    async def _dispatch(self, conn: Connection, raw: Union[str, bytes]) -> None:
        try:
            frame = codec.loads(raw)
        except ValueError:
            log.warning("Discarding unparsable frame from %s", conn.identity)
            return
        if proto.is_registration(frame):
            await self.handshake.register(conn, frame)
            return
        await self.router.route(conn.identity, raw)

    async def _on_disconnect(self, conn: Connection) -> None:
        await conn.stop_polling()
        self.registry.close(conn.identity, conn)
        self._connections.discard(conn)
        log.info("client disconnected: %s", conn.identity)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = str(value).rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["RelayRuntime"]
