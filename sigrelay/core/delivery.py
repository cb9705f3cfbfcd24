from __future__ import annotations

import asyncio
import logging
from typing import Optional

import websockets

from .proto import POLL_INTERVAL_MS, queue_prefix
from .registry import Connection, ConnectionRegistry
from .store import DurableQueue

log = logging.getLogger("sigrelay.delivery")


class PollingDeliveryLoop:
    """Drains queued messages for one identity onto one connection.

    Each cycle scans ``("messages", identity)``, sends every entry and only
    then deletes it, so a failure between the two redelivers on the next
    cycle (at-least-once). The loop lives while the transport is open; the
    owner cancels the task on close or when the identity moves elsewhere.
    With a registry attached the loop also stops on its own once the
    identity no longer maps to its connection.
    """

    def __init__(
        self,
        conn: Connection,
        identity: str,
        queue: DurableQueue,
        *,
        registry: Optional[ConnectionRegistry] = None,
        interval_s: float = POLL_INTERVAL_MS / 1000,
    ) -> None:
        self.conn = conn
        self.identity = identity
        self.queue = queue
        self.registry = registry
        self.interval_s = interval_s
        self.delivered = 0

    def start(self) -> asyncio.Task:
        return asyncio.create_task(self.run(), name=f"poll:{self.identity}")

    @property
    def holds_identity(self) -> bool:
        return self.registry is None or self.registry.get(self.identity) is self.conn

    async def run(self) -> None:
        log.debug("Delivery loop started for %s", self.identity)
        try:
            while self.conn.is_open and self.holds_identity:
                try:
                    await self.drain()
                except websockets.ConnectionClosed:
                    break
                except Exception:
                    log.exception("polling error for %s", self.identity)
                await asyncio.sleep(self.interval_s)
        finally:
            log.debug("Delivery loop stopped for %s (%d delivered)", self.identity, self.delivered)

    async def drain(self) -> int:
        sent = 0
        async for key, frame in self.queue.scan_prefix(queue_prefix(self.identity)):
            if not (self.conn.is_open and self.holds_identity):
                break
            await self.conn.send(frame)
            await self.queue.delete(key)
            sent += 1
            log.debug("Delivered %s to %s", frame.get("type"), self.identity)
        self.delivered += sent
        return sent


__all__ = ["PollingDeliveryLoop"]
