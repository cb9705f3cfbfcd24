from __future__ import annotations

import logging
from typing import Callable, Union

import websockets

from .proto import MESSAGE_TTL_MS, WILDCARD, Message, now_ms, queue_key
from .registry import ConnectionRegistry
from .store import DurableQueue

log = logging.getLogger("sigrelay.router")

NowFn = Callable[[], int]


class MessageRouter:
    """Broadcasts wildcard-addressed messages, queues everything else.

    Direct targets always go through the queue, even when the peer is
    connected; its delivery loop picks them up.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: DurableQueue,
        *,
        ttl_ms: int = MESSAGE_TTL_MS,
        now: NowFn = now_ms,
    ) -> None:
        self.registry = registry
        self.queue = queue
        self.ttl_ms = ttl_ms
        self.now = now

    async def route(self, sender_identity: str, raw: Union[str, bytes]) -> None:
        try:
            message = Message.model_validate_json(raw)
        except ValueError as exc:
            log.warning("Discarding malformed message from %s: %s", sender_identity, exc)
            return

        message = message.stamped(sender_identity, self.now())
        log.info("received: %s from %s to %s", message.type, message.source, message.target)

        try:
            if message.is_broadcast:
                await self._broadcast(message)
            else:
                await self._persist(message)
        except Exception:
            log.exception("error handling message from %s", sender_identity)

    async def _broadcast(self, message: Message) -> int:
        prefix = message.target[: -len(WILDCARD)]
        frame = message.to_frame()
        sent = 0
        for identity, conn in self.registry.lookup_prefix(prefix):
            try:
                await conn.send(frame)
                sent += 1
            except websockets.ConnectionClosed:
                log.debug("Broadcast to %s skipped: connection closed", identity)
        return sent

    async def _persist(self, message: Message) -> None:
        await self.queue.enqueue(queue_key(message.target), message.to_frame(), self.ttl_ms)


__all__ = ["MessageRouter"]
