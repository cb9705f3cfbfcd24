from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from websockets.protocol import State

from sigrelay.utils import codec

log = logging.getLogger("sigrelay.registry")


@dataclass(slots=True, eq=False)
class Connection:
    websocket: Any
    identity: str
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    poller: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    async def send(self, frame: Dict[str, Any]) -> None:
        text = codec.dumps(frame)
        async with self.send_lock:
            await self.websocket.send(text)

    def detach_poller(self) -> Optional[asyncio.Task]:
        """Cancel the delivery loop without waiting; returns the task if it was live."""
        task, self.poller = self.poller, None
        if task is None or task.done():
            return None
        task.cancel()
        return task

    async def stop_polling(self) -> None:
        await wait_stopped(self.detach_poller())


async def wait_stopped(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    with contextlib.suppress(asyncio.CancelledError):
        await task


class ConnectionRegistry:
    """Identity -> Connection map for the live transports of this process.

    Methods never await, so each one runs to completion on the event loop
    without interleaving with other connection tasks.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Connection] = {}

    def open(self, anonymous_id: str, conn: Connection) -> None:
        conn.identity = anonymous_id
        self._entries[anonymous_id] = conn

    def rebind(self, old_id: str, new_id: str, conn: Connection) -> str:
        if self._entries.get(old_id) is conn:
            del self._entries[old_id]
        previous = self._entries.get(new_id)
        if previous is not None and previous is not conn:
            log.info("Identity %s taken over; previous holder is now unroutable", new_id)
        self._entries[new_id] = conn
        conn.identity = new_id
        return new_id

    def close(self, identity: str, conn: Optional[Connection] = None) -> None:
        current = self._entries.get(identity)
        if current is None:
            return
        if conn is not None and current is not conn:
            # identity has moved to a newer connection
            return
        del self._entries[identity]

    def get(self, identity: str) -> Optional[Connection]:
        return self._entries.get(identity)

    def lookup_prefix(self, prefix: str) -> List[Tuple[str, Connection]]:
        return [
            (identity, conn)
            for identity, conn in list(self._entries.items())
            if identity.startswith(prefix) and conn.is_open
        ]

    def identities(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, identity: object) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["Connection", "ConnectionRegistry", "wait_stopped"]
