from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .delivery import PollingDeliveryLoop
from .proto import POLL_INTERVAL_MS, Registration
from .registry import Connection, ConnectionRegistry, wait_stopped
from .store import DurableQueue

log = logging.getLogger("sigrelay.handshake")


class RegistrationHandshake:
    """Turns ``{"type": "register", "client_id": ...}`` into a routable identity.

    A transport owns at most one delivery loop: re-registering restarts it
    under the new identity, and a connection that loses its identity to a
    newer registration has its loop stopped.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: DurableQueue,
        *,
        poll_interval_s: float = POLL_INTERVAL_MS / 1000,
    ) -> None:
        self.registry = registry
        self.queue = queue
        self.poll_interval_s = poll_interval_s

    async def register(self, conn: Connection, frame: Dict[str, Any]) -> Optional[str]:
        try:
            registration = Registration.model_validate(frame)
        except ValidationError as exc:
            log.warning("Ignoring invalid registration from %s: %s", conn.identity, exc)
            return None

        # No awaits until the new loop is installed: a concurrent registration
        # for the same id must observe either the old binding or the new one.
        old_id = conn.identity
        previous = self.registry.get(registration.client_id)
        stopping = [conn.detach_poller()]
        identity = self.registry.rebind(old_id, registration.client_id, conn)
        if previous is not None and previous is not conn:
            stopping.append(previous.detach_poller())

        loop = PollingDeliveryLoop(
            conn, identity, self.queue, registry=self.registry, interval_s=self.poll_interval_s
        )
        conn.poller = loop.start()
        log.info("client registered as: %s (was %s)", identity, old_id)

        for task in stopping:
            await wait_stopped(task)
        return identity


__all__ = ["RegistrationHandshake"]
