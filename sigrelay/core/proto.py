from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator


# ---------------------------------------------------------------------------
# Protocol constants
# ---------------------------------------------------------------------------

REGISTER_TYPE = "register"
WILDCARD = "*"
QUEUE_NAMESPACE = "messages"
MESSAGE_TTL_MS = 30_000
POLL_INTERVAL_MS = 100


# ---------------------------------------------------------------------------
# Frame models (JSON over WebSockets)
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """Addressed signaling frame relayed between peers.

    Fields the relay does not know about are kept and forwarded untouched.
    ``sender_id`` and ``timestamp`` are injected by the router; whatever the
    client put there is overwritten.
    """

    type: str
    target: str
    source: Optional[str] = None
    payload: Any = None
    sender_id: Optional[str] = None
    timestamp: Optional[int] = None

    model_config = ConfigDict(extra="allow", frozen=True)

    def stamped(self, sender_id: str, timestamp: int) -> "Message":
        return self.model_copy(update={"sender_id": sender_id, "timestamp": timestamp})

    def to_frame(self) -> Dict[str, Any]:
        # fields the client sent are kept as-is, nulls included
        frame = self.model_dump(exclude_unset=True)
        if self.sender_id is not None:
            frame["sender_id"] = self.sender_id
        if self.timestamp is not None:
            frame["timestamp"] = self.timestamp
        return frame

    @property
    def is_broadcast(self) -> bool:
        return self.target.endswith(WILDCARD)


class Registration(BaseModel):
    """``{"type": "register", "client_id": ...}``; consumed by the handshake."""

    type: Literal["register"]
    client_id: str

    model_config = ConfigDict(extra="ignore")

    @field_validator("client_id")
    @classmethod
    def _client_id_non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("client_id must be non-empty")
        return value


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def is_registration(frame: Any) -> bool:
    return isinstance(frame, dict) and frame.get("type") == REGISTER_TYPE


def queue_prefix(identity: str) -> Tuple[str, str]:
    return (QUEUE_NAMESPACE, identity)


def queue_key(target: str, unique: Optional[str] = None) -> Tuple[str, str, str]:
    return (QUEUE_NAMESPACE, target, unique or new_id())


__all__ = [
    "Message",
    "Registration",
    "REGISTER_TYPE",
    "WILDCARD",
    "QUEUE_NAMESPACE",
    "MESSAGE_TTL_MS",
    "POLL_INTERVAL_MS",
    "now_ms",
    "new_id",
    "is_registration",
    "queue_prefix",
    "queue_key",
]
