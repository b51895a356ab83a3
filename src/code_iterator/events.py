"""Inbound event models shared by the transport, classifier and dispatch loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

HTTP_SERVER_SOURCE = "http_server"
UNSET_CHANNEL = 0


class EventKind(StrEnum):
    """Whether an event starts a new exchange or answers an earlier one."""

    REQUEST = "request"
    RESPONSE = "response"


class WsMessageType(StrEnum):
    TEXT = "Text"
    BINARY = "Binary"
    PING = "Ping"
    PONG = "Pong"
    CLOSE = "Close"


@dataclass(frozen=True)
class InboundEvent:
    """One message received by the dispatch loop.

    ``body`` is the JSON envelope, ``blob`` the optional raw payload that travels
    beside it (HTTP request body, WebSocket frame, execution output).
    """

    source: str
    body: bytes
    kind: EventKind = EventKind.REQUEST
    blob: bytes | None = None
    reply: asyncio.Future[int] | None = field(default=None, compare=False, repr=False)

    def respond(self, status: int) -> bool:
        """Resolve the HTTP status for the waiting caller, if any is still waiting."""

        if self.reply is None or self.reply.done():
            return False
        self.reply.set_result(status)
        return True
