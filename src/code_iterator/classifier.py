"""Map raw inbound events onto the operations the dispatch loop knows how to handle."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, assert_never

from code_iterator.events import EventKind, InboundEvent, WsMessageType
from code_iterator.protocol import (
    HttpRequest,
    IteratorRequest,
    IteratorResponse,
    WebSocketClose,
    WebSocketOpen,
    WebSocketPush,
    decode_request,
    decode_response,
    decode_server_request,
)

ACCEPTED_PUSH_TYPES: frozenset[WsMessageType] = frozenset({WsMessageType.BINARY})


@dataclass(frozen=True)
class HttpCall:
    method: str
    path: str
    body: bytes | None
    event: InboundEvent = field(repr=False)

    def respond(self, status: int) -> bool:
        return self.event.respond(status)

    @property
    def abandoned(self) -> bool:
        """The caller stopped waiting for a status before the loop reached this call."""

        return self.event.reply is not None and self.event.reply.done()


@dataclass(frozen=True)
class ChannelOpened:
    channel_id: int
    path: str


@dataclass(frozen=True)
class ChannelClosed:
    channel_id: int


@dataclass(frozen=True)
class ChannelPushed:
    channel_id: int
    message_type: WsMessageType
    payload: bytes


@dataclass(frozen=True)
class PeerRequest:
    request: IteratorRequest
    source: str


@dataclass(frozen=True)
class PeerResponse:
    response: IteratorResponse
    blob: bytes | None
    source: str


@dataclass(frozen=True)
class Dropped:
    reason: str
    detail: dict[str, Any] = field(default_factory=dict)


Operation = HttpCall | ChannelOpened | ChannelClosed | ChannelPushed | PeerRequest | PeerResponse | Dropped


def classify(event: InboundEvent, *, http_source: str) -> Operation:
    """Decide what an inbound event is.

    Raises:
        MalformedEnvelopeError: when the event body cannot be decoded.
    """

    if event.source == http_source:
        return _classify_http(event)
    if event.kind is EventKind.RESPONSE:
        return PeerResponse(decode_response(event.body), event.blob, event.source)
    return PeerRequest(decode_request(event.body), event.source)


def _classify_http(event: InboundEvent) -> Operation:
    server_request = decode_server_request(event.body)
    match server_request:
        case HttpRequest(method, path):
            return HttpCall(method=method, path=path, body=event.blob, event=event)
        case WebSocketOpen(path, channel_id):
            return ChannelOpened(channel_id=channel_id, path=path)
        case WebSocketClose(channel_id):
            return ChannelClosed(channel_id)
        case WebSocketPush(channel_id, message_type):
            if message_type not in ACCEPTED_PUSH_TYPES:
                return Dropped("push_type_not_accepted", {"channel_id": channel_id, "type": message_type.value})
            if event.blob is None:
                return Dropped("push_without_payload", {"channel_id": channel_id})
            return ChannelPushed(channel_id=channel_id, message_type=message_type, payload=event.blob)
        case _:
            assert_never(server_request)

