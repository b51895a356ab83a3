"""Envelope codec for the iterator protocol, the HTTP transport and LLM completions.

Every envelope uses the externally tagged JSON shape: unit variants are bare
strings (``"Ok"``), variants with a payload are single-key objects
(``{"UserPrompt": "..."}``).
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, assert_never

from openai.types.chat import ChatCompletion
from pydantic import ValidationError

from code_iterator.errors import EmptyResponseError, MalformedEnvelopeError
from code_iterator.events import WsMessageType

LLM_RESPONSE_FRAME = "LLMResponse"
RUN_RESPONSE_FRAME = "LLMRunResponse"
ERROR_FRAME = "Error"

_UNIT = object()


# Iterator requests


@dataclass(frozen=True)
class UserPrompt:
    text: str


@dataclass(frozen=True)
class UserRunCode:
    code: str


@dataclass(frozen=True)
class LLMPrompt:
    text: str


IteratorRequest = UserPrompt | UserRunCode | LLMPrompt


# Iterator responses


@dataclass(frozen=True)
class Ok:
    pass


@dataclass(frozen=True)
class Run:
    """Execution finished; the structured result travels in the message blob."""


@dataclass(frozen=True)
class RunResult:
    result: Any


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class LLMResponse:
    text: str


IteratorResponse = Ok | Run | RunResult | Error | LLMResponse


# HTTP transport sub-events


@dataclass(frozen=True)
class HttpRequest:
    method: str
    path: str


@dataclass(frozen=True)
class WebSocketOpen:
    path: str
    channel_id: int


@dataclass(frozen=True)
class WebSocketClose:
    channel_id: int


@dataclass(frozen=True)
class WebSocketPush:
    channel_id: int
    message_type: WsMessageType


HttpServerRequest = HttpRequest | WebSocketOpen | WebSocketClose | WebSocketPush


def _load_json(data: bytes | str) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEnvelopeError(f"invalid json: {exc}") from exc


def _dump(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=False).encode("utf-8")


def _split_tag(value: Any) -> tuple[str, Any]:
    if isinstance(value, str):
        return value, _UNIT
    if isinstance(value, Mapping) and len(value) == 1:
        ((tag, payload),) = value.items()
        return str(tag), payload
    raise MalformedEnvelopeError(f"expected a tagged variant, got {type(value).__name__}")


def _text_payload(tag: str, payload: Any) -> str:
    if payload is _UNIT:
        raise MalformedEnvelopeError(f"variant {tag} requires a payload")
    if not isinstance(payload, str):
        raise MalformedEnvelopeError(f"variant {tag} expects a string, got {type(payload).__name__}")
    return payload


def _unit_payload(tag: str, payload: Any) -> None:
    if payload is not _UNIT and payload is not None:
        raise MalformedEnvelopeError(f"variant {tag} takes no payload")


def _field(payload: Any, tag: str, key: str, expected: type) -> Any:
    if not isinstance(payload, Mapping):
        raise MalformedEnvelopeError(f"variant {tag} expects an object")
    value = payload.get(key)
    # bool is an int subclass and never a valid channel id
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise MalformedEnvelopeError(f"variant {tag} field {key!r} must be {expected.__name__}")
    return value


_REQUEST_DECODERS: dict[str, Callable[[Any], IteratorRequest]] = {
    "UserPrompt": lambda payload: UserPrompt(_text_payload("UserPrompt", payload)),
    "UserRunCode": lambda payload: UserRunCode(_text_payload("UserRunCode", payload)),
    "LLMPrompt": lambda payload: LLMPrompt(_text_payload("LLMPrompt", payload)),
}


def encode_request(request: IteratorRequest) -> bytes:
    match request:
        case UserPrompt(text):
            return _dump({"UserPrompt": text})
        case UserRunCode(code):
            return _dump({"UserRunCode": code})
        case LLMPrompt(text):
            return _dump({"LLMPrompt": text})
        case _:
            assert_never(request)


def decode_request(data: bytes | str) -> IteratorRequest:
    tag, payload = _split_tag(_load_json(data))
    decoder = _REQUEST_DECODERS.get(tag)
    if decoder is None:
        raise MalformedEnvelopeError(f"unknown request variant: {tag}")
    return decoder(payload)


def _decode_ok(payload: Any) -> Ok:
    _unit_payload("Ok", payload)
    return Ok()


def _decode_run(payload: Any) -> Run:
    _unit_payload("Run", payload)
    return Run()


def _decode_run_result(payload: Any) -> RunResult:
    if payload is _UNIT:
        raise MalformedEnvelopeError("variant RunResult requires a payload")
    return RunResult(payload)


_RESPONSE_DECODERS: dict[str, Callable[[Any], IteratorResponse]] = {
    "Ok": _decode_ok,
    "Run": _decode_run,
    "RunResult": _decode_run_result,
    "Error": lambda payload: Error(_text_payload("Error", payload)),
    "LLMResponse": lambda payload: LLMResponse(_text_payload("LLMResponse", payload)),
}


def encode_response(response: IteratorResponse) -> bytes:
    match response:
        case Ok():
            return _dump("Ok")
        case Run():
            return _dump("Run")
        case RunResult(result):
            return _dump({"RunResult": result})
        case Error(message):
            return _dump({"Error": message})
        case LLMResponse(text):
            return _dump({"LLMResponse": text})
        case _:
            assert_never(response)


def decode_response(data: bytes | str) -> IteratorResponse:
    tag, payload = _split_tag(_load_json(data))
    decoder = _RESPONSE_DECODERS.get(tag)
    if decoder is None:
        raise MalformedEnvelopeError(f"unknown response variant: {tag}")
    return decoder(payload)


def run_result_of(response: Run | RunResult, blob: bytes | None) -> Any:
    """Return the structured execution result carried by a run response."""

    if isinstance(response, RunResult):
        return response.result
    if not blob:
        raise EmptyResponseError("run response carried no result blob")
    return _load_json(blob)


def encode_server_request(request: HttpServerRequest) -> bytes:
    match request:
        case HttpRequest(method, path):
            return _dump({"Http": {"method": method, "path": path}})
        case WebSocketOpen(path, channel_id):
            return _dump({"WebSocketOpen": {"path": path, "channel_id": channel_id}})
        case WebSocketClose(channel_id):
            return _dump({"WebSocketClose": channel_id})
        case WebSocketPush(channel_id, message_type):
            return _dump({"WebSocketPush": {"channel_id": channel_id, "message_type": message_type.value}})
        case _:
            assert_never(request)


def decode_server_request(data: bytes | str) -> HttpServerRequest:
    tag, payload = _split_tag(_load_json(data))
    match tag:
        case "Http":
            return HttpRequest(
                method=_field(payload, tag, "method", str).upper(),
                path=_field(payload, tag, "path", str),
            )
        case "WebSocketOpen":
            return WebSocketOpen(path=_field(payload, tag, "path", str), channel_id=_field(payload, tag, "channel_id", int))
        case "WebSocketClose":
            if not isinstance(payload, int) or isinstance(payload, bool):
                raise MalformedEnvelopeError("variant WebSocketClose expects a channel id")
            return WebSocketClose(payload)
        case "WebSocketPush":
            raw_type = _field(payload, tag, "message_type", str)
            try:
                message_type = WsMessageType(raw_type)
            except ValueError as exc:
                raise MalformedEnvelopeError(f"unknown websocket message type: {raw_type}") from exc
            return WebSocketPush(channel_id=_field(payload, tag, "channel_id", int), message_type=message_type)
        case _:
            raise MalformedEnvelopeError(f"unknown http server variant: {tag}")


def decode_json_string(data: bytes | None) -> str:
    """Decode an HTTP body that must be exactly one JSON string."""

    if data is None:
        raise EmptyResponseError("request carried no body")
    value = _load_json(data)
    if not isinstance(value, str):
        raise MalformedEnvelopeError(f"expected a json string body, got {type(value).__name__}")
    return value


def decode_completion(data: bytes | None) -> ChatCompletion:
    if not data:
        raise EmptyResponseError("completion response had no body")
    try:
        return ChatCompletion.model_validate_json(data)
    except ValidationError as exc:
        raise MalformedEnvelopeError(f"invalid completion envelope: {exc.error_count()} error(s)") from exc


def completion_text(data: bytes | None) -> str:
    """Extract ``choices[0].message.content`` from a raw completion body."""

    completion = decode_completion(data)
    if not completion.choices:
        raise MalformedEnvelopeError("completion has no choices")
    content = completion.choices[0].message.content
    if content is None:
        raise MalformedEnvelopeError("first choice has no message content")
    if not content.strip():
        raise EmptyResponseError("first choice message content is empty")
    return content


def push_frame(tag: str, value: Any) -> str:
    """Render one server-to-browser text frame, e.g. ``{"LLMResponse": "..."}``."""

    return json.dumps({tag: value}, ensure_ascii=False)


def frame_message(body: bytes, blob: bytes | None = None) -> bytes:
    """Join a JSON body and an optional raw blob for the inter-process boundary."""

    if b"\n" in body:
        raise MalformedEnvelopeError("message body must be a single line")
    if blob is None:
        return body
    return body + b"\n" + blob


def split_message(data: bytes) -> tuple[bytes, bytes | None]:
    body, sep, blob = data.partition(b"\n")
    return body, (blob if sep else None)
