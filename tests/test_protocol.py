import json
from collections.abc import Callable

import pytest

from code_iterator.errors import EmptyResponseError, MalformedEnvelopeError
from code_iterator.events import WsMessageType
from code_iterator.protocol import (
    Error,
    HttpRequest,
    LLMPrompt,
    LLMResponse,
    Ok,
    Run,
    RunResult,
    UserPrompt,
    UserRunCode,
    WebSocketClose,
    WebSocketOpen,
    WebSocketPush,
    completion_text,
    decode_json_string,
    decode_request,
    decode_response,
    decode_server_request,
    encode_request,
    encode_response,
    encode_server_request,
    frame_message,
    push_frame,
    run_result_of,
    split_message,
)


@pytest.mark.parametrize(
    "request_",
    [UserPrompt("write a fibonacci function"), UserRunCode("print(1+1)"), LLMPrompt("raw")],
)
def test_request_variants_survive_encoding(request_) -> None:
    assert decode_request(encode_request(request_)) == request_


@pytest.mark.parametrize(
    "response",
    [Ok(), Run(), RunResult({"stdout": "2\n", "error": None}), Error("boom"), LLMResponse("print(1)")],
)
def test_response_variants_survive_encoding(response) -> None:
    assert decode_response(encode_response(response)) == response


def test_request_uses_externally_tagged_shape() -> None:
    assert json.loads(encode_request(UserRunCode("x = 1"))) == {"UserRunCode": "x = 1"}
    assert json.loads(encode_response(Ok())) == "Ok"


def test_decode_response_accepts_unit_variant_with_null_payload() -> None:
    assert decode_response(b'{"Run": null}') == Run()


@pytest.mark.parametrize(
    "raw",
    [
        b"{not json",
        b'"UserPrompt"',
        b'{"UserPrompt": 42}',
        b'{"Unknown": "x"}',
        b'{"UserPrompt": "a", "UserRunCode": "b"}',
        b"[1, 2]",
    ],
)
def test_decode_request_rejects_malformed_envelopes(raw: bytes) -> None:
    with pytest.raises(MalformedEnvelopeError):
        decode_request(raw)


@pytest.mark.parametrize("raw", [b'{"Ok": "payload"}', b'"RunResult"', b'{"Error": {"msg": 1}}', b'"Nope"'])
def test_decode_response_rejects_malformed_envelopes(raw: bytes) -> None:
    with pytest.raises(MalformedEnvelopeError):
        decode_response(raw)


def test_run_result_of_reads_blob_for_run_and_inline_for_run_result() -> None:
    assert run_result_of(Run(), b'{"stdout": "2\\n"}') == {"stdout": "2\n"}
    assert run_result_of(RunResult([1, 2]), None) == [1, 2]


def test_run_result_of_requires_a_blob() -> None:
    with pytest.raises(EmptyResponseError):
        run_result_of(Run(), None)


def test_server_requests_decode_from_transport_shape() -> None:
    assert decode_server_request(b'{"Http": {"method": "post", "path": "/run"}}') == HttpRequest("POST", "/run")
    assert decode_server_request(b'{"WebSocketOpen": {"path": "/", "channel_id": 3}}') == WebSocketOpen("/", 3)
    assert decode_server_request(b'{"WebSocketClose": 3}') == WebSocketClose(3)
    push = WebSocketPush(3, WsMessageType.BINARY)
    assert decode_server_request(encode_server_request(push)) == push


@pytest.mark.parametrize(
    "raw",
    [
        b'{"WebSocketOpen": {"path": "/"}}',
        b'{"WebSocketOpen": {"path": "/", "channel_id": true}}',
        b'{"WebSocketClose": "3"}',
        b'{"WebSocketPush": {"channel_id": 1, "message_type": "Smoke"}}',
        b'{"Http": "GET"}',
        b'{"Teapot": {}}',
    ],
)
def test_server_requests_reject_bad_shapes(raw: bytes) -> None:
    with pytest.raises(MalformedEnvelopeError):
        decode_server_request(raw)


def test_decode_json_string() -> None:
    assert decode_json_string(b'"print(1+1)"') == "print(1+1)"
    with pytest.raises(MalformedEnvelopeError):
        decode_json_string(b'{"prompt": "x"}')
    with pytest.raises(EmptyResponseError):
        decode_json_string(None)


def test_completion_text_uses_first_choice(completion_body: Callable[..., bytes]) -> None:
    second = {"index": 1, "message": {"role": "assistant", "content": "ignored"}, "finish_reason": "stop"}
    first = {"index": 0, "message": {"role": "assistant", "content": "print('hi')"}, "finish_reason": "stop"}
    assert completion_text(completion_body(choices=[first, second])) == "print('hi')"


def test_completion_text_rejects_empty_choices(completion_body: Callable[..., bytes]) -> None:
    with pytest.raises(MalformedEnvelopeError, match="no choices"):
        completion_text(completion_body(choices=[]))


def test_completion_text_rejects_missing_fields() -> None:
    with pytest.raises(MalformedEnvelopeError):
        completion_text(b'{"choices": [{"message": {"content": "x"}}]}')


def test_completion_text_rejects_empty_body_and_blank_content(completion_body: Callable[..., bytes]) -> None:
    with pytest.raises(EmptyResponseError):
        completion_text(b"")
    with pytest.raises(EmptyResponseError):
        completion_text(completion_body("   "))
    with pytest.raises(MalformedEnvelopeError):
        completion_text(completion_body(None))


def test_push_frame_shape() -> None:
    assert json.loads(push_frame("LLMRunResponse", {"stdout": "2\n"})) == {"LLMRunResponse": {"stdout": "2\n"}}


def test_message_framing_keeps_blob_bytes_intact() -> None:
    code = b"print('a')\nprint('b')\n"
    assert split_message(frame_message(b'"Run"', code)) == (b'"Run"', code)
    assert split_message(frame_message(b'"Ok"')) == (b'"Ok"', None)
    with pytest.raises(MalformedEnvelopeError):
        frame_message(b'"Run"\n', code)
