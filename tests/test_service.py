import asyncio
import json
import time
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from code_iterator.bus import MessageBus
from code_iterator.config import Settings
from code_iterator.errors import RouteBindingError
from code_iterator.events import WsMessageType
from code_iterator.execution import ExecutionReply
from code_iterator.protocol import Run
from code_iterator.service import Service, build_service
from code_iterator.transport import HttpTransport

from conftest import FIB_CODE


class _Runner:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def run_code(self, code: str) -> ExecutionReply:
        self.calls.append(code)
        return ExecutionReply(Run(), b'{"stdout": "2\\n", "stderr": "", "error": null}')


def _service(settings: Settings, completion_body: Callable[..., bytes], runner: _Runner) -> Service:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=completion_body()))
    return build_service(settings, llm_transport=transport, executor=runner)


def _wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def test_prompt_result_reaches_open_websocket(settings: Settings, completion_body: Callable[..., bytes]) -> None:
    service = _service(settings, completion_body, _Runner())
    with TestClient(service.app) as client, client.websocket_connect("/") as websocket:
        _wait_for(lambda: service.registry.is_set)
        response = client.post("/prompt", content=json.dumps("write a fibonacci function"))

        assert response.status_code == 200
        assert response.content == b""
        assert websocket.receive_json() == {"LLMResponse": FIB_CODE}


def test_run_result_reaches_open_websocket(settings: Settings, completion_body: Callable[..., bytes]) -> None:
    runner = _Runner()
    service = _service(settings, completion_body, runner)
    with TestClient(service.app) as client, client.websocket_connect("/") as websocket:
        _wait_for(lambda: service.registry.is_set)
        assert client.post("/run", content=json.dumps("print(1+1)")).status_code == 200
        assert websocket.receive_json() == {"LLMRunResponse": {"stdout": "2\n", "stderr": "", "error": None}}
    assert runner.calls == ["print(1+1)"]


def test_run_without_websocket_still_returns_200(settings: Settings, completion_body: Callable[..., bytes]) -> None:
    runner = _Runner()
    service = _service(settings, completion_body, runner)
    with TestClient(service.app) as client:
        response = client.post("/run", content=json.dumps("print(1+1)"))
        _wait_for(lambda: runner.calls == ["print(1+1)"])

    assert response.status_code == 200
    assert not service.registry.is_set


def test_bad_requests_get_error_statuses(settings: Settings, completion_body: Callable[..., bytes]) -> None:
    service = _service(settings, completion_body, _Runner())
    with TestClient(service.app) as client:
        assert client.post("/prompt", content=b"{not json").status_code == 400
        assert client.post("/prompt", content=json.dumps({"prompt": "x"})).status_code == 400
        assert client.get("/prompt").status_code == 405
        # the loop is still serving after the failures above
        assert client.post("/prompt", content=json.dumps("fib")).status_code == 200


def test_ui_directory_is_served(settings: Settings, completion_body: Callable[..., bytes], tmp_path: Path) -> None:
    (tmp_path / "index.html").write_text("<html>iterator</html>", encoding="utf-8")
    service = _service(settings.model_copy(update={"ui_dir": tmp_path}), completion_body, _Runner())
    with TestClient(service.app) as client:
        response = client.get("/")
    assert response.status_code == 200
    assert "iterator" in response.text


def test_missing_ui_directory_fails_startup(
    settings: Settings, completion_body: Callable[..., bytes], tmp_path: Path
) -> None:
    with pytest.raises(RouteBindingError):
        _service(settings.model_copy(update={"ui_dir": tmp_path / "missing"}), completion_body, _Runner())


def test_route_binding_rejects_duplicates_and_bad_paths() -> None:
    transport = HttpTransport(MessageBus())
    transport.bind_http_path("/prompt")
    transport.bind_ws_path("/")
    with pytest.raises(RouteBindingError):
        transport.bind_http_path("/prompt")
    with pytest.raises(RouteBindingError):
        transport.bind_http_path("run")
    with pytest.raises(RouteBindingError):
        transport.bind_ws_path("/ws")
    assert transport.http_paths == ["/prompt"]


@pytest.mark.asyncio
async def test_push_to_unknown_channel_is_dropped(log_messages: list[str]) -> None:
    transport = HttpTransport(MessageBus())
    assert await transport.send_ws_push(42, WsMessageType.TEXT, b"{}") is False
    assert any("ws.push.dropped" in message for message in log_messages)


def test_request_queued_past_reply_timeout_is_not_run(
    settings: Settings, completion_body: Callable[..., bytes], log_messages: list[str]
) -> None:
    async def slow_completion(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.5)
        return httpx.Response(200, content=completion_body())

    runner = _Runner()
    quick_reply = settings.model_copy(update={"http_reply_timeout_seconds": 0.5})
    service = build_service(quick_reply, llm_transport=httpx.MockTransport(slow_completion), executor=runner)
    with TestClient(service.app) as client:
        # the loop answers 200 and then stays busy with the completion
        assert client.post("/prompt", content=json.dumps("fib")).status_code == 200
        assert client.post("/run", content=json.dumps("print(1)")).status_code == 504
        _wait_for(lambda: any(message.startswith("dispatch.http.abandoned") for message in log_messages))

    assert runner.calls == []
