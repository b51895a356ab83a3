from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from loguru import logger

from code_iterator.config import Settings
from code_iterator.events import WsMessageType
from code_iterator.registry import SessionChannelRegistry

FIB_CODE = "```python\ndef fib(n):\n    return n if n < 2 else fib(n - 1) + fib(n - 2)\n```"


class RecordingPusher:
    """Stands in for the WebSocket transport and keeps every frame it is asked to send."""

    def __init__(self) -> None:
        self.frames: list[tuple[int, WsMessageType, Any]] = []
        self.delivered = asyncio.Event()

    async def send_ws_push(self, channel_id: int, message_type: WsMessageType, data: bytes) -> bool:
        self.frames.append((channel_id, message_type, json.loads(data)))
        self.delivered.set()
        return True


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_key="sk-test",
        api_base="https://llm.test/v1/",
        model="gpt-test",
        llm_timeout_seconds=2,
        run_timeout_seconds=5,
    )


@pytest.fixture
def pusher() -> RecordingPusher:
    return RecordingPusher()


@pytest.fixture
def registry(pusher: RecordingPusher) -> SessionChannelRegistry:
    return SessionChannelRegistry(pusher)


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    with contextlib.suppress(ValueError):
        logger.remove(handler_id)


@pytest.fixture
def completion_body() -> Callable[..., bytes]:
    def _build(content: str | None = FIB_CODE, *, choices: list[dict[str, Any]] | None = None) -> bytes:
        if choices is None:
            choices = [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "logprobs": None,
                    "finish_reason": "stop",
                }
            ]
        return json.dumps(
            {
                "id": "chatcmpl-123",
                "object": "chat.completion",
                "created": 1_700_000_000,
                "model": "gpt-test",
                "choices": choices,
            }
        ).encode("utf-8")

    return _build
