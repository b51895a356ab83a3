"""The dispatch loop: one event at a time, handled to completion."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Protocol, assert_never

from loguru import logger

from code_iterator.bus import BusProtocol
from code_iterator.classifier import (
    ChannelClosed,
    ChannelOpened,
    ChannelPushed,
    Dropped,
    HttpCall,
    Operation,
    PeerRequest,
    PeerResponse,
    classify,
)
from code_iterator.errors import CollaboratorError, MalformedEnvelopeError
from code_iterator.events import HTTP_SERVER_SOURCE
from code_iterator.execution import ExecutionReply
from code_iterator.protocol import (
    ERROR_FRAME,
    RUN_RESPONSE_FRAME,
    Error,
    IteratorRequest,
    IteratorResponse,
    LLMPrompt,
    LLMResponse,
    Ok,
    Run,
    RunResult,
    UserPrompt,
    UserRunCode,
    decode_json_string,
    push_frame,
    run_result_of,
)
from code_iterator.registry import SessionChannelRegistry

PROMPT_PATH = "/prompt"
RUN_PATH = "/run"


class CompletionClient(Protocol):
    async def fetch_completion(self, prompt: str) -> str: ...


class CodeRunner(Protocol):
    async def run_code(self, code: str) -> ExecutionReply: ...


class Dispatcher:
    """Receive, classify and handle inbound events strictly one at a time.

    Collaborator calls are awaited inside the handler of the event that caused
    them, so a run request and the processing of its result form one linear
    sequence and the next event is only taken once both are done.
    """

    def __init__(
        self,
        bus: BusProtocol,
        registry: SessionChannelRegistry,
        llm: CompletionClient,
        executor: CodeRunner,
        *,
        http_source: str = HTTP_SERVER_SOURCE,
        push_errors: bool = False,
    ) -> None:
        self._bus = bus
        self._registry = registry
        self._llm = llm
        self._executor = executor
        self._http_source = http_source
        self._push_errors = push_errors
        self._post_routes: dict[str, Callable[[str], Awaitable[None]]] = {
            PROMPT_PATH: lambda text: self.handle_request(UserPrompt(text)),
            RUN_PATH: lambda code: self.handle_request(UserRunCode(code)),
        }

    async def run_forever(self) -> None:
        """Serve events until cancelled; a failing event never stops the loop."""

        logger.info("dispatch.start source={}", self._http_source)
        while True:
            try:
                await self.handle_once()
            except CollaboratorError as exc:
                logger.warning("dispatch.error kind={} error={}", exc.kind, exc)
            except Exception:
                logger.exception("dispatch.error kind=unexpected")

    async def handle_once(self, timeout_seconds: float | None = None) -> Operation | None:
        event = await self._bus.next_inbound(timeout_seconds=timeout_seconds)
        if event is None:
            return None
        try:
            operation = classify(event, http_source=self._http_source)
        except MalformedEnvelopeError:
            event.respond(400)
            raise
        await self.handle(operation)
        return operation

    async def handle(self, operation: Operation) -> None:
        match operation:
            case HttpCall():
                await self._handle_http(operation)
            case ChannelOpened(channel_id, path):
                logger.info("dispatch.channel.open channel_id={} path={}", channel_id, path)
                self._registry.set_channel(channel_id)
            case ChannelClosed(channel_id):
                # A later open re-registers; the registry is not cleared on close.
                logger.info("dispatch.channel.close channel_id={} current={}", channel_id, self._registry.get_channel())
            case ChannelPushed(channel_id, message_type, payload):
                logger.debug(
                    "dispatch.channel.push channel_id={} type={} bytes={}", channel_id, message_type.value, len(payload)
                )
            case PeerRequest(request, source):
                logger.info("dispatch.request source={} variant={}", source, type(request).__name__)
                await self.handle_request(request)
            case PeerResponse(response, blob, source):
                logger.info("dispatch.response source={} variant={}", source, type(response).__name__)
                await self.handle_response(response, blob)
            case Dropped(reason, detail):
                logger.debug("dispatch.dropped reason={} detail={}", reason, detail)
            case _:
                assert_never(operation)

    async def _handle_http(self, call: HttpCall) -> None:
        logger.info("dispatch.http method={} path={}", call.method, call.path)
        if call.abandoned:
            # The caller already got a timeout status, so the request is not run.
            logger.warning("dispatch.http.abandoned method={} path={}", call.method, call.path)
            return
        if call.method != "POST":
            call.respond(405)
            return
        handler = self._post_routes.get(call.path)
        if handler is None:
            call.respond(404)
            return
        try:
            value = decode_json_string(call.body)
        except CollaboratorError:
            call.respond(400)
            raise
        call.respond(200)
        await handler(value)

    async def handle_request(self, request: IteratorRequest) -> None:
        match request:
            case UserPrompt(text):
                logger.info("dispatch.prompt chars={}", len(text))
                async with self._reporting("prompt"):
                    await self._llm.fetch_completion(text)
            case UserRunCode(code):
                logger.info("dispatch.run chars={}", len(code))
                async with self._reporting("run"):
                    reply = await self._executor.run_code(code)
                    await self.handle_response(reply.response, reply.blob)
            case LLMPrompt(text):
                logger.info("dispatch.llm_prompt chars={}", len(text))
            case _:
                assert_never(request)

    async def handle_response(self, response: IteratorResponse, blob: bytes | None = None) -> None:
        match response:
            case Ok():
                pass
            case Error(message):
                logger.warning("dispatch.response.error message={}", message)
                if self._push_errors:
                    await self._registry.push(push_frame(ERROR_FRAME, message))
            case LLMResponse(text):
                logger.info("dispatch.response.llm chars={}", len(text))
            case Run() | RunResult():
                result = run_result_of(response, blob)
                await self._registry.push(push_frame(RUN_RESPONSE_FRAME, result))
            case _:
                assert_never(response)

    @asynccontextmanager
    async def _reporting(self, stage: str) -> AsyncIterator[None]:
        try:
            yield
        except CollaboratorError as exc:
            logger.debug("dispatch.{}.failed kind={}", stage, exc.kind)
            if self._push_errors:
                await self._registry.push(push_frame(ERROR_FRAME, exc.user_message()))
            raise
