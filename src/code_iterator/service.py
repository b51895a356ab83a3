"""Compose the dispatch hub and expose it as an ASGI application."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
from fastapi import FastAPI
from loguru import logger

from code_iterator.bus import MessageBus
from code_iterator.config import Settings
from code_iterator.dispatch import PROMPT_PATH, RUN_PATH, CodeRunner, Dispatcher
from code_iterator.execution import ExecutionProxy
from code_iterator.llm import LLMClient
from code_iterator.registry import SessionChannelRegistry
from code_iterator.transport import HttpTransport


@dataclass(frozen=True)
class Service:
    """Everything one process instance runs."""

    settings: Settings
    bus: MessageBus
    transport: HttpTransport
    registry: SessionChannelRegistry
    llm: LLMClient
    executor: CodeRunner
    dispatcher: Dispatcher
    app: FastAPI


def build_service(
    settings: Settings,
    *,
    llm_transport: httpx.AsyncBaseTransport | None = None,
    executor: CodeRunner | None = None,
) -> Service:
    """Wire the hub and bind its routes.

    Raises:
        RouteBindingError: a route or the UI directory cannot be bound.
    """

    if not settings.api_key:
        logger.warning("startup.api_key_missing hint=set CODE_ITERATOR_API_KEY")

    bus = MessageBus()
    transport = HttpTransport(bus, reply_timeout_seconds=settings.http_reply_timeout_seconds)
    registry = SessionChannelRegistry(transport)
    llm = LLMClient(settings, registry, transport=llm_transport)
    runner = executor or ExecutionProxy(settings)
    dispatcher = Dispatcher(
        bus,
        registry,
        llm,
        runner,
        http_source=transport.source,
        push_errors=settings.push_errors,
    )

    transport.bind_http_path(PROMPT_PATH)
    transport.bind_http_path(RUN_PATH)
    transport.bind_ws_path(settings.ws_path)
    if settings.ui_dir is not None:
        transport.serve_ui(settings.ui_dir)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        task = asyncio.create_task(dispatcher.run_forever(), name="code-iterator-dispatch")
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await llm.aclose()
            logger.info("dispatch.stopped")

    app = transport.build_app(lifespan=lifespan)
    logger.info(
        "startup.routes http={} ws={} ui={}",
        transport.http_paths,
        transport.ws_path,
        settings.ui_dir,
    )
    return Service(
        settings=settings,
        bus=bus,
        transport=transport,
        registry=registry,
        llm=llm,
        executor=runner,
        dispatcher=dispatcher,
        app=app,
    )
