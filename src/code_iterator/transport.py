"""HTTP and WebSocket transport that turns browser traffic into bus events."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles
from loguru import logger

from code_iterator.bus import BusProtocol
from code_iterator.errors import RouteBindingError
from code_iterator.events import HTTP_SERVER_SOURCE, InboundEvent, WsMessageType
from code_iterator.protocol import (
    HttpRequest,
    HttpServerRequest,
    WebSocketClose,
    WebSocketOpen,
    WebSocketPush,
    encode_server_request,
)

HTTP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]
REPLY_TIMEOUT_STATUS = 504

Lifespan = Callable[[FastAPI], AbstractAsyncContextManager[None]]


def _validate_path(path: str) -> str:
    if not path.startswith("/") or any(ch.isspace() for ch in path):
        raise RouteBindingError(f"invalid route path: {path!r}")
    return path


class HttpTransport:
    """Own the browser-facing routes and live WebSocket connections.

    Every request is published to the bus under ``source``; the dispatch loop
    decides the HTTP status through the event's reply future.
    """

    def __init__(
        self,
        bus: BusProtocol,
        *,
        source: str = HTTP_SERVER_SOURCE,
        reply_timeout_seconds: float = 30.0,
    ) -> None:
        self._bus = bus
        self.source = source
        self._reply_timeout_seconds = reply_timeout_seconds
        self._http_paths: list[str] = []
        self._ws_path: str | None = None
        self._ui_dir: Path | None = None
        self._sockets: dict[int, WebSocket] = {}
        self._channel_ids = itertools.count(1)

    @property
    def http_paths(self) -> list[str]:
        return list(self._http_paths)

    @property
    def ws_path(self) -> str | None:
        return self._ws_path

    def bind_http_path(self, path: str) -> None:
        _validate_path(path)
        if path in self._http_paths:
            raise RouteBindingError(f"http path already bound: {path}")
        self._http_paths.append(path)

    def bind_ws_path(self, path: str) -> None:
        _validate_path(path)
        if self._ws_path is not None:
            raise RouteBindingError(f"websocket path already bound: {self._ws_path}")
        self._ws_path = path

    def serve_ui(self, directory: Path) -> None:
        if not directory.is_dir():
            raise RouteBindingError(f"ui directory not found: {directory}")
        self._ui_dir = directory

    def build_app(self, *, lifespan: Lifespan | None = None) -> FastAPI:
        app = FastAPI(title="code-iterator", lifespan=lifespan)
        for path in self._http_paths:
            app.add_api_route(path, self.handle_http, methods=HTTP_METHODS, include_in_schema=False)
        if self._ws_path is not None:
            app.add_api_websocket_route(self._ws_path, self.handle_websocket)
        if self._ui_dir is not None:
            app.mount("/", StaticFiles(directory=self._ui_dir, html=True), name="ui")
        return app

    async def _publish(
        self,
        request: HttpServerRequest,
        *,
        blob: bytes | None = None,
        reply: asyncio.Future[int] | None = None,
    ) -> None:
        event = InboundEvent(source=self.source, body=encode_server_request(request), blob=blob, reply=reply)
        await self._bus.publish_inbound(event)

    async def handle_http(self, request: Request) -> Response:
        body = await request.body()
        reply: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        await self._publish(HttpRequest(request.method, request.url.path), blob=body or None, reply=reply)
        try:
            status = await asyncio.wait_for(reply, timeout=self._reply_timeout_seconds)
        except TimeoutError:
            logger.warning("http.reply.timeout method={} path={}", request.method, request.url.path)
            status = REPLY_TIMEOUT_STATUS
        return Response(status_code=status)

    async def handle_websocket(self, websocket: WebSocket) -> None:
        channel_id = next(self._channel_ids)
        path = websocket.url.path
        await websocket.accept()
        self._sockets[channel_id] = websocket
        logger.info("ws.open channel_id={} path={}", channel_id, path)
        await self._publish(WebSocketOpen(path=path, channel_id=channel_id))
        try:
            while True:
                message: dict[str, Any] = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    await self._publish(WebSocketPush(channel_id, WsMessageType.BINARY), blob=message["bytes"])
                elif message.get("text") is not None:
                    await self._publish(WebSocketPush(channel_id, WsMessageType.TEXT), blob=message["text"].encode("utf-8"))
        except WebSocketDisconnect:
            pass
        finally:
            self._sockets.pop(channel_id, None)
            logger.info("ws.close channel_id={}", channel_id)
            await self._publish(WebSocketClose(channel_id))

    async def send_ws_push(self, channel_id: int, message_type: WsMessageType, data: bytes) -> bool:
        websocket = self._sockets.get(channel_id)
        if websocket is None:
            logger.warning("ws.push.dropped reason=channel_closed channel_id={}", channel_id)
            return False
        try:
            if message_type is WsMessageType.BINARY:
                await websocket.send_bytes(data)
            else:
                await websocket.send_text(data.decode("utf-8"))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.warning("ws.push.failed channel_id={} error={}", channel_id, exc)
            return False
        return True
