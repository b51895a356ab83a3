"""Single-slot registry of the WebSocket channel that receives pushes."""

from __future__ import annotations

from typing import Protocol

from loguru import logger

from code_iterator.events import UNSET_CHANNEL, WsMessageType


class WsPusher(Protocol):
    """Transport side of a push: deliver one frame to one channel."""

    async def send_ws_push(self, channel_id: int, message_type: WsMessageType, data: bytes) -> bool: ...


class SessionChannelRegistry:
    """Track the current channel id; the last opened channel wins."""

    def __init__(self, pusher: WsPusher) -> None:
        self._pusher = pusher
        self._channel_id = UNSET_CHANNEL

    def set_channel(self, channel_id: int) -> None:
        if self._channel_id not in (UNSET_CHANNEL, channel_id):
            logger.info("channel.superseded previous={} current={}", self._channel_id, channel_id)
        self._channel_id = channel_id

    def get_channel(self) -> int:
        return self._channel_id

    @property
    def is_set(self) -> bool:
        return self._channel_id != UNSET_CHANNEL

    async def push(self, payload: str) -> bool:
        """Send a text frame to the current channel; drop it when none is open."""

        channel_id = self._channel_id
        if channel_id == UNSET_CHANNEL:
            logger.warning("channel.push.dropped reason=no_channel bytes={}", len(payload))
            return False
        return await self._pusher.send_ws_push(channel_id, WsMessageType.TEXT, payload.encode("utf-8"))
