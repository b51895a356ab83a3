"""In-memory async bus feeding the dispatch loop."""

from __future__ import annotations

import asyncio
from typing import Protocol

from code_iterator.events import InboundEvent


class BusProtocol(Protocol):
    """What the transport publishes to and the dispatch loop reads from."""

    async def publish_inbound(self, event: InboundEvent) -> None: ...

    async def next_inbound(self, timeout_seconds: float | None = None) -> InboundEvent | None: ...


class MessageBus:
    """Unbounded FIFO of inbound events with a single reader.

    Publishers never block; ordering across sources is arrival order.
    """

    def __init__(self) -> None:
        self._events: asyncio.Queue[InboundEvent] = asyncio.Queue()

    async def publish_inbound(self, event: InboundEvent) -> None:
        self._events.put_nowait(event)

    async def next_inbound(self, timeout_seconds: float | None = None) -> InboundEvent | None:
        """Wait for the next event; ``None`` when ``timeout_seconds`` passes first."""

        try:
            async with asyncio.timeout(timeout_seconds):
                return await self._events.get()
        except TimeoutError:
            return None
