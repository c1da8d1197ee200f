"""WebSocket client for the signaling relay."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

import websockets

from ..core.errors import InvalidInputError
from ..schemas.signaling import decode_frame, encode_frame
from .peer import Outbound, PeerAgent

logger = logging.getLogger(__name__)

FrameHandler = Callable[[str, Any], Awaitable[None]]
EffectHandler = Callable[[object], Awaitable[None]]


class RelayClient:
    """Handle the lifespan of one relay connection."""

    def __init__(self, ws: Any, on_frame: FrameHandler | None = None) -> None:
        self._ws = ws
        self.on_frame = on_frame
        self._receive_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "RelayClient":
        self._receive_task = asyncio.create_task(self._receive_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._receive_task:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
        await self._ws.close()

    async def send(self, event: str, data: Any = None) -> None:
        await self._ws.send(json.dumps(encode_frame(event, data)))

    async def deliver(self, effects: Iterable[object], on_effect: EffectHandler | None = None) -> None:
        """Send ``Outbound`` frames in order and pass every other effect to ``on_effect``."""

        for effect in effects:
            if isinstance(effect, Outbound):
                await self.send(effect.event, effect.data)
            elif on_effect is not None:
                await on_effect(effect)

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                try:
                    event, data = decode_frame(message)
                except InvalidInputError:
                    logger.warning("Ignoring malformed frame from relay")
                    continue
                if self.on_frame:
                    await self.on_frame(event, data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - connection dropped, nothing left to read
            logger.info("Relay connection closed: %s", exc)


@asynccontextmanager
async def connect(
    url: str,
    agent: PeerAgent | None = None,
    *,
    on_effect: EffectHandler | None = None,
) -> AsyncIterator[RelayClient]:
    """Open a relay connection, optionally driving ``agent`` from incoming frames."""

    async with websockets.connect(url) as ws:
        client = RelayClient(ws)
        if agent is not None:

            async def forward(event: str, data: Any) -> None:
                await client.deliver(agent.handle(event, data), on_effect)

            client.on_frame = forward
        async with client:
            yield client
