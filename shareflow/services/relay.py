"""Relay router: point-to-point signal delivery and room fan-out."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..schemas.signaling import SignalEnvelope, encode_frame
from .rooms import RoomRegistry

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


class _Outbox:
    """FIFO of frames for one connection, written by a single task."""

    def __init__(self, connection: SignalingConnection) -> None:
        self.connection = connection
        self._queue: asyncio.Queue[Optional[dict]] = asyncio.Queue()
        self._task = asyncio.create_task(self._pump())

    def put(self, frame: dict) -> None:
        self._queue.put_nowait(frame)

    async def join(self) -> None:
        await self._queue.join()

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        with suppress(asyncio.CancelledError):
            await self._task

    def cancel(self) -> None:
        self._task.cancel()

    def on_done(self, callback: Callable[[], None]) -> None:
        self._task.add_done_callback(lambda _task: callback())

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                if frame is None:
                    return
                await self.connection.send(frame)
            except Exception as exc:  # noqa: BLE001 - recipient went away mid-flight
                logger.debug("Dropping frame for %s: %s", self.connection.connection_id, exc)
            finally:
                self._queue.task_done()


class RelayRouter:
    """Deliver frames to connected sessions without blocking on network I/O."""

    def __init__(self, registry: RoomRegistry) -> None:
        self._registry = registry
        self._outboxes: Dict[str, _Outbox] = {}
        self._closing: set[_Outbox] = set()

    def __len__(self) -> int:
        return len(self._outboxes)

    def attach(self, connection: SignalingConnection) -> None:
        previous = self._outboxes.get(connection.connection_id)
        if previous is not None:
            self._retire(previous)
        self._outboxes[connection.connection_id] = _Outbox(connection)

    def detach(self, connection_id: str) -> None:
        """Stop routing to ``connection_id``; frames already queued are still written."""

        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None:
            self._retire(outbox)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._outboxes

    def connection_ids(self) -> list[str]:
        return list(self._outboxes)

    def send(self, connection_id: str, event: str, data: Any = None) -> bool:
        """Queue one frame for ``connection_id``. Returns ``False`` when it is not connected."""

        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        outbox.put(encode_frame(event, data))
        return True

    def route(self, envelope: SignalEnvelope) -> bool:
        """Deliver a signal envelope to its recipient only; unknown recipients are dropped."""

        delivered = self.send(envelope.to_id, envelope.event, envelope.to_wire())
        if delivered:
            logger.debug("Relayed %s from %s to %s", envelope.kind.value, envelope.from_id, envelope.to_id)
        else:
            logger.debug(
                "Dropped %s from %s: %s is not connected", envelope.kind.value, envelope.from_id, envelope.to_id
            )
        return delivered

    def broadcast(self, room_code: str, event: str, data: Any = None, *, exclude_id: str | None = None) -> int:
        """Send an event to every connected member of the room except ``exclude_id``."""

        room = self._registry.get(room_code)
        if room is None:
            return 0
        delivered = 0
        for member_id in room.member_ids:
            if member_id == exclude_id:
                continue
            if self.send(member_id, event, data):
                delivered += 1
        return delivered

    async def flush(self, connection_id: str | None = None) -> None:
        """Wait until queued frames have been handed to the transport."""

        if connection_id is not None:
            outbox = self._outboxes.get(connection_id)
            outboxes = [outbox] if outbox else []
        else:
            outboxes = [*self._outboxes.values(), *self._closing]
        for outbox in outboxes:
            await outbox.join()

    async def aclose(self) -> None:
        for connection_id in list(self._outboxes):
            self.detach(connection_id)
        pending = list(self._closing)
        for outbox in pending:
            outbox.cancel()
        for outbox in pending:
            await outbox.wait_closed()
        self._closing.clear()

    def _retire(self, outbox: _Outbox) -> None:
        outbox.close()
        self._closing.add(outbox)
        outbox.on_done(lambda: self._closing.discard(outbox))
