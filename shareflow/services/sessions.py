"""Session supervisor: binds connections to users and drives room membership."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from pydantic import ValidationError

from ..core.config import Settings, settings as default_settings
from ..core.errors import InvalidInputError, RelayError
from ..schemas.rooms import ChatMessage, RoomSnapshot, RoomUpdate
from ..schemas.signaling import RoomCreateRequest, RoomJoinRequest, SignalKind, decode_signal
from .relay import RelayRouter, SignalingConnection
from .rooms import RoomRegistry, User, clean_display_name, normalize_room_code

logger = logging.getLogger(__name__)

HOST_LEFT_REASON = "Host has left the room"

FAILURE_MESSAGES = {
    "room:create": "Failed to create room",
    "room:join": "Failed to join room",
}

Handler = Callable[["Session", Any], Awaitable[None]]


@dataclass
class Session:
    """One live transport connection and the user bound to it."""

    connection: SignalingConnection
    user: Optional[User] = None
    room_code: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)

    @property
    def id(self) -> str:
        return self.connection.connection_id

    def submit(self, event: str, data: Any = None) -> None:
        self.inbox.put_nowait((event, data))

    def close_inbox(self) -> None:
        self.inbox.put_nowait(None)


@dataclass
class _RoomLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass(slots=True)
class ConnectionStats:
    total_connections: int = 0
    peak_connections: int = 0


class SessionSupervisor:
    """Own the registry and router for one relay process."""

    def __init__(
        self,
        *,
        registry: RoomRegistry | None = None,
        router: RelayRouter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.registry = registry or RoomRegistry(
            self._is_connected,
            max_viewers_cap=self.settings.max_viewers_cap,
            code_length=self.settings.room_code_length,
            idle_ttl=timedelta(hours=self.settings.room_idle_ttl_hours),
        )
        self.router = router or RelayRouter(self.registry)
        self.stats = ConnectionStats()
        self.started_at = time.monotonic()
        self._sessions: Dict[str, Session] = {}
        self._room_locks: Dict[str, _RoomLock] = {}
        self._handlers: Dict[str, Handler] = {
            "room:create": self._create_room,
            "room:join": self._join_room,
            "room:leave": self._leave_room,
            "chat:message": self._chat,
            "stream:start": self._start_stream,
            "stream:stop": self._stop_stream,
        }
        for kind in SignalKind:
            self._handlers[kind.event] = self._signal_handler(kind.event)

    @property
    def current_connections(self) -> int:
        return len(self._sessions)

    @property
    def current_users(self) -> int:
        return sum(1 for session in self._sessions.values() if session.user is not None)

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def get_session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def connect(self, connection: SignalingConnection) -> Session:
        """Register a new connection and tell it its id."""

        session = Session(connection=connection)
        self._sessions[session.id] = session
        self.router.attach(connection)
        self.stats.total_connections += 1
        self.stats.peak_connections = max(self.stats.peak_connections, len(self._sessions))
        logger.info("User connected: %s (active: %d)", session.id, len(self._sessions))
        self.router.send(session.id, "session:ready", {"id": session.id})
        return session

    async def serve(self, session: Session) -> None:
        """Drain the session's inbound queue in arrival order until it is closed."""

        while True:
            item = await session.inbox.get()
            if item is None:
                return
            event, data = item
            await self.dispatch(session, event, data)

    async def dispatch(self, session: Session, event: str, data: Any = None) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring unknown event %r from %s", event, session.id)
            return
        try:
            await handler(session, data)
        except RelayError as exc:
            logger.warning("Rejected %s from %s: %s", event, session.id, exc.message)
            self.reply_error(session, exc.message)
        except Exception:  # noqa: BLE001 - one bad message must not take the relay down
            logger.exception("Error handling %s from %s", event, session.id)
            failure = FAILURE_MESSAGES.get(event)
            if failure:
                self.reply_error(session, failure)

    def reply_error(self, session: Session, message: str) -> None:
        self.router.send(session.id, "error", message)

    async def disconnect(self, session: Session, reason: str = "transport closed") -> None:
        """Stop routing to the connection, then remove its user from the room and notify members."""

        if self._sessions.get(session.id) is not session:
            return
        logger.info("User disconnected: %s (reason: %s)", session.id, reason)
        self._sessions.pop(session.id, None)
        self.router.detach(session.id)
        await self._depart(session)
        session.user = None

    def sweep(self, now: datetime | None = None) -> list[str]:
        removed = self.registry.sweep(now)
        for code in removed:
            self._release_sessions(code)
            entry = self._room_locks.get(code)
            if entry is not None and entry.holders == 0:
                self._room_locks.pop(code, None)
        return removed

    async def aclose(self) -> None:
        for session in list(self._sessions.values()):
            session.close_inbox()
        self._sessions.clear()
        await self.router.aclose()

    async def _create_room(self, session: Session, data: Any) -> None:
        request = _parse(RoomCreateRequest, data, "Invalid host name", {"maxViewers": "Invalid input"})
        host_name = _clean(
            clean_display_name, request.host_name, "Invalid host name", limit=self.settings.max_name_length
        )
        code = None
        if request.room_code:
            code = _clean(
                normalize_room_code,
                request.room_code,
                "Invalid room code",
                length=self.settings.room_code_length,
            )

        # Only the host re-creating its own room keeps its membership.
        current = self.registry.get(session.room_code) if session.room_code else None
        keeps_room = current is not None and current.host_id == session.id and current.code == code
        if session.room_code is not None and not keeps_room:
            await self._depart(session)

        async with self._room_lock(code or f"new:{session.id}"):
            previous = self.registry.get(code) if code else None
            room = self.registry.create_room(session.id, host_name, code, request.max_viewers)
            if previous is not None and room.code == previous.code and previous.host_id != session.id:
                self._hand_over(previous, room)

        session.user = User(id=session.id, display_name=host_name, is_host=True)
        session.room_code = room.code
        logger.info("Room %s ready with host %s (%s)", room.code, host_name, session.id)
        self.router.send(session.id, "room:created", room.to_wire())

    def _hand_over(self, previous: RoomSnapshot, room: RoomSnapshot) -> None:
        """Tell the remaining viewers that the former host is gone."""

        logger.info("Room %s handed over from %s to %s", room.code, previous.host_id, room.host_id)
        stale = self._sessions.get(previous.host_id)
        if stale is not None and stale.room_code == room.code:
            stale.room_code = None
            stale.user = None
        self.router.broadcast(room.code, "user:left", previous.host_id, exclude_id=room.host_id)
        self.router.broadcast(room.code, "room:updated", RoomUpdate.from_room(room).to_wire())

    async def _join_room(self, session: Session, data: Any) -> None:
        message = "Invalid room code or name"
        request = _parse(RoomJoinRequest, data, message)
        name = _clean(clean_display_name, request.user_name, message, limit=self.settings.max_name_length)
        code = _clean(normalize_room_code, request.room_code, message, length=self.settings.room_code_length)

        if session.room_code is not None and session.room_code != code:
            await self._depart(session)

        async with self._room_lock(code):
            already_member = self.registry.room_code_of(session.id) == code
            user = session.user if already_member and session.user else User(id=session.id, display_name=name)
            room = self.registry.join_room(code, user)
            session.user = user
            session.room_code = code
            self.router.send(session.id, "room:joined", room.as_seen_by(session.id).to_wire())
            if already_member:
                return
            self.router.broadcast(code, "room:updated", RoomUpdate.from_room(room).to_wire())
            self.router.broadcast(code, "user:joined", user.snapshot().to_wire(), exclude_id=session.id)

    async def _leave_room(self, session: Session, data: Any) -> None:
        await self._depart(session)
        session.user = None

    async def _chat(self, session: Session, data: Any) -> None:
        if session.user is None or session.room_code is None:
            return
        if self.registry.room_code_of(session.id) != session.room_code:
            logger.debug("Dropping chat from %s: no longer in room %s", session.id, session.room_code)
            return
        if not isinstance(data, str) or not data.strip() or len(data) > self.settings.max_chat_length:
            logger.debug("Dropping invalid chat message from %s", session.id)
            return
        now = datetime.now(timezone.utc)
        message = ChatMessage(
            id=f"{int(now.timestamp() * 1000)}-{uuid4().hex[:8]}",
            sender_id=session.id,
            sender_name=session.user.display_name,
            message=data,
            timestamp=now,
        )
        async with self._room_lock(session.room_code):
            self.router.broadcast(session.room_code, "chat:message", message.to_wire(), exclude_id=session.id)

    def _signal_handler(self, event: str) -> Handler:
        async def handle(session: Session, data: Any) -> None:
            envelope = decode_signal(event, session.id, data)
            if not self.registry.shares_room(envelope.from_id, envelope.to_id):
                logger.debug(
                    "Dropping %s from %s: %s is not in the same room", event, envelope.from_id, envelope.to_id
                )
                return
            self.router.route(envelope)

        return handle

    async def _start_stream(self, session: Session, data: Any) -> None:
        await self._set_streaming(session, True)

    async def _stop_stream(self, session: Session, data: Any) -> None:
        await self._set_streaming(session, False)

    async def _set_streaming(self, session: Session, streaming: bool) -> None:
        code = session.room_code
        if code is None:
            return
        async with self._room_lock(code):
            room = self.registry.set_streaming(code, session.id, streaming)
            if room is None:
                logger.warning("Ignoring stream toggle from non-host %s in room %s", session.id, code)
                return
            event = "stream:started" if streaming else "stream:stopped"
            self.router.broadcast(code, event, exclude_id=session.id)

    async def _depart(self, session: Session) -> None:
        """Leave the current room.

        A departing host's viewers get ``stream:stopped`` and then ``room:closed``
        while the room record still exists; the record is deleted afterwards.
        """

        code = session.room_code
        session.room_code = None
        if code is None:
            return

        async with self._room_lock(code):
            room = self.registry.get(code)
            if room is None:
                return
            if room.host_id == session.id:
                logger.info("Host %s left room %s, notifying %d viewers", session.id, code, room.viewer_count)
                self.router.broadcast(code, "stream:stopped", exclude_id=session.id)
                self.router.broadcast(code, "room:closed", HOST_LEFT_REASON, exclude_id=session.id)
                self.registry.leave(code, session.id)
                self._release_sessions(code)
                return

            result = self.registry.leave(code, session.id)
            if result.closed:
                self._release_sessions(code)
            elif result.removed and result.room is not None:
                self.router.broadcast(code, "user:left", session.id)
                self.router.broadcast(code, "room:updated", RoomUpdate.from_room(result.room).to_wire())

    @asynccontextmanager
    async def _room_lock(self, code: str) -> AsyncIterator[None]:
        """Serialize membership and stream changes per room; different rooms never contend."""

        entry = self._room_locks.setdefault(code, _RoomLock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and code not in self.registry:
                self._room_locks.pop(code, None)

    def _release_sessions(self, code: str) -> None:
        """Unbind every session still pointing at a room that no longer exists."""

        for other in self._sessions.values():
            if other.room_code == code:
                other.room_code = None
                other.user = None

    def _is_connected(self, user_id: str) -> bool:
        return self.router.is_connected(user_id)


def _parse(model: type, data: Any, message: str, field_messages: Dict[str, str] | None = None) -> Any:
    """Validate ``data``; errors confined to fields in ``field_messages`` get that field's message."""

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = [error["loc"][0] for error in exc.errors() if error["loc"]]
        if field_messages and fields and all(field in field_messages for field in fields):
            raise InvalidInputError(field_messages[fields[0]]) from exc
        raise InvalidInputError(message) from exc


def _clean(cleaner: Callable[..., str], value: Any, message: str, **kwargs: Any) -> str:
    try:
        return cleaner(value, **kwargs)
    except InvalidInputError as exc:
        raise InvalidInputError(message) from exc
