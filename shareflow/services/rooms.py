"""In-memory room registry.

The registry is the only writer of room state. Every operation returns a
``RoomSnapshot`` so callers never hold a reference to mutable room records.
"""
from __future__ import annotations

import logging
import re
import secrets
import string
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..core.config import settings
from ..core.errors import InvalidInputError, RoomFullError, RoomNotFoundError
from ..schemas.rooms import RoomSnapshot, UserSnapshot

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits

PresenceCheck = Callable[[str], bool]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_display_name(value: object, *, limit: int | None = None) -> str:
    """Strip control characters and surrounding whitespace from a display name."""

    limit = limit or settings.max_name_length
    if not isinstance(value, str):
        raise InvalidInputError("Invalid display name")
    cleaned = "".join(ch for ch in value if unicodedata.category(ch)[0] != "C").strip()
    if not cleaned or len(cleaned) > limit:
        raise InvalidInputError("Invalid display name")
    return cleaned


def normalize_room_code(value: object, *, length: int | None = None) -> str:
    """Upper-case a room code and check it against the code alphabet."""

    length = length or settings.room_code_length
    if not isinstance(value, str):
        raise InvalidInputError("Invalid room code")
    code = value.strip().upper()
    if not re.fullmatch(rf"[A-Z0-9]{{{length}}}", code):
        raise InvalidInputError("Invalid room code")
    return code


@dataclass(slots=True)
class User:
    id: str
    display_name: str
    is_host: bool = False
    joined_at: datetime = field(default_factory=_utcnow)

    def snapshot(self) -> UserSnapshot:
        return UserSnapshot(
            id=self.id,
            display_name=self.display_name,
            is_host=self.is_host,
            joined_at=self.joined_at,
        )


@dataclass(slots=True)
class _Room:
    code: str
    host_id: str
    host_name: str
    max_viewers: int
    created_at: datetime
    last_activity_at: datetime
    viewers: list[User] = field(default_factory=list)
    is_streaming: bool = False

    def snapshot(self) -> RoomSnapshot:
        return RoomSnapshot(
            id=self.code,
            code=self.code,
            host_id=self.host_id,
            host_name=self.host_name,
            viewers=[viewer.snapshot() for viewer in self.viewers],
            viewer_count=len(self.viewers),
            max_viewers=self.max_viewers,
            is_streaming=self.is_streaming,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
        )

    def viewer(self, user_id: str) -> Optional[User]:
        return next((viewer for viewer in self.viewers if viewer.id == user_id), None)


@dataclass(slots=True)
class LeaveResult:
    """Outcome of ``RoomRegistry.leave``; ``room`` is the state after removal."""

    room: Optional[RoomSnapshot] = None
    removed: bool = False
    closed: bool = False
    host_left: bool = False


class RoomRegistry:
    """Own room lifecycle: creation, capacity, membership, host tracking and idle cleanup."""

    def __init__(
        self,
        is_connected: PresenceCheck,
        *,
        max_viewers_cap: int | None = None,
        code_length: int | None = None,
        idle_ttl: timedelta | None = None,
        clock: Clock = _utcnow,
        code_factory: Callable[[], str] | None = None,
    ) -> None:
        self._is_connected = is_connected
        self._max_viewers_cap = max_viewers_cap or settings.max_viewers_cap
        self._code_length = code_length or settings.room_code_length
        self._idle_ttl = idle_ttl or timedelta(hours=settings.room_idle_ttl_hours)
        self._clock = clock
        self._code_factory = code_factory or self._random_code
        self._rooms: Dict[str, _Room] = {}
        self._membership: Dict[str, str] = {}
        self.rooms_created = 0

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, code: object) -> bool:
        return code in self._rooms

    def create_room(
        self,
        host_id: str,
        host_name: str,
        requested_code: str | None = None,
        max_viewers: int | None = None,
    ) -> RoomSnapshot:
        """Create a room for ``host_id`` or hand an unattended room over to it."""

        if requested_code is not None:
            code = requested_code.strip().upper()
            existing = self._rooms.get(code)
            if existing is not None:
                if existing.host_id == host_id:
                    return existing.snapshot()
                if not self._is_connected(existing.host_id):
                    return self._take_over(existing, host_id, host_name)
                logger.info("Room %s still has a connected host, allocating a new code", code)
            else:
                return self._insert(code, host_id, host_name, max_viewers)

        return self._insert(self._unique_code(), host_id, host_name, max_viewers)

    def join_room(self, code: str, user: User) -> RoomSnapshot:
        """Add ``user`` as a viewer. Re-joining with the same id is a no-op."""

        room = self._rooms.get(code.strip().upper())
        if room is None:
            logger.warning("Attempted to join non-existent room %s", code)
            raise RoomNotFoundError()

        if user.id == room.host_id or room.viewer(user.id) is not None:
            return room.snapshot()

        if len(room.viewers) >= room.max_viewers:
            logger.warning("Room %s is full (%d/%d)", room.code, len(room.viewers), room.max_viewers)
            raise RoomFullError()

        room.viewers.append(user)
        room.last_activity_at = self._clock()
        self._membership[user.id] = room.code
        logger.info(
            "User %s joined room %s (%d/%d)", user.display_name, room.code, len(room.viewers), room.max_viewers
        )
        return room.snapshot()

    def leave(self, room_code: str, user_id: str) -> LeaveResult:
        """Remove ``user_id`` from the room, closing it when the host leaves or it empties."""

        room = self._rooms.get(room_code)
        if room is None:
            return LeaveResult()

        if user_id == room.host_id:
            logger.info("Host left room %s, closing room", room.code)
            snapshot = room.snapshot()
            self._delete(room.code)
            return LeaveResult(room=snapshot, removed=True, closed=True, host_left=True)

        viewer = room.viewer(user_id)
        if viewer is None:
            return LeaveResult(room=room.snapshot())

        room.viewers.remove(viewer)
        room.last_activity_at = self._clock()
        self._membership.pop(user_id, None)
        logger.info("User %s removed from room %s (%d viewers remaining)", user_id, room.code, len(room.viewers))

        snapshot = room.snapshot()
        if not room.viewers and not room.is_streaming:
            logger.info("Room %s is empty, removing", room.code)
            self._delete(room.code)
            return LeaveResult(room=snapshot, removed=True, closed=True)
        return LeaveResult(room=snapshot, removed=True)

    def set_streaming(self, room_code: str, host_id: str, streaming: bool) -> Optional[RoomSnapshot]:
        """Toggle ``is_streaming``; only the room's host may do so."""

        room = self._rooms.get(room_code)
        if room is None or room.host_id != host_id:
            return None
        room.is_streaming = streaming
        room.last_activity_at = self._clock()
        logger.info("Stream %s in room %s", "started" if streaming else "stopped", room.code)
        return room.snapshot()

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Delete rooms idle for at least the TTL that have no viewers."""

        now = now or self._clock()
        stale = [
            code
            for code, room in self._rooms.items()
            if not room.viewers and now - room.last_activity_at >= self._idle_ttl
        ]
        for code in stale:
            self._delete(code)
        if stale:
            logger.info("Cleaned up %d stale rooms", len(stale))
        return stale

    def get(self, code: str) -> Optional[RoomSnapshot]:
        room = self._rooms.get(code.strip().upper())
        return room.snapshot() if room else None

    def snapshots(self) -> list[RoomSnapshot]:
        return [room.snapshot() for room in self._rooms.values()]

    def codes(self) -> list[str]:
        return list(self._rooms)

    def room_code_of(self, user_id: str) -> Optional[str]:
        return self._membership.get(user_id)

    def shares_room(self, first_id: str, second_id: str) -> bool:
        code = self._membership.get(first_id)
        return code is not None and code == self._membership.get(second_id)

    def _insert(self, code: str, host_id: str, host_name: str, max_viewers: int | None) -> RoomSnapshot:
        now = self._clock()
        room = _Room(
            code=code,
            host_id=host_id,
            host_name=host_name,
            max_viewers=self._clamp_viewers(max_viewers),
            created_at=now,
            last_activity_at=now,
        )
        self._rooms[code] = room
        self._membership[host_id] = code
        self.rooms_created += 1
        logger.info("Room created: %s by %s (total rooms: %d)", code, host_name, len(self._rooms))
        return room.snapshot()

    def _take_over(self, room: _Room, host_id: str, host_name: str) -> RoomSnapshot:
        previous = room.host_id
        if self._membership.get(previous) == room.code:
            self._membership.pop(previous, None)
        viewer = room.viewer(host_id)
        if viewer is not None:
            room.viewers.remove(viewer)
        room.host_id = host_id
        room.host_name = host_name
        room.last_activity_at = self._clock()
        self._membership[host_id] = room.code
        logger.info("Host %s took over room %s from %s", host_name, room.code, previous)
        return room.snapshot()

    def _delete(self, code: str) -> None:
        room = self._rooms.pop(code, None)
        if room is None:
            return
        for member_id in (room.host_id, *(viewer.id for viewer in room.viewers)):
            if self._membership.get(member_id) == code:
                self._membership.pop(member_id, None)

    def _clamp_viewers(self, value: int | None) -> int:
        if value is None:
            return self._max_viewers_cap
        return max(1, min(int(value), self._max_viewers_cap))

    def _unique_code(self) -> str:
        code = self._code_factory()
        while code in self._rooms:
            code = self._code_factory()
        return code

    def _random_code(self) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self._code_length))
