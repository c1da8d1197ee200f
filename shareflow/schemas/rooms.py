"""Wire snapshots of rooms, users and chat messages."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Immutable model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class UserSnapshot(CamelModel):
    id: str
    display_name: str
    is_host: bool = False
    joined_at: datetime


class RoomSnapshot(CamelModel):
    id: str
    code: str
    host_id: str
    host_name: str
    viewers: list[UserSnapshot] = Field(default_factory=list)
    viewer_count: int = Field(default=0, ge=0)
    max_viewers: int = Field(..., ge=1)
    is_streaming: bool = False
    created_at: datetime
    last_activity_at: datetime

    @property
    def viewer_ids(self) -> list[str]:
        return [viewer.id for viewer in self.viewers]

    @property
    def member_ids(self) -> list[str]:
        """Host first, then viewers in join order."""

        return [self.host_id, *self.viewer_ids]

    def has_member(self, user_id: str) -> bool:
        return user_id == self.host_id or user_id in self.viewer_ids

    def as_seen_by(self, user_id: str) -> "RoomSnapshot":
        """Return the snapshot with ``user_id`` left out of ``viewers``."""

        others = [viewer for viewer in self.viewers if viewer.id != user_id]
        return self.model_copy(update={"viewers": others})


class RoomUpdate(CamelModel):
    viewers: list[UserSnapshot]
    viewer_count: int

    @classmethod
    def from_room(cls, room: RoomSnapshot) -> "RoomUpdate":
        return cls(viewers=room.viewers, viewer_count=room.viewer_count)


class ChatMessage(CamelModel):
    id: str
    sender_id: str
    sender_name: str
    message: str
    timestamp: datetime
