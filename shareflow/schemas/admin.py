"""Schemas for the read-only operational endpoints."""
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from .rooms import CamelModel, RoomSnapshot


class HealthResponse(CamelModel):
    status: str = "ok"
    timestamp: datetime
    uptime: float = Field(..., ge=0)
    connections: int
    rooms: int
    users: int


class ViewerSummary(CamelModel):
    id: str
    display_name: str


class RoomSummary(CamelModel):
    code: str
    host_id: str
    host_name: str
    viewers: int
    viewer_list: list[ViewerSummary]
    max_viewers: int
    is_streaming: bool
    created_at: datetime

    @classmethod
    def from_room(cls, room: RoomSnapshot) -> "RoomSummary":
        return cls(
            code=room.code,
            host_id=room.host_id,
            host_name=room.host_name,
            viewers=room.viewer_count,
            viewer_list=[ViewerSummary(id=viewer.id, display_name=viewer.display_name) for viewer in room.viewers],
            max_viewers=room.max_viewers,
            is_streaming=room.is_streaming,
            created_at=room.created_at,
        )


class StatsResponse(CamelModel):
    total_connections: int
    current_connections: int
    peak_connections: int
    rooms_created: int
    current_rooms: int
    current_users: int
    active_room_codes: list[str]
    rooms: list[RoomSummary]


class RoomDiagnosticResponse(CamelModel):
    room: RoomSnapshot
    connected_members: list[str]


class ServiceInfo(CamelModel):
    service: str
    version: str
    status: str = "running"
    health: str
    stats: str
    rooms: int
    users: int
