"""Read-only operational endpoints over relay state."""
from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response

from ..schemas import admin as admin_schema
from ..services.sessions import SessionSupervisor

router = APIRouter()

SERVICE_NAME = "ShareFlow Signaling Relay"


def get_supervisor(request: Request) -> SessionSupervisor:
    return request.app.state.supervisor


@router.get("/", response_model=admin_schema.ServiceInfo, tags=["meta"])
async def service_info(
    request: Request,
    supervisor: SessionSupervisor = Depends(get_supervisor),
) -> admin_schema.ServiceInfo:
    """Describe the service and where its health checks live."""

    return admin_schema.ServiceInfo(
        service=SERVICE_NAME,
        version=request.app.version,
        health="/api/health",
        stats="/api/rooms",
        rooms=len(supervisor.registry),
        users=supervisor.current_users,
    )


@router.get("/api/health", response_model=admin_schema.HealthResponse, tags=["meta"])
async def health(supervisor: SessionSupervisor = Depends(get_supervisor)) -> admin_schema.HealthResponse:
    """Liveness check with uptime, connection and room counts."""

    return admin_schema.HealthResponse(
        timestamp=datetime.now(timezone.utc),
        uptime=supervisor.uptime,
        connections=supervisor.current_connections,
        rooms=len(supervisor.registry),
        users=supervisor.current_users,
    )


@router.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


@router.get("/api/rooms", response_model=admin_schema.StatsResponse, tags=["rooms"])
async def room_stats(supervisor: SessionSupervisor = Depends(get_supervisor)) -> admin_schema.StatsResponse:
    """Snapshot of every live room plus connection counters."""

    rooms = supervisor.registry.snapshots()
    return admin_schema.StatsResponse(
        total_connections=supervisor.stats.total_connections,
        current_connections=supervisor.current_connections,
        peak_connections=supervisor.stats.peak_connections,
        rooms_created=supervisor.registry.rooms_created,
        current_rooms=len(rooms),
        current_users=supervisor.current_users,
        active_room_codes=[room.code for room in rooms],
        rooms=[admin_schema.RoomSummary.from_room(room) for room in rooms],
    )


@router.get("/api/rooms/{code}", response_model=admin_schema.RoomDiagnosticResponse, tags=["rooms"])
async def room_detail(
    code: str, supervisor: SessionSupervisor = Depends(get_supervisor)
) -> admin_schema.RoomDiagnosticResponse:
    """Diagnostic view of one room and which of its members are connected."""

    room = supervisor.registry.get(code)
    if room is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Room not found", "availableRooms": supervisor.registry.codes()},
        )
    connected = [member_id for member_id in room.member_ids if supervisor.router.is_connected(member_id)]
    return admin_schema.RoomDiagnosticResponse(room=room, connected_members=connected)
