import pytest
from httpx import ASGITransport, AsyncClient

from shareflow.main import create_app
from shareflow.services.rooms import User


@pytest.mark.asyncio
async def test_health_endpoint() -> None:
    transport = ASGITransport(app=create_app())

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/api/health")
        head = await client.head("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["connections"] == 0
    assert body["rooms"] == 0
    assert body["users"] == 0
    assert body["uptime"] >= 0
    assert "timestamp" in body
    assert head.status_code == 200


@pytest.mark.asyncio
async def test_service_info() -> None:
    transport = ASGITransport(app=create_app())

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/")

    assert response.status_code == 200
    body = response.json()
    assert body["service"] == "ShareFlow Signaling Relay"
    assert body["version"] == "1.0.0"
    assert body["health"] == "/api/health"


@pytest.mark.asyncio
async def test_room_stats_and_detail() -> None:
    app = create_app()
    registry = app.state.supervisor.registry
    room = registry.create_room("host-1", "Alice", "ABC123", max_viewers=3)
    registry.join_room(room.code, User(id="viewer-1", display_name="Bob"))
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        stats = await client.get("/api/rooms")
        detail = await client.get("/api/rooms/abc123")

    assert stats.status_code == 200
    stats_body = stats.json()
    assert stats_body["currentRooms"] == 1
    assert stats_body["roomsCreated"] == 1
    assert stats_body["activeRoomCodes"] == ["ABC123"]
    assert stats_body["rooms"][0]["viewers"] == 1
    assert stats_body["rooms"][0]["viewerList"] == [{"id": "viewer-1", "displayName": "Bob"}]
    assert stats_body["rooms"][0]["maxViewers"] == 3

    assert detail.status_code == 200
    detail_body = detail.json()
    assert detail_body["room"]["code"] == "ABC123"
    assert detail_body["room"]["hostName"] == "Alice"
    assert detail_body["connectedMembers"] == []


@pytest.mark.asyncio
async def test_unknown_room_lists_available_codes() -> None:
    app = create_app()
    app.state.supervisor.registry.create_room("host-1", "Alice", "ABC123")
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/api/rooms/ZZZ999")

    assert response.status_code == 404
    assert response.json() == {"detail": {"error": "Room not found", "availableRooms": ["ABC123"]}}
