"""Tests for the signaling websocket endpoint."""
from __future__ import annotations

from fastapi.testclient import TestClient

from shareflow.main import create_app


def _ready(ws) -> str:
    ready = ws.receive_json()
    assert ready["event"] == "session:ready"
    return ready["data"]["id"]


def test_signaling_websocket_room_flow():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/api/signaling") as host:
            host_id = _ready(host)
            host.send_json({"event": "room:create", "data": {"hostName": "Alice"}})
            created = host.receive_json()
            assert created["event"] == "room:created"
            code = created["data"]["code"]

            host.send_json({"event": "stream:start", "data": {}})
            host.send_json({"event": "room:create", "data": {"hostName": "Alice", "roomCode": code}})
            assert host.receive_json()["data"]["isStreaming"] is True

            with client.websocket_connect("/api/signaling") as viewer:
                viewer_id = _ready(viewer)
                viewer.send_json({"event": "room:join", "data": {"roomCode": code.lower(), "userName": "Bob"}})

                joined = viewer.receive_json()
                assert joined["event"] == "room:joined"
                assert joined["data"]["isStreaming"] is True
                assert joined["data"]["viewers"] == []
                assert viewer.receive_json()["event"] == "room:updated"

                assert host.receive_json()["event"] == "room:updated"
                notice = host.receive_json()
                assert notice["event"] == "user:joined"
                assert notice["data"]["id"] == viewer_id

                host.send_json(
                    {"event": "webrtc:offer", "data": {"to": viewer_id, "data": {"type": "offer", "sdp": "v=0"}}}
                )
                assert viewer.receive_json() == {
                    "event": "webrtc:offer",
                    "data": {"type": "offer", "from": host_id, "to": viewer_id, "data": {"type": "offer", "sdp": "v=0"}},
                }

                viewer.send_json(
                    {"event": "webrtc:answer", "data": {"to": host_id, "data": {"type": "answer", "sdp": "v=1"}}}
                )
                answer = host.receive_json()
                assert answer["event"] == "webrtc:answer"
                assert answer["data"]["from"] == viewer_id

            left = host.receive_json()
            assert left == {"event": "user:left", "data": viewer_id}
            assert host.receive_json()["data"]["viewerCount"] == 0


def test_signaling_websocket_host_leaving_closes_room():
    with TestClient(create_app()) as client:
        host_session = client.websocket_connect("/api/signaling")
        host = host_session.__enter__()
        _ready(host)
        host.send_json({"event": "room:create", "data": {"hostName": "Alice", "roomCode": "ABC123"}})
        assert host.receive_json()["data"]["code"] == "ABC123"

        with client.websocket_connect("/api/signaling") as viewer:
            _ready(viewer)
            viewer.send_json({"event": "room:join", "data": {"roomCode": "ABC123", "userName": "Bob"}})
            assert viewer.receive_json()["event"] == "room:joined"
            assert viewer.receive_json()["event"] == "room:updated"

            host_session.__exit__(None, None, None)

            assert viewer.receive_json() == {"event": "stream:stopped", "data": None}
            assert viewer.receive_json() == {"event": "room:closed", "data": "Host has left the room"}

            viewer.send_json({"event": "room:join", "data": {"roomCode": "ABC123", "userName": "Bob"}})
            assert viewer.receive_json() == {"event": "error", "data": "Room not found"}


def test_signaling_websocket_rejects_malformed_frames():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/api/signaling") as ws:
            _ready(ws)
            ws.send_text("not json")
            assert ws.receive_json() == {"event": "error", "data": "Invalid message"}

            ws.send_json({"data": {}})
            assert ws.receive_json() == {"event": "error", "data": "Invalid message"}

            ws.send_json({"event": "room:join", "data": {"roomCode": "NOPE00", "userName": "Bob"}})
            assert ws.receive_json() == {"event": "error", "data": "Room not found"}
