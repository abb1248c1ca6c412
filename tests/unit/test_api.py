from datetime import datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.config import Settings
from app.main import create_app

VISITOR_A = {"X-Visitor-Session-Id": "visitor-aaaa"}
VISITOR_B = {"X-Visitor-Session-Id": "visitor-bbbb"}
AGENT = {"X-Agent-Id": "agent-1"}


@pytest.fixture
def client(tmp_path: Path):
    settings = Settings(
        _env_file=None,
        storage_backend="memory",
        upload_dir=str(tmp_path / "uploads"),
        slot_grid_raw="mon-sun 00:00-23:30",
        greeting_message="Welcome!",
    )
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _parse_time(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


def _start(client: TestClient, headers: dict[str, str], message: str = "Hello") -> dict:
    response = client.post("/api/v1/visitor/conversations", json={"message": message}, headers=headers)
    assert response.status_code == 201
    return response.json()


def test_health(client: TestClient) -> None:
    assert client.get("/api/v1/health").json() == {"status": "ok"}
    assert client.get("/api/v1/health/storage").json() == {"storage": "ok"}


def test_visitor_flow_and_agent_claim(client: TestClient) -> None:
    first = _start(client, VISITOR_A, "Where is my order?")
    second = _start(client, VISITOR_B, "Refund")
    assert first["position"] == 1
    assert second["position"] == 2
    assert first["available_slots"]
    assert [message["id"] for message in first["messages"]] == [1, 2]

    claim = client.post("/api/v1/agent/conversations/next", json={"agent_name": "Maya"}, headers=AGENT)
    assert claim.status_code == 200
    assert claim.json()["conversation"]["id"] == first["conversation"]["id"]
    assert claim.json()["conversation"]["status"] == "active"

    position = client.get(
        f"/api/v1/visitor/conversations/{second['conversation']['id']}/position",
        headers=VISITOR_B,
    )
    assert position.json()["position"] == 1

    conversation_id = first["conversation"]["id"]
    reply = client.post(
        f"/api/v1/agent/conversations/{conversation_id}/messages",
        json={"body": "Let me check"},
        headers=AGENT,
    )
    assert reply.status_code == 201
    assert reply.json()["id"] == 4

    page = client.get(
        f"/api/v1/visitor/conversations/{conversation_id}/messages",
        params={"page": 1, "limit": 3},
        headers=VISITOR_A,
    ).json()
    assert page["current_page"] == 1
    assert page["last_page"] == 2
    assert [message["id"] for message in page["data"]] == [4, 3, 2]

    history = client.get(
        f"/api/v1/visitor/conversations/{conversation_id}/messages/history",
        params={"before": 3, "limit": 5},
        headers=VISITOR_A,
    ).json()
    assert [message["id"] for message in history["data"]] == [2, 1]
    assert history["next_cursor"] is None


def test_access_and_validation_errors(client: TestClient) -> None:
    started = _start(client, VISITOR_A)
    conversation_id = started["conversation"]["id"]

    forbidden = client.get(f"/api/v1/visitor/conversations/{conversation_id}", headers=VISITOR_B)
    assert forbidden.status_code == 403
    missing = client.get("/api/v1/visitor/conversations/999", headers=VISITOR_A)
    assert missing.status_code == 404
    no_header = client.get(f"/api/v1/visitor/conversations/{conversation_id}")
    assert no_header.status_code == 422
    not_assigned = client.post(
        f"/api/v1/agent/conversations/{conversation_id}/messages",
        json={"body": "hi"},
        headers=AGENT,
    )
    assert not_assigned.status_code == 403


def test_close_then_write_conflicts(client: TestClient) -> None:
    started = _start(client, VISITOR_A)
    conversation_id = started["conversation"]["id"]

    closed = client.post(f"/api/v1/visitor/conversations/{conversation_id}/close", headers=VISITOR_A)
    again = client.post(f"/api/v1/visitor/conversations/{conversation_id}/close", headers=VISITOR_A)
    assert closed.json()["status"] == "closed"
    assert again.status_code == 200

    late = client.post(
        f"/api/v1/visitor/conversations/{conversation_id}/messages",
        json={"body": "one more thing"},
        headers=VISITOR_A,
    )
    assert late.status_code == 409

    transcript = client.get(
        f"/api/v1/visitor/conversations/{conversation_id}/transcript", headers=VISITOR_A
    )
    assert transcript.headers["content-type"].startswith("text/plain")
    assert "The visitor closed the conversation." in transcript.text


def test_slot_conflict_returns_remaining_slots(client: TestClient) -> None:
    first = _start(client, VISITOR_A)
    second = _start(client, VISITOR_B)
    slots = client.get("/api/v1/visitor/slots", params={"limit": 5}).json()["slots"]
    wanted = slots[-1]

    reserved = client.post(
        f"/api/v1/visitor/conversations/{first['conversation']['id']}/slot",
        json={"slot_time": wanted},
        headers=VISITOR_A,
    )
    assert reserved.status_code == 200
    assert reserved.json()["conversation"]["status"] == "slot"

    conflict = client.post(
        f"/api/v1/visitor/conversations/{second['conversation']['id']}/slot",
        json={"slot_time": wanted},
        headers=VISITOR_B,
    )
    assert conflict.status_code == 409
    remaining = [_parse_time(slot) for slot in conflict.json()["detail"]["available_slots"]]
    assert _parse_time(wanted) not in remaining

    released = client.delete(
        f"/api/v1/visitor/conversations/{first['conversation']['id']}/slot",
        headers=VISITOR_A,
    )
    # Queue order follows conversation ids, so the older conversation goes first.
    assert released.json()["position"] == 1


def test_file_upload_and_download(client: TestClient) -> None:
    started = _start(client, VISITOR_A)
    conversation_id = started["conversation"]["id"]

    uploaded = client.post(
        f"/api/v1/visitor/conversations/{conversation_id}/files",
        files={"file": ("note.txt", b"tracking 123", "text/plain")},
        data={"caption": "my tracking number"},
        headers=VISITOR_A,
    )
    assert uploaded.status_code == 201
    body = uploaded.json()
    assert body["kind"] == "file"
    assert body["file"]["filename"] == "note.txt"

    downloaded = client.get(
        f"/api/v1/visitor/conversations/{conversation_id}/files/{body['file']['file_id']}",
        headers=VISITOR_A,
    )
    assert downloaded.content == b"tracking 123"


def test_websocket_streams_conversation_events(client: TestClient) -> None:
    started = _start(client, VISITOR_A)
    conversation_id = started["conversation"]["id"]

    with client.websocket_connect(
        f"/api/v1/realtime/ws?role=visitor&conversation_id={conversation_id}&session_id=visitor-aaaa"
    ) as websocket:
        connected = websocket.receive_json()
        assert connected["event"] == "system.connected"

        client.post(
            f"/api/v1/visitor/conversations/{conversation_id}/messages",
            json={"body": "anyone there?"},
            headers=VISITOR_A,
        )
        envelope = websocket.receive_json()
        assert envelope["type"] == "message.sent"
        assert envelope["conversationId"] == conversation_id
        assert envelope["payload"]["message"]["body"] == "anyone there?"

        websocket.send_json({"action": "call.accept"})
        error = websocket.receive_json()
        assert error["event"] == "system.error"
        assert error["payload"]["action"] == "call.accept"

        websocket.send_text("ping")
        assert websocket.receive_json()["event"] == "system.pong"


def test_websocket_rejects_foreign_visitor(client: TestClient) -> None:
    started = _start(client, VISITOR_A)
    conversation_id = started["conversation"]["id"]

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(
            f"/api/v1/realtime/ws?role=visitor&conversation_id={conversation_id}&session_id=visitor-bbbb"
        ) as websocket:
            websocket.receive_json()
