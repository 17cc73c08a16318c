import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import app
from constants import TABLE_INVITATIONS, TABLE_MEMBERS, TABLE_MESSAGES
from dependencies import get_service
from errors import TransportError


@pytest.fixture
def client(service, room):
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def tokens(service) -> dict:
    return {
        "alice": "token-alice",
        "bob": service.register("bob", "bob@example.com", "Bob Jones"),
    }


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_health(client) -> None:
    assert client.get("/health").json() == {"ok": True}


def test_health_reports_unavailable_store(client, service, monkeypatch) -> None:
    async def down():
        raise TransportError("connection refused")

    monkeypatch.setattr(service, "ping", down)
    assert client.get("/health").status_code == 503


def test_requests_without_valid_token_are_rejected(client) -> None:
    assert client.get("/rooms/").status_code == 401
    assert client.get("/rooms/", headers=_auth("bogus")).status_code == 401
    assert client.get("/rooms/", headers={"Authorization": "Basic abc"}).status_code == 401


def test_create_and_list_rooms(client, tokens) -> None:
    resp = client.post(
        "/rooms/",
        json={"name": "Design Review", "username": "alice", "invite_emails": ["bob@example.com"]},
        headers=_auth(tokens["alice"]),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["room"]["name"] == "Design Review"
    assert [i["invitee_id"] for i in body["invitations"]] == ["bob"]

    rooms = client.get("/rooms/", headers=_auth(tokens["alice"])).json()
    assert sorted(r["name"] for r in rooms) == ["Design Review", "Sprint Planning"]


def test_create_room_validation_error(client, tokens) -> None:
    resp = client.post("/rooms/", json={"name": "Sprint Planning", "username": "alice"}, headers=_auth(tokens["alice"]))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Project with same name already exists"


def test_room_details(client, tokens, room) -> None:
    resp = client.get(f"/rooms/{room['id']}", headers=_auth(tokens["alice"]))
    assert resp.status_code == 200
    body = resp.json()
    assert body["is_full"] is False
    assert [(e["user_id"], e["is_owner"], e["is_online"]) for e in body["roster"]] == [("alice", True, False)]

    assert client.get("/rooms/missing", headers=_auth(tokens["alice"])).status_code == 404
    assert client.get(f"/rooms/{room['id']}", headers=_auth(tokens["bob"])).status_code == 403


def test_invite_accept_and_leave(client, service, tokens, room) -> None:
    resp = client.post(f"/rooms/{room['id']}/invite", json={"email": "Bob@Example.com"}, headers=_auth(tokens["alice"]))
    assert resp.status_code == 200
    invitation_id = resp.json()["id"]

    pending = client.get("/invitations/", headers=_auth(tokens["bob"])).json()
    assert [(i["id"], i["room_name"], i["inviter_name"]) for i in pending] == [
        (invitation_id, "Sprint Planning", "Alice Smith")
    ]

    resp = client.post(f"/invitations/{invitation_id}/respond", json={"accept": True}, headers=_auth(tokens["bob"]))
    assert resp.json() == {"invitation_id": invitation_id, "status": "accepted", "room_id": room["id"]}
    assert client.get("/invitations/", headers=_auth(tokens["bob"])).json() == []

    details = client.get(f"/rooms/{room['id']}", headers=_auth(tokens["bob"])).json()
    assert sorted(e["user_id"] for e in details["roster"]) == ["alice", "bob"]

    resp = client.post(f"/rooms/{room['id']}/leave", headers=_auth(tokens["bob"]))
    assert resp.json() == {"room_id": room["id"], "left": True}
    assert "bob" not in [m["user_id"] for m in service.rows(TABLE_MEMBERS)]


def test_respond_to_unknown_invitation(client, tokens) -> None:
    resp = client.post("/invitations/nope/respond", json={"accept": False}, headers=_auth(tokens["bob"]))
    assert resp.status_code == 404


def test_invite_by_non_member_is_forbidden(client, service, tokens, room) -> None:
    resp = client.post(f"/rooms/{room['id']}/invite", json={"email": "carol@example.com"}, headers=_auth(tokens["bob"]))
    assert resp.status_code == 403
    assert service.rows(TABLE_INVITATIONS) == []


def test_messages_and_outputs(client, tokens, room) -> None:
    headers = _auth(tokens["alice"])
    assert client.post(f"/rooms/{room['id']}/messages", json={"content": "hi"}, headers=headers).status_code == 200
    assert client.post(f"/rooms/{room['id']}/messages", json={"content": " "}, headers=headers).status_code == 400
    messages = client.get(f"/rooms/{room['id']}/messages", headers=headers).json()
    assert [(m["username"], m["content"]) for m in messages] == [("alice", "hi")]

    resp = client.post(
        f"/rooms/{room['id']}/outputs",
        json={"code": "print(1)", "output": "1", "language": "python"},
        headers=headers,
    )
    assert resp.status_code == 200
    outputs = client.get(f"/rooms/{room['id']}/outputs", headers=headers).json()
    assert [o["output"] for o in outputs] == ["1"]


def test_websocket_session(client, service, tokens, room) -> None:
    with client.websocket_connect(f"/rooms/{room['id']}/ws?token={tokens['alice']}") as ws:
        first = ws.receive_json()
        assert first["type"] == "roster"
        assert first["roster"][0]["user_id"] == "alice"

        ws.send_json({"type": "message", "content": "hello"})
        frame = ws.receive_json()
        while frame["type"] != "message":
            frame = ws.receive_json()
        assert frame["message"]["content"] == "hello"

        ws.send_json({"type": "bogus"})
        assert ws.receive_json()["type"] == "error"

    # closing the socket keeps membership
    assert "alice" in [m["user_id"] for m in service.rows(TABLE_MEMBERS)]


def test_websocket_rejects_bad_token(client, room) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/rooms/{room['id']}/ws?token=bogus") as ws:
            ws.receive_json()


def _next_frame(ws, kind: str) -> dict:
    frame = ws.receive_json()
    while frame["type"] != kind:
        frame = ws.receive_json()
    return frame


def test_websocket_rejects_non_object_frames(client, tokens, room) -> None:
    with client.websocket_connect(f"/rooms/{room['id']}/ws?token={tokens['alice']}") as ws:
        for raw in ("5", "[1, 2]", "null"):
            ws.send_text(raw)
            error = _next_frame(ws, "error")
            assert error["retryable"] is False

        ws.send_json({"type": "message", "content": "still here"})
        assert _next_frame(ws, "message")["message"]["content"] == "still here"


def test_websocket_closes_on_server_error(client, service, tokens, room) -> None:
    service.failures[("insert", TABLE_MESSAGES)] = RuntimeError("disk full")

    with client.websocket_connect(f"/rooms/{room['id']}/ws?token={tokens['alice']}") as ws:
        ws.send_json({"type": "message", "content": "hello"})
        with pytest.raises(WebSocketDisconnect) as closed:
            while True:
                ws.receive_json()

    assert closed.value.code == 1011
