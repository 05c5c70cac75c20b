import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatsync.main import app
from chatsync.services.polls import build_poll
from chatsync.utils.dependencies import ChatBackend, get_backend
from chatsync.utils.security import create_access_token
from conftest import BASE_TIME


def _auth(user_id="alice"):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def _until(ws, kind):
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in (kind, "error"):
            return frames


@pytest.fixture
def backend(message_repo, conversation_repo, user_repo, device_repo):
    return ChatBackend(message_repo, conversation_repo, user_repo, device_repo)


@pytest.fixture
def client(backend):
    app.dependency_overrides[get_backend] = lambda: backend
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestConversationRoutes:
    def test_requires_token(self, client):
        assert client.get("/conversations").status_code in (401, 403)

    def test_bad_token(self, client):
        response = client.get("/conversations", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_create_direct(self, client, conversation_repo):
        response = client.post("/conversations/direct", json={"other_user_id": "bob"}, headers=_auth())
        assert response.status_code == 201
        assert response.json()["id"] == "alice_bob"
        assert "alice_bob" in conversation_repo.convos

    def test_direct_with_self_is_rejected(self, client):
        response = client.post("/conversations/direct", json={"other_user_id": "alice"}, headers=_auth())
        assert response.status_code == 400

    def test_create_crew_date(self, client):
        body = {"crew_id": "crew1", "date": "2024-05-01", "participants": ["bob"]}
        response = client.post("/conversations/crew-date", json=body, headers=_auth())
        assert response.status_code == 201
        assert response.json()["id"] == "crew1_2024-05-01"
        assert sorted(response.json()["participants"]) == ["alice", "bob"]

    def test_outsider_cannot_join_existing_crew(self, client, conversation_repo):
        conversation_repo.add("crew1", ["bob"], kind="crew")
        response = client.post("/conversations/crew", json={"crew_id": "crew1"}, headers=_auth("mallory"))
        assert response.status_code == 403
        assert conversation_repo.convos["crew1"]["participants"] == ["bob"]

    def test_member_adds_people_to_existing_crew(self, client, conversation_repo):
        conversation_repo.add("crew1", ["alice"], kind="crew")
        body = {"crew_id": "crew1", "participants": ["bob"]}
        response = client.post("/conversations/crew", json=body, headers=_auth())
        assert response.status_code == 201
        assert conversation_repo.convos["crew1"]["participants"] == ["alice", "bob"]

    def test_messages_page(self, client, conversation_repo, message_repo):
        conversation_repo.add("alice_bob", ["alice", "bob"])
        for i in range(3):
            message_repo.add("alice_bob", "bob", text=f"m{i}")
        response = client.get("/conversations/alice_bob/messages?limit=2", headers=_auth())
        assert response.status_code == 200
        data = response.json()
        assert [m["text"] for m in data["items"]] == ["m1", "m2"]
        assert data["next_cursor"]

    def test_messages_forbidden_for_outsider(self, client, conversation_repo):
        conversation_repo.add("alice_bob", ["alice", "bob"])
        response = client.get("/conversations/alice_bob/messages", headers=_auth("mallory"))
        assert response.status_code == 403

    def test_messages_unknown_conversation(self, client):
        assert client.get("/conversations/nope/messages", headers=_auth()).status_code == 404

    def test_send_validation(self, client, conversation_repo):
        conversation_repo.add("alice_bob", ["alice", "bob"])
        response = client.post("/conversations/alice_bob/messages", json={"text": "  "}, headers=_auth())
        assert response.status_code == 400

    def test_vote(self, client, conversation_repo, message_repo):
        conversation_repo.add("crew1", ["alice", "bob"], kind="crew")
        doc = message_repo.add("crew1", "bob", text=None, poll=build_poll("Where?", ["A", "B"]))
        url = f"/conversations/crew1/messages/{doc['_id']}/vote"
        response = client.post(url, json={"option_index": 1}, headers=_auth())
        assert response.status_code == 200
        assert response.json()["poll"]["votes"] == {"0": [], "1": ["alice"]}
        assert client.post(url, json={"option_index": 9}, headers=_auth()).status_code == 400

    def test_members(self, client, conversation_repo):
        conversation_repo.add("crew1", ["alice"], kind="crew")
        assert client.post("/conversations/crew1/members", json={"user_id": "bob"}, headers=_auth()).status_code == 201
        assert "bob" in conversation_repo.convos["crew1"]["participants"]
        response = client.delete("/conversations/crew1/members/bob", headers=_auth())
        assert response.json()["removed"] is True

    def test_unread(self, client, conversation_repo, message_repo):
        conversation_repo.add("alice_bob", ["alice", "bob"], last_read={"alice": BASE_TIME})
        message_repo.add("alice_bob", "bob")
        response = client.get("/conversations/alice_bob/unread", headers=_auth())
        assert response.json()["unread"] == 1


class TestDeviceAndPresenceRoutes:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/").status_code == 404

    def test_register_device(self, client, device_repo):
        response = client.post("/devices", json={"platform": "fcm", "token": "tok"}, headers=_auth())
        assert response.status_code == 201
        assert device_repo.devices == [{"user_id": "alice", "platform": "fcm", "token": "tok"}]

    def test_presence_defaults_offline(self, client):
        assert client.get("/presence/bob").json() == {"user_id": "bob", "online": False}


class TestChatSocket:
    def test_missing_token_closes(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/messages/ws/chat/alice") as ws:
                ws.receive_json()
        assert exc.value.code == 4401

    def test_token_for_other_user_closes(self, client):
        token = create_access_token("bob")
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/messages/ws/chat/alice?token={token}") as ws:
                ws.receive_json()
        assert exc.value.code == 4403

    def test_open_and_send(self, client, message_repo, user_repo):
        message_repo.add("alice_bob", "bob", text="earlier")
        token = create_access_token("alice")
        with client.websocket_connect(f"/messages/ws/chat/alice?token={token}") as ws:
            ws.send_json({"type": "open_direct", "user_id": "bob", "ref": 1})
            frames = _until(ws, "ack")
            assert frames[-1] == {"type": "ack", "ref": 1, "frame": "open_direct", "conversation_id": "alice_bob"}
            messages = [f for f in frames if f["type"] == "messages"]
            assert messages[-1]["items"][0]["text"] == "earlier"

            ws.send_json({"type": "send", "conversation_id": "alice_bob", "text": "hi bob", "ref": 2})
            frames = _until(ws, "ack")
            assert frames[-1]["client_message_id"]
            last_view = [f for f in frames if f["type"] == "messages"][-1]
            assert [(i["text"], i["status"]) for i in last_view["items"]] == [
                ("earlier", "confirmed"),
                ("hi bob", "confirmed"),
            ]

            ws.send_json({"type": "bogus", "ref": 3})
            assert _until(ws, "ack")[-1]["code"] == "invalid-argument"

            ws.send_json({"type": "send", "ref": 4})
            assert _until(ws, "ack")[-1]["detail"] == "missing field conversation_id"
        assert user_repo.online["alice"] is False

    def test_chat_list_sent_on_connect(self, client, conversation_repo):
        conversation_repo.add("alice_bob", ["alice", "bob"], has_messages=True)
        conversation_repo.add("crew1", ["bob"], kind="crew")
        token = create_access_token("alice")
        with client.websocket_connect(f"/messages/ws/chat/alice?token={token}") as ws:
            frame = ws.receive_json()
            assert frame["type"] == "conversations"
            assert [i["conversation_id"] for i in frame["items"]] == ["alice_bob"]

            ws.send_json({"type": "read", "conversation_id": "crew1", "ref": 1})
            assert _until(ws, "ack")[-1]["updated"] is False
        assert conversation_repo.convos["crew1"]["last_read"] == {}
