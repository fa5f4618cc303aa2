"""Tests for the WebSocket transport and the HTTP message endpoints.

Frame order on connect:
    connected -> missedMessages (if any) -> messageStatusUpdate per replayed
    message -> getOnlineUsers
"""
import pytest
from starlette.websockets import WebSocketDisconnect


def ws_url(token, user_id):
    return f"/ws?accessToken={token(user_id)}"


def receive_connected(ws, user_id):
    frame = ws.receive_json()
    assert frame["type"] == "connected"
    assert frame["data"]["userId"] == user_id
    return frame["data"]


def receive_type(ws, expected):
    frame = ws.receive_json()
    assert frame["type"] == expected, frame
    return frame["data"]


class TestWebSocketAuth:
    def test_missing_token_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws"):
                pass
        assert exc.value.code == 1008

    def test_invalid_token_rejected(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws?accessToken=garbage"):
                pass
        assert exc.value.code == 1008

    def test_valid_token_connects(self, api_client, token, chat_service):
        with api_client.websocket_connect(ws_url(token, "alice")) as ws:
            data = receive_connected(ws, "alice")
            assert data["handle"].startswith(chat_service.broadcaster.instance_id + "/")
            assert receive_type(ws, "getOnlineUsers") == ["alice"]


class TestWebSocketDelivery:
    def test_missed_messages_on_connect(self, api_client, token, auth_headers, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")
        sent = api_client.post(f"/messages/{dm.id}", json={"text": "while you were out"},
                               headers=auth_headers("alice"))
        assert sent.status_code == 201
        assert sent.json()["status"] == "sent"

        with api_client.websocket_connect(ws_url(token, "bob")) as ws:
            receive_connected(ws, "bob")
            missed = receive_type(ws, "missedMessages")
            assert [m["text"] for m in missed] == ["while you were out"]
            update = receive_type(ws, "messageStatusUpdate")
            assert update == {"messageId": sent.json()["id"], "userId": "bob", "status": "delivered"}
            assert receive_type(ws, "getOnlineUsers") == ["bob"]

        history = api_client.get(f"/messages/{dm.id}", headers=auth_headers("alice"))
        assert history.json()[0]["status"] == "delivered"

    def test_live_message_and_seen_receipt(self, api_client, token, auth_headers, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")

        with api_client.websocket_connect(ws_url(token, "alice")) as alice:
            receive_connected(alice, "alice")
            assert receive_type(alice, "getOnlineUsers") == ["alice"]

            with api_client.websocket_connect(ws_url(token, "bob")) as bob:
                receive_connected(bob, "bob")
                assert receive_type(bob, "getOnlineUsers") == ["alice", "bob"]
                assert receive_type(alice, "getOnlineUsers") == ["alice", "bob"]

                sent = api_client.post(f"/messages/{dm.id}", json={"text": "hi bob"},
                                       headers=auth_headers("alice"))
                assert sent.json()["status"] == "delivered"
                message_id = sent.json()["id"]
                assert receive_type(bob, "newMessage")["id"] == message_id

                bob.send_json({"type": "messageSeen", "messageId": message_id, "chatId": dm.id})
                seen = {"messageId": message_id, "userId": "bob", "status": "seen"}
                assert receive_type(alice, "messageStatusUpdate") == seen
                assert receive_type(bob, "messageStatusUpdate") == seen

            assert receive_type(alice, "getOnlineUsers") == ["alice"]

        history = api_client.get(f"/messages/{dm.id}", headers=auth_headers("alice"))
        assert history.json()[0]["status"] == "seen"

    def test_join_chat_created_after_connect(self, api_client, token, auth_headers, chat_service):
        with api_client.websocket_connect(ws_url(token, "bob")) as bob:
            receive_connected(bob, "bob")
            receive_type(bob, "getOnlineUsers")

            group = api_client.post("/chats/group", json={"name": "team", "participantIds": ["bob"]},
                                    headers=auth_headers("alice"))
            assert group.status_code == 201
            chat_id = group.json()["id"]

            bob.send_json({"type": "joinChat", "chatId": chat_id})
            # Frames are handled in order; the error reply means the join is done.
            bob.send_json({"type": "sync"})
            receive_type(bob, "error")

            api_client.post(f"/messages/{chat_id}", json={"text": "welcome"},
                            headers=auth_headers("alice"))
            assert receive_type(bob, "newMessage")["text"] == "welcome"


class TestWebSocketErrors:
    def test_unknown_event(self, api_client, token):
        with api_client.websocket_connect(ws_url(token, "alice")) as ws:
            receive_connected(ws, "alice")
            receive_type(ws, "getOnlineUsers")

            ws.send_json({"type": "dance"})

            assert "Unknown event type" in receive_type(ws, "error")["message"]

    def test_missing_field(self, api_client, token):
        with api_client.websocket_connect(ws_url(token, "alice")) as ws:
            receive_connected(ws, "alice")
            receive_type(ws, "getOnlineUsers")

            ws.send_json({"type": "messageSeen", "chatId": "c-1"})

            assert receive_type(ws, "error") == {"message": "Missing field: messageId"}

    def test_join_foreign_chat_rejected(self, api_client, token, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")

        with api_client.websocket_connect(ws_url(token, "mallory")) as ws:
            receive_connected(ws, "mallory")
            receive_type(ws, "getOnlineUsers")

            ws.send_json({"type": "joinChat", "chatId": dm.id})

            assert receive_type(ws, "error") == {"message": "Not authorized to access this chat"}

    def test_non_object_frame(self, api_client, token):
        with api_client.websocket_connect(ws_url(token, "alice")) as ws:
            receive_connected(ws, "alice")
            receive_type(ws, "getOnlineUsers")

            ws.send_json(["not", "an", "object"])

            assert receive_type(ws, "error") == {"message": "Frames must be JSON objects"}


class TestMessageEndpoints:
    def test_requires_token(self, api_client, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")

        assert api_client.get(f"/messages/{dm.id}").status_code == 401

    def test_send_rejections(self, api_client, auth_headers, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")

        assert api_client.post(f"/messages/{dm.id}", json={}, headers=auth_headers("alice")).status_code == 400
        assert api_client.post(f"/messages/{dm.id}", json={"text": "hi"},
                               headers=auth_headers("mallory")).status_code == 403
        assert api_client.post("/messages/missing", json={"text": "hi"},
                               headers=auth_headers("alice")).status_code == 404

    def test_idempotent_send(self, api_client, auth_headers, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")
        body = {"text": "once", "clientMessageId": "c-1"}

        first = api_client.post(f"/messages/{dm.id}", json=body, headers=auth_headers("alice"))
        second = api_client.post(f"/messages/{dm.id}", json=body, headers=auth_headers("alice"))

        assert first.json()["id"] == second.json()["id"]
        assert len(api_client.get(f"/messages/{dm.id}", headers=auth_headers("bob")).json()) == 1

    def test_edit_react_delete(self, api_client, auth_headers, chat_service):
        dm = chat_service.roster.get_or_create_dm("alice", "bob")
        message_id = api_client.post(f"/messages/{dm.id}", json={"text": "helo"},
                                     headers=auth_headers("alice")).json()["id"]

        edited = api_client.patch(f"/messages/{message_id}", json={"text": "hello"},
                                  headers=auth_headers("alice"))
        assert edited.json()["text"] == "hello"
        assert edited.json()["edited"] is True
        assert api_client.patch(f"/messages/{message_id}", json={"text": "x"},
                                headers=auth_headers("bob")).status_code == 403

        reacted = api_client.post(f"/messages/{message_id}/reactions", json={"emoji": "👍"},
                                  headers=auth_headers("bob"))
        assert reacted.json()["reactions"] == [{"userId": "bob", "emoji": "👍"}]
        assert api_client.post(f"/messages/{message_id}/reactions", json={"emoji": ""},
                               headers=auth_headers("bob")).status_code == 422

        deleted = api_client.delete(f"/messages/{message_id}", headers=auth_headers("alice"))
        assert deleted.json() == {"messageId": message_id}
        assert api_client.get(f"/messages/{dm.id}", headers=auth_headers("alice")).json() == []


class TestChatEndpoints:
    def test_dm_is_stable(self, api_client, auth_headers):
        first = api_client.get("/chats/dm/bob", headers=auth_headers("alice"))
        second = api_client.get("/chats/dm/alice", headers=auth_headers("bob"))

        assert first.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert api_client.get("/chats/dm/alice", headers=auth_headers("alice")).status_code == 400

    def test_group_lifecycle(self, api_client, auth_headers):
        created = api_client.post("/chats/group", json={"name": "team", "participantIds": ["bob"]},
                                  headers=auth_headers("alice"))
        chat_id = created.json()["id"]

        renamed = api_client.patch(f"/chats/{chat_id}", json={"name": "crew"}, headers=auth_headers("alice"))
        assert renamed.json()["name"] == "crew"
        assert api_client.patch(f"/chats/{chat_id}", json={"name": "mine"},
                                headers=auth_headers("bob")).status_code == 403

        chats = api_client.get("/chats", headers=auth_headers("bob")).json()
        assert [c["id"] for c in chats] == [chat_id]

    def test_health(self, api_client):
        response = api_client.get("/health")

        assert response.json() == {"status": "ok", "backend": "memory"}
