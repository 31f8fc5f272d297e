"""End-to-end tests for the sync socket at ``/api/ws``."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sgisync.constants import WS_CLOSE_UNAUTHORIZED
from sgisync.crud import crud
from sgisync.dependencies.auth import issue_access_token
from sgisync.schemas.ws_messages import Envelope

WS_PATH = "/api/ws"


def _envelope(message_type, data, req_id=None):
    return Envelope.create(message_type=message_type, topic="sync", data=data, req_id=req_id).model_dump()


def _receive_until(ws, message_type, limit=10):
    """Read frames until one of *message_type* shows up; return it with the skipped ones."""
    skipped = []
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == message_type:
            return message, skipped
        skipped.append(message)
    raise AssertionError(f"no {message_type} within {limit} frames: {skipped}")


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


def test_bad_token_is_closed_with_4401(client: TestClient, app):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"{WS_PATH}?token=not-a-jwt") as ws:
            ws.receive_json()

    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED
    assert app.state.topic_manager.connection_count == 0
    assert app.state.topic_manager.topic_subscriptions == {}


def test_missing_token_is_closed_with_4401(client: TestClient):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()

    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED


def test_token_for_inactive_user_is_refused(client: TestClient, db_session, settings):
    ghost = crud.create_user(db_session, email="ghost@sgi.test", is_active=False)
    token = issue_access_token(ghost.id, "TECH", settings=settings)

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"{WS_PATH}?token={token}") as ws:
            ws.receive_json()

    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED


def test_authorization_header_is_accepted(client: TestClient, alice_token):
    with client.websocket_connect(WS_PATH, headers={"Authorization": f"Bearer {alice_token}"}) as ws:
        ws.send_json(_envelope("pull-request", {"since": None}, req_id="r1"))
        reply = ws.receive_json()

    assert reply["type"] == "pull-response"
    assert reply["req_id"] == "r1"


def test_connection_joins_personal_and_role_groups(client: TestClient, app, alice, alice_token):
    manager = app.state.topic_manager
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        ws.send_json(_envelope("subscribe", {}))
        # Round trip so the subscribe has been handled
        ws.send_json(_envelope("pull-request", {}, req_id="sync-point"))
        ws.receive_json()

        (client_id,) = list(manager.active_connections)
        assert manager.topics_for(client_id) == {f"user:{alice.id}", "role:ADMIN", "agenda:all"}

    assert manager.connection_count == 0


# ---------------------------------------------------------------------------
# Protocol errors
# ---------------------------------------------------------------------------


def test_unknown_message_type(client: TestClient, alice_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        ws.send_json(_envelope("ping", {}, req_id="p1"))
        reply = ws.receive_json()

    assert reply["type"] == "error"
    assert reply["data"]["error"] == "Unknown message type: ping"
    assert reply["req_id"] == "p1"


def test_invalid_json_frame(client: TestClient, alice_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        ws.send_text("{not json")
        reply = ws.receive_json()

    assert reply["type"] == "error"
    assert reply["data"]["error"] == "Invalid JSON payload"


def test_frame_without_envelope(client: TestClient, alice_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        ws.send_json({"type": "pull-request", "since": None})
        reply = ws.receive_json()

    assert reply["type"] == "error"
    assert reply["data"]["error"] == "INVALID_ENVELOPE"


def test_subscribe_to_someone_elses_group_is_refused(client: TestClient, alice_token, bob):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        ws.send_json(_envelope("subscribe", {"scope": f"user:{bob.id}"}, req_id="s1"))
        reply = ws.receive_json()

    assert reply["type"] == "error"
    assert reply["req_id"] == "s1"


def test_pull_with_bad_watermark_returns_sync_error(client: TestClient, alice_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        ws.send_json(_envelope("pull-request", {"since": "last tuesday"}, req_id="r2"))
        reply = ws.receive_json()

    assert reply["type"] == "sync:error"
    assert reply["data"] == {"message": "Sync failed"}
    assert reply["req_id"] == "r2"


# ---------------------------------------------------------------------------
# Pull / push / broadcast
# ---------------------------------------------------------------------------


def test_push_is_acknowledged_and_broadcast(client: TestClient, alice_token, bob_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as alice_ws:
        with client.websocket_connect(f"{WS_PATH}?token={bob_token}") as bob_ws:
            change = {
                "entityKind": "agenda",
                "action": "create",
                "payload": {"titulo": "Reunião"},
                "clientTempId": "temp_1700000000000_abcdefghi",
            }
            alice_ws.send_json(_envelope("push-request", {"changes": [change]}, req_id="push-1"))

            result, skipped = _receive_until(alice_ws, "push-result")
            assert result["req_id"] == "push-1"
            (item,) = result["data"]["results"]
            assert item["success"] is True
            assert item["tempId"] == "temp_1700000000000_abcdefghi"
            server_id = item["serverId"]

            # The author hears the broadcast too, before the acknowledgement
            assert [m["type"] for m in skipped] == ["agenda:created"]

            broadcast = bob_ws.receive_json()
            assert broadcast["type"] == "agenda:created"
            assert broadcast["data"]["id"] == server_id
            assert broadcast["data"]["titulo"] == "Reunião"


def test_pull_after_push_returns_the_record(client: TestClient, alice_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as ws:
        change = {"entityKind": "agenda", "action": "create", "payload": {"titulo": "OS 12"}, "clientTempId": "t1"}
        ws.send_json(_envelope("push-request", {"changes": [change]}, req_id="push"))
        _receive_until(ws, "push-result")

        ws.send_json(_envelope("pull-request", {"since": None}, req_id="pull"))
        pulled, _ = _receive_until(ws, "pull-response")

    titles = [entity["titulo"] for entity in pulled["data"]["entities"]]
    assert titles == ["OS 12"]
    assert pulled["data"]["syncTimestamp"].endswith("Z")


def test_presence_reaches_other_agenda_viewers(client: TestClient, alice, alice_token, bob_token):
    with client.websocket_connect(f"{WS_PATH}?token={alice_token}") as alice_ws:
        with client.websocket_connect(f"{WS_PATH}?token={bob_token}") as bob_ws:
            bob_ws.send_json(_envelope("subscribe", {}))
            bob_ws.send_json(_envelope("pull-request", {}, req_id="sync-point"))
            _receive_until(bob_ws, "pull-response")

            alice_ws.send_json(_envelope("presence:update", {"view": "agenda", "entityId": "evt-1"}))

            presence = bob_ws.receive_json()
            assert presence["type"] == "presence:updated"
            assert presence["data"]["userId"] == alice.id
            assert presence["data"]["view"] == "agenda"
            assert presence["data"]["entityId"] == "evt-1"
