"""End-to-end client flows: offline queueing, reconnect, broadcast, direct writes.

Clients talk to the real connection manager and reconciliation engine
through the in-process loopback from ``conftest.py``.
"""

import asyncio

import httpx
import pytest
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from sgisync.client import JsonFileStore
from sgisync.client import SyncService
from sgisync.client import SyncTransport
from sgisync.client.events import CONNECTION_CHANGED
from sgisync.client.events import PENDING_CHANGED
from sgisync.client.events import SYNC_FAILED
from sgisync.client.service import PUSH_RESULT
from sgisync.constants import LAST_SYNC_KEY
from sgisync.crud import crud
from sgisync.exceptions import AuthenticationError
from sgisync.exceptions import SyncError
from sgisync.exceptions import TransportError
from sgisync.models.models import AgendaEvent


def _service(settings, loopback, token, path, **kwargs):
    transport = SyncTransport(settings.sync_ws_url, token, connector=loopback.connect)
    return SyncService(settings, token=token, store=JsonFileStore(path), transport=transport, **kwargs)


def _expect(service, event, timeout=1.0):
    """Listen for the next *event* on the service's local bus right away; await the result later."""
    future = asyncio.get_running_loop().create_future()

    def _handler(data):
        if not future.done():
            future.set_result(data)

    off = service.on(event, _handler)
    future.add_done_callback(lambda _: off())
    return asyncio.wait_for(future, timeout)


@pytest.fixture
async def alice_service(settings, loopback, alice_token, tmp_path):
    service = _service(settings, loopback, alice_token, tmp_path / "alice.json")
    yield service
    await service.close()


@pytest.fixture
async def bob_service(settings, loopback, bob_token, tmp_path):
    service = _service(settings, loopback, bob_token, tmp_path / "bob.json")
    yield service
    await service.close()


# ---------------------------------------------------------------------------
# Offline create, then reconnect
# ---------------------------------------------------------------------------


async def test_offline_create_is_pushed_on_reconnect(alice_service, bob_service, db_session, tmp_path):
    await bob_service.connect()
    await alice_service.monitor.on_became_offline()

    outcome = await alice_service.submit("agenda", "Create", {"titulo": "Reunião"})

    assert outcome.queued is True
    assert outcome.client_temp_id.startswith("temp_")
    assert alice_service.pending_count() == 1
    # Durable before anything else happens
    assert len(JsonFileStore(tmp_path / "alice.json").get("sgi_pending_changes")) == 1

    bob_sees = _expect(bob_service, "agenda:created")
    alice_acked = _expect(alice_service, PUSH_RESULT)

    await alice_service.monitor.on_became_online()

    result = await alice_acked
    (item,) = result["results"]
    assert item["success"] is True
    assert item["tempId"] == outcome.client_temp_id

    broadcast = await bob_sees
    assert broadcast["id"] == item["serverId"]
    assert broadcast["titulo"] == "Reunião"

    assert alice_service.pending_count() == 0
    assert JsonFileStore(tmp_path / "alice.json").get("sgi_pending_changes") is None

    db_session.expire_all()
    assert db_session.query(AgendaEvent).count() == 1


async def test_queue_survives_restart(settings, loopback, alice_token, tmp_path, db_session):
    path = tmp_path / "restart.json"
    first = _service(settings, loopback, alice_token, path)
    await first.monitor.on_became_offline()
    await first.submit("agenda", "create", {"titulo": "Prazo"})
    await first.close()

    # New process, same state file
    second = _service(settings, loopback, alice_token, path)
    assert second.pending_count() == 1

    await second.connect()
    assert second.pending_count() == 0
    await second.close()

    db_session.expire_all()
    assert [row.titulo for row in db_session.query(AgendaEvent).all()] == ["Prazo"]


async def test_dropped_socket_reconnects_and_drains_by_itself(alice_service, loopback):
    await alice_service.connect()
    closed = _expect(alice_service, CONNECTION_CHANGED)

    # Server comes back after two refused attempts
    loopback.refuse_connections = 2
    await loopback.drop_all()
    assert (await closed) == {"connected": False}
    assert not alice_service.is_connected

    pushed = _expect(alice_service, PUSH_RESULT, timeout=2.0)
    temp_id = await alice_service.queue_change("agenda", "create", {"titulo": "Depois da queda"})

    result = await pushed
    assert result["results"][0]["tempId"] == temp_id
    assert result["results"][0]["success"] is True
    assert alice_service.is_connected
    assert alice_service.pending_count() == 0
    assert loopback.refuse_connections == 0
    assert alice_service.monitor.is_online


async def test_no_reconnect_while_offline(alice_service, loopback):
    await alice_service.connect()
    await alice_service.monitor.on_became_offline()

    await loopback.drop_all()
    await asyncio.sleep(0.1)

    assert not alice_service.is_connected
    assert len(loopback.sockets) == 1


async def test_reconnect_gives_up_on_rejected_token(alice_service, loopback):
    await alice_service.connect()
    errors = []
    alice_service.on(SYNC_FAILED, errors.append)

    # Token revoked while the socket was down
    alice_service.transport.token = "revoked"
    await loopback.drop_all()
    await asyncio.sleep(0.2)

    assert not alice_service.is_connected
    assert len(errors) == 1
    assert errors[0]["fatal"] is True
    assert len(loopback.sockets) == 1


async def test_rejected_token_keeps_queue(settings, loopback, tmp_path, alice):
    service = _service(settings, loopback, "forged", tmp_path / "forged.json")
    errors = []
    service.on(SYNC_FAILED, errors.append)
    await service.monitor.on_became_offline()
    await service.submit("agenda", "create", {"titulo": "x"})

    with pytest.raises(AuthenticationError):
        await service.monitor.on_became_online()

    assert not service.is_connected
    assert service.pending_count() == 1
    assert errors[0]["fatal"] is True
    await service.close()


async def test_transport_maps_handshake_rejections(settings, loopback):
    transport = SyncTransport(settings.sync_ws_url, "forged", connector=loopback.connect)
    with pytest.raises(AuthenticationError):
        await transport.connect()

    async def broken_gateway(url):
        raise InvalidStatus(Response(502, "Bad Gateway", Headers(), b""))

    transport = SyncTransport(settings.sync_ws_url, "whatever", connector=broken_gateway)
    with pytest.raises(TransportError):
        await transport.connect()
    assert not transport.connected


async def test_pending_count_is_reported_on_the_bus(alice_service):
    counts = []
    alice_service.on(PENDING_CHANGED, lambda data: counts.append(data["count"]))
    await alice_service.monitor.on_became_offline()

    await alice_service.submit("agenda", "create", {"titulo": "a"})
    await alice_service.submit("agenda", "create", {"titulo": "b"})
    await alice_service.monitor.on_became_online()

    assert counts == [1, 2, 0]


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


async def test_full_pull_sets_watermark(alice_service, db_session, alice):
    crud.create_notification(db_session, user_id=alice.id, titulo="Aviso", mensagem="Olá")
    synced = []
    alice_service.on("notification:synced", synced.append)

    await alice_service.connect()
    # A fresh client has no watermark, so connect does not pull
    assert alice_service.watermark is None

    data = await alice_service.pull()

    assert [n["titulo"] for n in synced] == ["Aviso"]
    assert alice_service.watermark == data["syncTimestamp"]


async def test_reconnect_pulls_since_watermark(alice_service, engine, bob_identity):
    await alice_service.connect()
    await alice_service.pull()
    first_watermark = alice_service.watermark

    await alice_service.close()
    # Bob writes while Alice is away
    await engine.apply_batch(
        [{"entityKind": "agenda", "action": "create", "payload": {"titulo": "Visita"}, "clientTempId": "t"}],
        bob_identity,
    )

    synced = []
    alice_service.on("agenda:synced", synced.append)
    await alice_service.connect()

    assert [entity["titulo"] for entity in synced] == ["Visita"]
    assert alice_service.watermark >= first_watermark


async def test_pull_error_leaves_watermark_untouched(alice_service):
    await alice_service.connect()
    alice_service.store.set(LAST_SYNC_KEY, "garbage")
    errors = []
    alice_service.on("sync:error", errors.append)

    assert await alice_service.pull() is None

    assert errors == [{"message": "Sync failed"}]
    assert alice_service.watermark == "garbage"


async def test_pending_request_fails_when_socket_drops(alice_service, loopback):
    await alice_service.connect()
    socket = loopback.sockets[-1]

    async def never_answers(raw):
        return None

    socket.send = never_answers
    pending = asyncio.ensure_future(alice_service.transport.pull(None))
    await asyncio.sleep(0)

    await socket.close()

    with pytest.raises(TransportError):
        await asyncio.wait_for(pending, timeout=1.0)


# ---------------------------------------------------------------------------
# Direct writes with queue fallback
# ---------------------------------------------------------------------------


async def test_submit_goes_direct_when_server_answers(settings, app, alice_token, tmp_path, db_session):
    http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        headers={"Authorization": f"Bearer {alice_token}"},
    )
    service = SyncService(settings, token=alice_token, store=JsonFileStore(tmp_path / "direct.json"), http_client=http)
    try:
        outcome = await service.submit("agenda", "create", {"titulo": "Direto"})
        second = await service.submit("agenda", "create", {"titulo": "Outro"})
    finally:
        await http.aclose()

    assert outcome.queued is False
    assert outcome.result["success"] is True
    assert service.pending_count() == 0
    # Each direct write carries its own temp id
    assert outcome.result["tempId"].startswith("temp_")
    assert outcome.result["tempId"] != second.result["tempId"]


def _refuse(request):
    raise httpx.ConnectError("connection refused", request=request)


def _unavailable(request):
    return httpx.Response(503)


@pytest.mark.parametrize("handler", [_refuse, _unavailable], ids=["unreachable", "server-error"])
async def test_submit_falls_back_to_queue(settings, tmp_path, handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")
    service = SyncService(settings, token="t", store=JsonFileStore(tmp_path / "fallback.json"), http_client=http)
    try:
        outcome = await service.submit("agenda", "update", {"titulo": "x"}, target_id="evt-1")
    finally:
        await http.aclose()

    assert outcome.queued is True
    (record,) = service.queue.pending()
    assert record["targetId"] == "evt-1"
    assert record["clientTempId"] == outcome.client_temp_id


@pytest.mark.parametrize("status_code, error", [(401, AuthenticationError), (422, SyncError)])
async def test_submit_client_errors_are_raised(settings, tmp_path, status_code, error):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code)), base_url="http://testserver")
    service = SyncService(settings, token="t", store=JsonFileStore(tmp_path / "errors.json"), http_client=http)
    try:
        with pytest.raises(error):
            await service.submit("agenda", "create", {"titulo": "x"})
    finally:
        await http.aclose()

    assert service.pending_count() == 0


async def test_probe(settings, tmp_path):
    up = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)), base_url="http://testserver")
    service = SyncService(settings, store=JsonFileStore(tmp_path / "probe.json"), http_client=up)
    assert await service.probe() is True
    await up.aclose()

    down = httpx.AsyncClient(transport=httpx.MockTransport(_refuse), base_url="http://testserver")
    service = SyncService(settings, store=JsonFileStore(tmp_path / "probe.json"), http_client=down)
    assert await service.probe() is False
    await down.aclose()
