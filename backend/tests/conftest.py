import asyncio
import json
import os
import uuid
from urllib.parse import parse_qs
from urllib.parse import urlparse

# Must be set before ``sgisync`` is imported: module-level settings read it.
os.environ.setdefault("TESTING", "1")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from websockets.datastructures import Headers  # noqa: E402
from websockets.exceptions import InvalidStatus  # noqa: E402
from websockets.http11 import Response  # noqa: E402

from sgisync.config import get_settings  # noqa: E402
from sgisync.crud import crud  # noqa: E402
from sgisync.database import Base  # noqa: E402
from sgisync.database import initialize_database  # noqa: E402
from sgisync.database import make_engine  # noqa: E402
from sgisync.database import make_sessionmaker  # noqa: E402
from sgisync.dependencies.auth import AuthenticatedUser  # noqa: E402
from sgisync.dependencies.auth import issue_access_token  # noqa: E402
from sgisync.dependencies.auth import verify_credential  # noqa: E402
from sgisync.events import EventBus  # noqa: E402
from sgisync.main import create_app  # noqa: E402
from sgisync.models.enums import UserRole  # noqa: E402
from sgisync.services.reconciliation import ReconciliationEngine  # noqa: E402
from sgisync.websocket.handlers import ConnectionContext  # noqa: E402
from sgisync.websocket.handlers import dispatch_message  # noqa: E402
from sgisync.websocket.manager import TopicConnectionManager  # noqa: E402

# Create a test database - using in-memory SQLite for tests
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

# Create test engine and session factory
test_engine = make_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Use StaticPool for in-memory database
)

TestingSessionLocal = make_sessionmaker(test_engine)


@pytest.fixture
def settings(tmp_path):
    """Fresh settings per test; the client state file lives in *tmp_path*."""
    s = get_settings()
    s.override(
        testing=True,
        jwt_secret="test-secret-not-for-production",
        sync_state_path=str(tmp_path / "sync_state.json"),
        sync_server_url="http://testserver",
        sync_reconnect_delay=0.01,
        sync_reconnect_max_delay=0.05,
    )
    return s


@pytest.fixture
def db_session():
    """
    Creates a fresh database for each test, then tears it down after the test is done.
    """
    initialize_database(test_engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        # Drop all tables after the test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def session_factory(db_session):
    return TestingSessionLocal


@pytest.fixture
def alice(db_session):
    """Admin user."""
    return crud.create_user(db_session, email="alice@sgi.test", name="Alice", role=UserRole.ADMIN)


@pytest.fixture
def bob(db_session):
    """Field technician."""
    return crud.create_user(db_session, email="bob@sgi.test", name="Bob", role=UserRole.TECH)


@pytest.fixture
def alice_identity(alice):
    return AuthenticatedUser(user_id=alice.id, role="ADMIN")


@pytest.fixture
def bob_identity(bob):
    return AuthenticatedUser(user_id=bob.id, role="TECH")


@pytest.fixture
def alice_token(alice, settings):
    return issue_access_token(alice.id, "ADMIN", settings=settings)


@pytest.fixture
def bob_token(bob, settings):
    return issue_access_token(bob.id, "TECH", settings=settings)


@pytest.fixture
def auth_headers(alice_token):
    return {"Authorization": f"Bearer {alice_token}"}


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def engine(session_factory, event_bus):
    """Reconciliation engine on the test database, wired to a private bus."""
    return ReconciliationEngine(session_factory, event_bus=event_bus)


@pytest.fixture
def app(settings, session_factory):
    return create_app(settings=settings, session_factory=session_factory)


@pytest.fixture
def client(app):
    """
    Create a FastAPI TestClient with WebSocket support
    """
    with TestClient(app) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# In-process loopback between SyncTransport and the server handlers
# ---------------------------------------------------------------------------


class _ServerSide:
    """What the connection manager sees as the client's WebSocket."""

    def __init__(self, socket):
        self._socket = socket

    async def send_json(self, payload):
        self._socket.inbound.put_nowait(json.dumps(payload))

    async def close(self, code=1000):
        await self._socket.close()


class LoopbackSocket:
    """Client-side socket object with the subset of the ``websockets`` API SyncTransport uses."""

    def __init__(self, server, ctx):
        self.server = server
        self.ctx = ctx
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, raw):
        if self.closed:
            raise ConnectionError("socket closed")
        await dispatch_message(self.ctx, json.loads(raw))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbound.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.ctx.manager.disconnect(self.ctx.client_id)
        self.inbound.put_nowait(None)


class LoopbackServer:
    """Runs the real manager and engine; ``connect`` is a SyncTransport connector."""

    def __init__(self, settings, session_factory, event_bus, engine):
        self.settings = settings
        self.session_factory = session_factory
        self.manager = TopicConnectionManager(event_bus=event_bus, settings=settings)
        self.engine = engine
        self.sockets = []
        # Number of upcoming connection attempts to refuse, as if the server were down.
        self.refuse_connections = 0

    async def connect(self, url):
        if self.refuse_connections > 0:
            self.refuse_connections -= 1
            raise ConnectionRefusedError("sync server is down")
        query = parse_qs(urlparse(url).query)
        token = (query.get("token") or [None])[0]
        db = self.session_factory()
        try:
            user = verify_credential(token, db, settings=self.settings)
        finally:
            db.close()
        if user is None:
            # What uvicorn answers when the endpoint closes before accepting
            raise InvalidStatus(Response(403, "Forbidden", Headers(), b""))

        ctx = ConnectionContext(client_id=str(uuid.uuid4()), user=user, manager=self.manager, engine=self.engine)
        socket = LoopbackSocket(self, ctx)
        await self.manager.connect(ctx.client_id, _ServerSide(socket), user.user_id, user.role)
        self.sockets.append(socket)
        return socket

    async def drop_all(self):
        """Simulate the network going away under every client."""
        for socket in list(self.sockets):
            await socket.close()


@pytest.fixture
async def loopback(settings, session_factory, event_bus, engine):
    server = LoopbackServer(settings, session_factory, event_bus, engine)
    yield server
    await server.manager.shutdown()
