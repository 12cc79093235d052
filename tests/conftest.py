import os
import tempfile
from collections import defaultdict

import pytest
import pytest_asyncio
from beanie import PydanticObjectId as OID
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_DEBUG", "false")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "edumarket-test-logs"))

from edumarket.constants import Role
from edumarket.database import init_db
from edumarket.main import app
from edumarket.security import AuthUser, create_access_token
from edumarket.services.presence import PresenceRegistry
from edumarket.services.socket_service import RealtimeGateway


#scope : function < class < module < package < session
@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory MongoDB for every test."""
    client = AsyncMongoMockClient()
    await init_db(client=client, db_name="edumarket_test")
    yield client


class StubServer:
    """Records what the gateway asks the Socket.IO server to do."""

    def __init__(self):
        self.handlers = {}
        self.emitted = []
        self.rooms = defaultdict(set)

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def emit(self, event, data=None, to=None, room=None, skip_sid=None, **kwargs):
        self.emitted.append({"event": event, "data": data, "room": room or to, "skip_sid": skip_sid})

    async def enter_room(self, sid, room, namespace=None):
        self.rooms[room].add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms[room].discard(sid)

    def events(self, name):
        return [e for e in self.emitted if e["event"] == name]


@pytest.fixture
def student():
    return AuthUser(id=OID(), role=Role.STUDENT)


@pytest.fixture
def teacher():
    return AuthUser(id=OID(), role=Role.TEACHER)


def token_for(user: AuthUser) -> str:
    return create_access_token({"sub": str(user.id), "role": user.role.value})


def auth_headers(user: AuthUser) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def stub_server():
    return StubServer()


@pytest.fixture
def gateway(stub_server):
    gw = RealtimeGateway(stub_server, PresenceRegistry())
    gw.register_handlers()
    return gw


@pytest_asyncio.fixture
async def client(gateway):
    app.state.gateway = gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
