import os

# Configure before bustrack is imported: shared in-memory DB, cheap hashes, no routing key
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("OPENROUTE_API_KEY", None)

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from bustrack.config import Settings
from bustrack.database import Base, SessionLocal, engine
from bustrack.db_store import DatabaseStore
from bustrack.location_channel import LiveLocationChannel
from bustrack.main import create_app
from bustrack.rate_limit import SlidingWindowLimiter
from bustrack.websocket_manager import ConnectionRegistry


class FakeConnection:
    """Stands in for a WebSocket; records what the server sends."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return DatabaseStore(db)


@pytest.fixture
def fleet(store):
    """One bus with a driver and a student, plus an admin and an unassigned student."""
    bus = store.create_bus("BUS_01", "01", route_name="Main Campus Route", capacity=40)
    admin = store.create_rider("System Admin", "admin@college.edu", "admin123", "admin")
    driver = store.create_rider("John Driver", "driver@college.edu", "driver123", "driver", bus_number="01")
    student = store.create_rider("Test Student", "student@college.edu", "student123", "student",
                                 student_id="STU001", bus_number="01")
    loner = store.create_rider("Other Student", "other@college.edu", "other123", "student", student_id="STU002")
    return SimpleNamespace(bus=bus, admin=admin, driver=driver, student=student, loner=loner)


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def limiter():
    return SlidingWindowLimiter(max_requests=1000, window_seconds=900)


@pytest.fixture
def channel(registry, limiter):
    return LiveLocationChannel(registry, limiter)


@pytest.fixture
def settings():
    return Settings(openroute_api_key=None)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def login(client):
    def _login(email, password):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        # Keep identities explicit per request rather than via the shared cookie jar
        client.cookies.clear()
        return {"X-Session-Token": resp.json()["session_token"]}
    return _login
