import os
import tempfile

# must be set before the service modules read their configuration
_DB_DIR = tempfile.mkdtemp(prefix="chat-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'chat.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("RABBITMQ_URL", None)

import pytest
from fastapi.testclient import TestClient
from main import app
from database import SessionLocal, engine
from models import Base, User
from auth import create_access_token
import dispatcher
import storage


class FakeMinio:
    def __init__(self):
        self.buckets = set()
        self.objects = {}
        self.removed = []

    def bucket_exists(self, bucket_name):
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name):
        self.buckets.add(bucket_name)

    def put_object(self, bucket_name, object_name, data, length, content_type=None):
        self.objects[(bucket_name, object_name)] = data.read(length)

    def remove_object(self, bucket_name, object_name):
        self.removed.append(object_name)
        self.objects.pop((bucket_name, object_name), None)


class FakeSocket:
    """Stands in for a websocket in registry/dispatcher tests."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self):
        return [frame["event"] for frame in self.sent]


@pytest.fixture(autouse=True)
def fresh_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    dispatcher.room_router.rooms.clear()
    dispatcher.registry.connections.clear()
    yield


@pytest.fixture(autouse=True)
def fake_storage(monkeypatch):
    fake = FakeMinio()
    monkeypatch.setattr(storage, "minio_client", fake)
    return fake


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(name, email=None):
        user = User(name=name, email=email or f"{name.lower()}@example.com")
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def alice(make_user):
    return make_user("Alice")


@pytest.fixture
def bob(make_user):
    return make_user("Bob")


@pytest.fixture
def carol(make_user):
    return make_user("Carol")


def token_for(user_id):
    return create_access_token({"sub": user_id})


def auth_headers(user_id):
    return {"Authorization": f"Bearer {token_for(user_id)}"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
