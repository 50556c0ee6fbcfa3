import mongomock
import pytest
from fastapi.testclient import TestClient

from chat import MessageStream, RoomDirectory
from feeds import NotificationFeed, PresenceTracker
from main import create_app
from realtime import RealtimeStore


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mongo():
    return mongomock.MongoClient()["chat_app_test"]


@pytest.fixture
def store(mongo, clock):
    return RealtimeStore(mongo, clock=clock)


@pytest.fixture
def directory(store):
    return RoomDirectory(store)


@pytest.fixture
def stream(store, directory, clock):
    stream = MessageStream(store, directory, clock=clock, auto_clear_ms=None)
    yield stream
    stream.close()


@pytest.fixture
def feed(store):
    return NotificationFeed(store)


@pytest.fixture
def presence(store, clock):
    return PresenceTracker(store, clock=clock)


@pytest.fixture
def app(mongo, clock):
    return create_app(db=mongo, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def chat(app, client):
    return app.state.chat
