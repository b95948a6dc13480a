"""
Pytest configuration and fixtures for testing.
Provides an isolated engine, a fake WebSocket, and a test client.
"""
import pytest
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient
from relay.engine import PresenceEngine
from relay.history import HistoryStore
from relay.registry import IdentityRegistry
from main import app


class FrozenClock:
    """Manually advanced clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeWebSocket:
    """
    Minimal stand-in for fastapi.WebSocket used by hub tests.
    Records every JSON message sent to it.
    """

    def __init__(self, fail_on_send: bool = False):
        self.accepted = False
        self.sent = []
        self.fail_on_send = fail_on_send

    async def accept(self):
        self.accepted = True

    async def send_json(self, message: dict):
        if self.fail_on_send:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def types(self) -> list:
        return [m["type"] for m in self.sent]

    def last(self, event_type: str) -> dict:
        return [m for m in self.sent if m["type"] == event_type][-1]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry(clock) -> IdentityRegistry:
    return IdentityRegistry(clock=clock)


@pytest.fixture
def history() -> HistoryStore:
    return HistoryStore()


@pytest.fixture
def engine(registry, history, clock) -> PresenceEngine:
    return PresenceEngine(registry=registry, history=history, clock=clock)


@pytest.fixture
def fake_websocket_factory():
    def _make(fail_on_send: bool = False) -> FakeWebSocket:
        return FakeWebSocket(fail_on_send=fail_on_send)
    return _make


@pytest.fixture(scope="function")
def test_client():
    """
    Create a test client with a fresh relay hub.
    Entering the client runs the application lifespan.
    """
    with TestClient(app) as client:
        yield client
