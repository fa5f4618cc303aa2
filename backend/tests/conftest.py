"""Shared test fixtures and configuration for backend tests.

Every test runs against an in-memory DuckDB store and the in-process
presence registry / event bus, so no Redis server is needed.
"""
from typing import Any, List, Tuple

import pytest
from fastapi.testclient import TestClient

from relay.auth.service import get_verifier, set_verifier
from relay.chat.service import build_chat_service, set_chat_service
from relay.config import AppSettings, RedisSettings, StoreSettings, reset_config, set_config
from relay.main import app
from relay.store.service import MessageStore

TEST_SECRET = "test-secret-key"


class FakeConnection:
    """Stands in for a live socket; records every event it is sent."""

    def __init__(self, handle: str, user_id: str = None, fail: bool = False):
        self.handle = handle
        self.user_id = user_id
        self.fail = fail
        self.frames: List[Tuple[str, Any]] = []

    async def send(self, event: str, data: Any) -> bool:
        if self.fail:
            return False
        self.frames.append((event, data))
        return True

    def events(self, name: str) -> List[Any]:
        return [data for event, data in self.frames if event == name]


@pytest.fixture(autouse=True)
def test_config():
    """In-memory backends for every test; singletons reset on both sides."""
    config = AppSettings(
        redis=RedisSettings(backend="memory"),
        store=StoreSettings(db_path=":memory:"),
    )
    config.secrets.jwt.secret_key = TEST_SECRET
    set_config(config)
    MessageStore.reset_instance()
    set_chat_service(None)
    set_verifier(None)
    yield config
    set_chat_service(None)
    set_verifier(None)
    MessageStore.reset_instance()
    reset_config()


@pytest.fixture
def store():
    return MessageStore.get_instance(":memory:")


@pytest.fixture
def chat_service(test_config):
    service = build_chat_service(test_config)
    set_chat_service(service)
    return service


@pytest.fixture
def connect(chat_service):
    """Factory: a FakeConnection with a handle owned by ``chat_service``."""
    counter = {"n": 0}

    def _make(user_id: str, fail: bool = False) -> FakeConnection:
        counter["n"] += 1
        handle = chat_service.broadcaster.new_handle(f"conn-{counter['n']}")
        return FakeConnection(handle, user_id=user_id, fail=fail)

    return _make


@pytest.fixture
def token():
    """Factory: signed access token for a user id."""
    verifier = get_verifier()
    return verifier.create_access_token


@pytest.fixture
def auth_headers(token):
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {token(user_id)}"}

    return _headers


@pytest.fixture
def api_client(chat_service):
    """TestClient for the main app, with startup/shutdown run around the test."""
    with TestClient(app) as client:
        yield client
