import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from canva_relay.config import Settings
from canva_relay.events import RecordingEventSink
from canva_relay.http_server import create_app


RELAY_BASE_URL = "https://relay.example.com"
CONSUMER_REDIRECT = "https://client.example/cb"
TOKEN_URL = "https://api.canva.com/rest/v1/oauth/token"
API_BASE_URL = "https://api.canva.com/rest/v1"


def make_settings(**overrides) -> Settings:
    values = {
        "client_id": "client-123",
        "client_secret": "secret-456",
        "relay_base_url": RELAY_BASE_URL,
    }
    values.update(overrides)
    return Settings(**values)


def query_of(location: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def app(settings, events):
    return create_app(settings, events=events)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def run():
    """Run a store coroutine from a sync test (the in-memory store is loop-agnostic)."""
    return asyncio.run


@pytest.fixture
def start_flow(client):
    """Call /authorize and return the session id the relay sent upstream as `state`."""

    def _start(redirect_uri: str = CONSUMER_REDIRECT, state: str | None = "xyz") -> str:
        params = {"redirect_uri": redirect_uri}
        if state is not None:
            params["state"] = state
        response = client.get("/authorize", params=params, follow_redirects=False)
        assert response.status_code == 302
        return query_of(response.headers["location"])["state"]

    return _start
