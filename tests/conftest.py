import pytest
from fastapi.testclient import TestClient

from chat_bridge.main import app


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def use_provider(monkeypatch):
    def _use(provider):
        monkeypatch.setattr("chat_bridge.bridge.get_provider", lambda: provider)
        return provider

    return _use


@pytest.fixture
def anyio_backend():
    return "asyncio"
