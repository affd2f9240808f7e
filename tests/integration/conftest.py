from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from syncguard.routes import health, sync, webhooks


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.fail = False

    async def acquire_slot(self, key: str, ttl_s: int) -> bool:
        if self.fail:
            raise ConnectionError("redis unavailable")
        if key in self.store:
            return False
        self.store[key] = "1"
        return True

    async def ping(self) -> bool:
        return not self.fail


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def sync_app(components):
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(sync.router)
    app.state.orchestrator = components.orchestrator
    return app


@pytest.fixture
def client(sync_app):
    # Context manager keeps one event loop alive across requests for background syncs
    with TestClient(sync_app) as client:
        yield client


@pytest.fixture
def connect(client, components):
    def _connect(key, expires_in=timedelta(hours=1)):
        token = components.token_provider.set_token(key, expires_in)
        return client.portal.call(
            components.orchestrator.connect_integration, key, token.expires_at
        )

    return _connect


@pytest.fixture
def drain(client, components):
    """Wait for webhook-triggered background syncs on the client's event loop."""

    async def _wait():
        orchestrator = components.orchestrator
        pending = [task for task in orchestrator._background if not task.done()]
        while pending:
            for task in pending:
                await task
            pending = [task for task in orchestrator._background if not task.done()]

    def _drain():
        client.portal.call(_wait)

    return _drain
