from types import SimpleNamespace

import pytest

from syncguard.models.domain.sync_domain import IntegrationType
from syncguard.runtime import SyncCollaborators, build_orchestrator, load_collaborators
from syncguard.services.calendar.google_watch_client import REQUEST_TIMEOUT, GoogleCalendarWatchClient
from syncguard.services.webhook_subscription_manager import WATCH_TIMEOUT_SECONDS


def test_load_collaborators_requires_factory(monkeypatch):
    monkeypatch.setattr("syncguard.runtime.settings.SYNC_COLLABORATORS_FACTORY", "")

    with pytest.raises(RuntimeError):
        load_collaborators()


def test_load_collaborators_rejects_malformed_path():
    with pytest.raises(ValueError):
        load_collaborators("hostapp.sync_factory")


def test_load_collaborators_checks_return_type():
    with pytest.raises(TypeError):
        load_collaborators("builtins:dict")


def test_load_collaborators_calls_factory(monkeypatch):
    collaborators = SyncCollaborators(token_provider=object(), executor=object())
    module = SimpleNamespace(build_sync=lambda: collaborators)
    monkeypatch.setattr("syncguard.runtime.importlib.import_module", lambda name: module)

    assert load_collaborators("hostapp.sync:build_sync") is collaborators


@pytest.mark.asyncio
async def test_build_orchestrator_defaults_calendar_push(repo, locks, test_settings, clock):
    orchestrator = build_orchestrator(
        SyncCollaborators(token_provider=object(), executor=object()),
        locks=locks,
        repository=repo,
        config=test_settings,
        clock=clock,
    )
    provider = orchestrator.webhooks.providers[IntegrationType.CALENDAR]

    assert isinstance(provider, GoogleCalendarWatchClient)
    # One HTTP call per registration attempt, and the attempt timeout covers it
    assert provider.max_retries == 1
    assert WATCH_TIMEOUT_SECONDS > REQUEST_TIMEOUT
    assert IntegrationType.CONTACTS not in orchestrator.webhooks.providers
    assert orchestrator.breaker.repository is repo
    assert orchestrator.scheduler.locks is locks

    await provider.close()
