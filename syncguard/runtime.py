"""
Process-wide wiring of the orchestrator and its components.

The host application supplies the provider-specific collaborators (token
provider, sync executor, optional notification sink) through a factory named
by SYNC_COLLABORATORS_FACTORY; everything else is built here.
"""

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from syncguard.config import Settings, settings
from syncguard.db.pool import db_pool
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.collaborators import (
    NotificationSink,
    SubscriptionProvider,
    SyncExecutor,
    TokenProvider,
)
from syncguard.models.domain.sync_domain import IntegrationType
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.adaptive_sync_scheduler import AdaptiveSyncScheduler
from syncguard.services.calendar.google_watch_client import GoogleCalendarWatchClient
from syncguard.services.circuit_breaker_manager import CircuitBreakerManager
from syncguard.services.infrastructure.key_locks import KeyLockManager, create_lock_manager
from syncguard.services.infrastructure.redis_client import redis_client
from syncguard.services.sync_metrics_recorder import SyncMetricsRecorder
from syncguard.services.sync_orchestrator import SyncOrchestrator
from syncguard.services.token_health_monitor import TokenHealthMonitor
from syncguard.services.token_health_notification_service import TokenHealthNotificationService
from syncguard.services.webhook_subscription_manager import WebhookSubscriptionManager
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)


@dataclass
class SyncCollaborators:
    token_provider: TokenProvider
    executor: SyncExecutor
    subscription_providers: dict[IntegrationType, SubscriptionProvider] | None = None
    notification_sink: NotificationSink | None = None


def load_collaborators(path: str | None = None) -> SyncCollaborators:
    """Import and call the "package.module:callable" collaborators factory."""
    target = path or settings.SYNC_COLLABORATORS_FACTORY
    if not target:
        raise RuntimeError("SYNC_COLLABORATORS_FACTORY is not configured")

    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid collaborators factory '{target}', expected 'module:callable'")

    factory = getattr(importlib.import_module(module_name), attr)
    collaborators = factory()
    if not isinstance(collaborators, SyncCollaborators):
        raise TypeError(f"Collaborators factory '{target}' must return SyncCollaborators")
    return collaborators


def build_orchestrator(
    collaborators: SyncCollaborators,
    *,
    locks: KeyLockManager | None = None,
    repository: SyncStateRepository | None = None,
    config: Settings | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> SyncOrchestrator:
    """Assemble every component around one lock manager and one repository."""
    config = config or settings
    locks = locks or create_lock_manager(config=config)
    repository = repository or SyncStateRepository()

    providers = collaborators.subscription_providers
    if providers is None:
        # Registration retries live in WebhookSubscriptionManager
        providers = {
            IntegrationType.CALENDAR: GoogleCalendarWatchClient(config=config, max_retries=1)
        }

    notifications = TokenHealthNotificationService(
        repository=repository, sink=collaborators.notification_sink, config=config, clock=clock
    )
    token_monitor = TokenHealthMonitor(
        collaborators.token_provider,
        locks,
        notifications=notifications,
        repository=repository,
        config=config,
        clock=clock,
    )
    breaker = CircuitBreakerManager(locks, repository=repository, config=config, clock=clock)
    scheduler = AdaptiveSyncScheduler(locks, repository=repository, config=config, clock=clock)
    webhooks = WebhookSubscriptionManager(
        token_monitor,
        locks,
        providers=providers,
        scheduler=scheduler,
        repository=repository,
        config=config,
        clock=clock,
    )
    metrics = SyncMetricsRecorder(repository=repository, clock=clock)

    return SyncOrchestrator(
        collaborators.executor,
        breaker,
        token_monitor,
        webhooks,
        scheduler,
        metrics,
        locks,
        repository=repository,
        config=config,
        clock=clock,
    )


_orchestrator: SyncOrchestrator | None = None


async def get_orchestrator() -> SyncOrchestrator:
    """Process singleton; initializes the database pool and Redis on first use."""
    global _orchestrator
    if _orchestrator is None:
        await db_pool.initialize()
        if settings.LOCK_BACKEND == "redis":
            await redis_client.initialize()
        _orchestrator = build_orchestrator(load_collaborators())
        logger.info(
            "Sync orchestrator ready",
            lock_backend=settings.LOCK_BACKEND,
            push_integrations=[it.value for it in _orchestrator.webhooks.providers],
        )
    return _orchestrator


async def shutdown_runtime(grace_seconds: float | None = None) -> None:
    """Drain the orchestrator, then close Redis and the database pool."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown(grace_seconds)
        for provider in _orchestrator.webhooks.providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        _orchestrator = None

    await redis_client.close()
    await db_pool.close()
