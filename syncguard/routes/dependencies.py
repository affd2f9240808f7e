from fastapi import HTTPException, Request, status

from syncguard.services.sync_orchestrator import SyncOrchestrator


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    """Orchestrator built by the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None or orchestrator.is_shutting_down:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync orchestrator unavailable",
        )
    return orchestrator
