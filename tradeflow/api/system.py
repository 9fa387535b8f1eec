"""System API: health check and deadline timer status."""

from fastapi import APIRouter, Depends

from tradeflow.api.deps import get_registry
from tradeflow.engine.registry import SessionRegistry

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler")
def scheduler_status(registry: SessionRegistry = Depends(get_registry)):
    """Current deadline timer state plus open session count."""
    status = registry.timer.status()
    status["open_sessions"] = len(registry)
    return status
