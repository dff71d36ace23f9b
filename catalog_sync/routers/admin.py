from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends

from catalog_sync.config import settings
from catalog_sync.database import ping_db
from catalog_sync.lease import ping_redis, redis_enabled
from catalog_sync.routers.deps import get_coordinator, get_scheduler, scheduler_state
from catalog_sync.schemas import HealthResponse
from catalog_sync.services.coordinator import RunCoordinator
from catalog_sync.services.scheduler import SyncScheduler

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(
    coordinator: RunCoordinator = Depends(get_coordinator),
    scheduler: Optional[SyncScheduler] = Depends(get_scheduler),
):
    """Unauthenticated so load balancers can poll it."""
    db_ok = await ping_db()
    if redis_enabled():
        redis_status = "ok" if await ping_redis() else "error"
    else:
        redis_status = "disabled"

    last_runs = await coordinator.recent_runs(settings.SYNC_HISTORY_LIMIT) if db_ok else []

    return HealthResponse(
        status="ok" if (db_ok and redis_status != "error") else "degraded",
        database="ok" if db_ok else "error",
        redis=redis_status,
        scheduler=scheduler_state(coordinator, scheduler),
        last_runs=last_runs,
        version=settings.APP_VERSION,
    )
