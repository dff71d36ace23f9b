from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.auth import require_admin
from catalog_sync.config import settings
from catalog_sync.database import get_db
from catalog_sync.exceptions import ConflictError, LockContention, NotFoundError, ServiceUnavailableError
from catalog_sync.repositories.audits import AuditRepository
from catalog_sync.repositories.catalog import CatalogRepository
from catalog_sync.routers.deps import get_coordinator, get_scheduler, scheduler_state
from catalog_sync.schemas import (
    AuditEntryIn, AuditOut, CatalogItemOut, RunOutcome,
    SyncRunOut, SyncStatusResponse,
)
from catalog_sync.services.coordinator import RunCoordinator
from catalog_sync.services.scheduler import SyncScheduler

router = APIRouter(prefix="/api/v1", tags=["sync"], dependencies=[Depends(require_admin)])


@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status(
    coordinator: RunCoordinator = Depends(get_coordinator),
    scheduler: Optional[SyncScheduler] = Depends(get_scheduler),
):
    return SyncStatusResponse(
        configured=settings.billetweb_configured,
        scheduler=scheduler_state(coordinator, scheduler),
        last_runs=await coordinator.recent_runs(settings.SYNC_HISTORY_LIMIT),
    )


@router.post("/sync", response_model=RunOutcome)
async def trigger_sync(coordinator: RunCoordinator = Depends(get_coordinator)):
    """Blocking manual run. Shares the single-flight lock with the scheduler."""
    if not settings.billetweb_configured:
        raise ServiceUnavailableError("Billetweb API is not configured")
    outcome = await coordinator.attempt_run(triggered_by="manual")
    if outcome.status == "skipped":
        raise LockContention("A sync run is already in progress")
    return outcome


@router.get("/sync/runs", response_model=List[SyncRunOut])
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    return await coordinator.recent_runs(limit)


@router.get("/audit", response_model=List[AuditOut])
async def list_audit(
    limit: int = Query(50, ge=1, le=500),
    entity_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    rows = await AuditRepository(db).recent(limit, entity_id=entity_id)
    return [AuditOut.model_validate(r) for r in rows]


async def _load_item(repo: CatalogRepository, item_id: int):
    item = await repo.get(item_id)
    if item is None:
        raise NotFoundError(f"Catalog item {item_id} not found")
    return item


@router.post("/catalog/{item_id}/override", response_model=CatalogItemOut)
async def set_override(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    """Marks an item as manually managed; sync will no longer write to it."""
    repo = CatalogRepository(db)
    await _load_item(repo, item_id)
    row = await repo.set_sync_status(item_id, "manual")
    await AuditRepository(db).log(AuditEntryIn(
        action="catalog_item.override_set",
        entity_type=row.entity_type,
        entity_id=str(row.id),
        actor_id=actor,
        timestamp=datetime.now(timezone.utc),
    ))
    return CatalogItemOut.model_validate(row)


@router.delete("/catalog/{item_id}/override", response_model=CatalogItemOut)
async def release_override(
    item_id: int,
    entity_type: Optional[Literal["animation", "formation", "stage"]] = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: str = Depends(require_admin),
):
    """
    Hands the item back to sync; the next run refreshes it from Billetweb.

    A conflict item keeps conflicting until its entity type matches the
    Billetweb category, so the corrected type can be passed along here.
    """
    repo = CatalogRepository(db)
    item = await _load_item(repo, item_id)
    if item.external_id is None:
        raise ConflictError(f"Catalog item {item_id} is not linked to a Billetweb event")
    if item.sync_status not in ("manual", "conflict"):
        raise ConflictError(f"Catalog item {item_id} is not overridden")
    previous_status = item.sync_status
    fields = {"sync_status": "stale"}
    if entity_type is not None:
        fields["entity_type"] = entity_type
    row = await repo.update(item_id, fields)
    await AuditRepository(db).log(AuditEntryIn(
        action="catalog_item.override_released",
        entity_type=row.entity_type,
        entity_id=str(row.id),
        actor_id=actor,
        timestamp=datetime.now(timezone.utc),
        metadata={"previous_status": previous_status, "entity_type": entity_type},
    ))
    return CatalogItemOut.model_validate(row)
