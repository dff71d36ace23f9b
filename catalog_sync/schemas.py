from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator


# ── Upstream ──────────────────────────────────────────────────────────────────

class BilletwebEvent(BaseModel):
    """Validated view of one Billetweb event/session payload."""
    id: str
    name: Optional[str] = None
    category: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    places_total: int = Field(ge=0)
    places_remaining: int = Field(ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    model_config = {"extra": "ignore"}


class ExternalRecord(BaseModel):
    external_id: str
    payload: Dict[str, Any]
    content_hash: str
    fetched_at: datetime


# ── Sync engine ───────────────────────────────────────────────────────────────

class ErrorItem(BaseModel):
    external_id: Optional[str] = None
    reason: str


class AuditEntryIn(BaseModel):
    action: str
    entity_type: str
    entity_id: str
    actor_id: str = "system:sync"
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RunOutcome(BaseModel):
    status: Literal["skipped", "succeeded", "failed", "partial"]
    run_id: Optional[int] = None
    items_fetched: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_retired: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    error_summary: List[ErrorItem] = Field(default_factory=list)
    duration_ms: int = 0


# ── API output ────────────────────────────────────────────────────────────────

class SyncRunOut(BaseModel):
    id: int
    triggered_by: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime]
    items_fetched: int
    items_created: int
    items_updated: int
    items_retired: int
    items_skipped: int
    items_failed: int
    error_summary: List[ErrorItem]
    duration_ms: Optional[int]
    model_config = {"from_attributes": True}


class AuditOut(BaseModel):
    id: int
    action: str
    entity_type: str
    entity_id: str
    actor_id: str
    timestamp: datetime
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="details")
    model_config = {"from_attributes": True}


class CatalogItemOut(BaseModel):
    id: int
    entity_type: str
    title: str
    starts_at: Optional[datetime]
    ends_at: Optional[datetime]
    places_total: Optional[int]
    places_left: Optional[int]
    is_full: bool
    external_id: Optional[str]
    sync_status: str
    last_synced_at: Optional[datetime]
    retired_at: Optional[datetime]
    model_config = {"from_attributes": True}


class SchedulerState(BaseModel):
    state: Literal["idle", "running"]
    started: bool
    next_run_at: Optional[datetime] = None
    tick_count: int = 0
    last_outcome: Optional[str] = None
    last_error: Optional[str] = None


class SyncStatusResponse(BaseModel):
    configured: bool
    scheduler: SchedulerState
    last_runs: List[SyncRunOut]


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: SchedulerState
    last_runs: List[SyncRunOut]
    version: str
