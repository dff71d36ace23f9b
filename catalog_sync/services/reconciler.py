from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from pydantic import ValidationError

from catalog_sync.exceptions import DataAccessError
from catalog_sync.models import CatalogItem, ENTITY_TYPES
from catalog_sync.repositories.audits import AuditSink
from catalog_sync.repositories.catalog import CatalogRepository
from catalog_sync.schemas import AuditEntryIn, BilletwebEvent, ErrorItem, ExternalRecord

log = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system:sync"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REVIVE = "revive"
    CONFLICT = "conflict"
    SKIP_MANUAL = "skip_manual"
    SKIP_CONFLICT = "skip_conflict"
    SKIP_UNCHANGED = "skip_unchanged"


@dataclass
class RunTally:
    """Counters for one run. Mutated in place so a timed-out run keeps its progress."""
    fetched: int = 0
    created: int = 0
    updated: int = 0
    retired: int = 0
    skipped: int = 0
    failed: int = 0
    degraded: bool = False
    errors: List[ErrorItem] = field(default_factory=list)

    def fail(self, external_id: Optional[str], reason: str) -> None:
        self.failed += 1
        self.errors.append(ErrorItem(external_id=external_id, reason=reason))

    def note(self, reason: str) -> None:
        """Run-level problem that is not tied to one record."""
        self.degraded = True
        self.errors.append(ErrorItem(external_id=None, reason=reason))

    @property
    def status(self) -> str:
        return "partial" if self.failed or self.degraded else "succeeded"


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).strip().lower()


def entity_type_for(event: BilletwebEvent, default: str) -> str:
    if event.category:
        folded = _fold(event.category)
        for candidate in ENTITY_TYPES:
            if folded == candidate or folded.startswith(candidate):
                return candidate
    return default


def map_event(event: BilletwebEvent, default_entity_type: str) -> Dict[str, Any]:
    """Columns of a CatalogItem owned by the upstream record."""
    return {
        "entity_type": entity_type_for(event, default_entity_type),
        "title": (event.name or "").strip() or f"Billetweb {event.id}",
        "starts_at": event.start,
        "ends_at": event.end,
        "places_total": event.places_total,
        "places_left": event.places_remaining,
        "is_full": event.places_remaining == 0,
    }


def decide(record: ExternalRecord, item: Optional[CatalogItem], entity_type: str) -> Action:
    """Pure decision for one upstream record against its local counterpart."""
    if item is None:
        return Action.CREATE
    if item.sync_status == "manual":
        return Action.SKIP_MANUAL
    if item.sync_status == "conflict":
        return Action.SKIP_CONFLICT
    if item.entity_type != entity_type:
        return Action.CONFLICT
    if item.sync_status == "stale":
        return Action.REVIVE
    if item.synced_content_hash == record.content_hash:
        return Action.SKIP_UNCHANGED
    return Action.UPDATE


class Reconciler:
    """
    Applies upstream records to the catalog one by one.

    Each record runs in its own error boundary: a validation or data-access
    failure is added to the tally and the loop moves on. Manual and conflict
    items are never written.
    """

    def __init__(
        self,
        repo: CatalogRepository,
        sink: AuditSink,
        tally: RunTally,
        default_entity_type: str = "stage",
    ):
        self.repo = repo
        self.sink = sink
        self.tally = tally
        self.default_entity_type = default_entity_type
        self.seen: Set[str] = set()

    async def apply(self, records: Iterable[ExternalRecord]) -> None:
        for record in records:
            await self.apply_one(record)

    async def apply_one(self, record: ExternalRecord) -> None:
        # marked before anything can fail so a broken record is never retired
        self.seen.add(record.external_id)
        try:
            await self._apply(record)
        except (DataAccessError, ValidationError) as exc:
            reason = exc.detail if isinstance(exc, DataAccessError) else _validation_reason(exc)
            self.tally.fail(record.external_id, reason)
            log.warning("reconcile.item.failed", external_id=record.external_id, reason=reason)

    async def _apply(self, record: ExternalRecord) -> None:
        event = BilletwebEvent.model_validate(record.payload)
        fields = map_event(event, self.default_entity_type)
        item = await self.repo.find_by_external_id(record.external_id)
        action = decide(record, item, fields["entity_type"])
        now = datetime.now(timezone.utc)

        if action is Action.CREATE:
            row = await self.repo.create({
                **fields,
                "external_id": record.external_id,
                "synced_content_hash": record.content_hash,
                "last_synced_at": now,
                "sync_status": "synced",
            })
            self.tally.created += 1
            await self._emit("catalog_item.created", row, record, now)

        elif action in (Action.UPDATE, Action.REVIVE):
            previous_hash = item.synced_content_hash
            row = await self.repo.update(item.id, {
                **fields,
                "synced_content_hash": record.content_hash,
                "last_synced_at": now,
                "sync_status": "synced",
                "retired_at": None,
            })
            self.tally.updated += 1
            await self._emit(
                "catalog_item.updated", row, record, now,
                previous_hash=previous_hash, revived=action is Action.REVIVE,
            )

        elif action is Action.CONFLICT:
            row = await self.repo.set_sync_status(item.id, "conflict")
            self.tally.skipped += 1
            await self._emit(
                "catalog_item.sync_conflict", row, record, now,
                local_entity_type=row.entity_type, upstream_entity_type=fields["entity_type"],
            )

        else:
            self.tally.skipped += 1
            log.debug("reconcile.item.skipped", external_id=record.external_id, reason=action.value)

    async def retire_missing(self) -> None:
        """Marks stale every synced item whose external id was not seen this run."""
        try:
            synced = await self.repo.synced_external_ids()
        except DataAccessError as exc:
            self.tally.note(f"retirement scan: {exc.detail}")
            log.warning("reconcile.retire.scan_failed", error=exc.detail)
            return

        for external_id, item_id in synced.items():
            if external_id in self.seen:
                continue
            now = datetime.now(timezone.utc)
            try:
                row = await self.repo.mark_stale(item_id, now)
            except DataAccessError as exc:
                self.tally.fail(external_id, exc.detail)
                log.warning("reconcile.retire.failed", external_id=external_id, reason=exc.detail)
                continue
            self.tally.retired += 1
            await self._emit("catalog_item.retired", row, None, now)

    async def _emit(
        self,
        action: str,
        row: CatalogItem,
        record: Optional[ExternalRecord],
        now: datetime,
        **extra: Any,
    ) -> None:
        metadata: Dict[str, Any] = {"external_id": row.external_id, **extra}
        if record is not None:
            metadata["content_hash"] = record.content_hash
        entry = AuditEntryIn(
            action=action,
            entity_type=row.entity_type,
            entity_id=str(row.id),
            actor_id=SYSTEM_ACTOR,
            timestamp=now,
            metadata=metadata,
        )
        try:
            await self.sink.record(entry)
        except Exception as exc:
            log.warning("audit.emit.failed", action=action, entity_id=entry.entity_id, error=str(exc))


def _validation_reason(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"invalid payload: {loc} {first.get('msg', '')}".strip()
