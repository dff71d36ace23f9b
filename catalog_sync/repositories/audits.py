from __future__ import annotations
from typing import List, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog_sync.models import AuditEntry
from catalog_sync.schemas import AuditEntryIn

log = structlog.get_logger(__name__)


class AuditSink(Protocol):
    async def record(self, entry: AuditEntryIn) -> None: ...


class AuditRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(self, entry: AuditEntryIn) -> AuditEntry:
        row = AuditEntry(
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor_id=entry.actor_id,
            timestamp=entry.timestamp,
            details=entry.metadata,
        )
        self.db.add(row)
        await self.db.commit()
        return row

    async def recent(self, limit: int = 50, entity_id: Optional[str] = None) -> List[AuditEntry]:
        q = select(AuditEntry)
        if entity_id:
            q = q.where(AuditEntry.entity_id == entity_id)
        rows = await self.db.execute(
            q.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc()).limit(limit)
        )
        return list(rows.scalars().all())


class DatabaseAuditSink:
    """
    Best-effort sink: each entry is written in its own session so a failing
    audit write never rolls back the catalog mutation it describes.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def record(self, entry: AuditEntryIn) -> None:
        try:
            async with self._session_factory() as db:
                await AuditRepository(db).log(entry)
        except SQLAlchemyError as exc:
            log.warning(
                "audit.record.failed",
                action=entry.action,
                entity_id=entry.entity_id,
                error=str(exc),
            )
