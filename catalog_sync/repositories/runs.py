from __future__ import annotations
from datetime import datetime, timezone
from typing import List
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from catalog_sync.models import SyncRun
from catalog_sync.schemas import RunOutcome


class SyncRunRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def start(self, triggered_by: str) -> SyncRun:
        run = SyncRun(
            triggered_by=triggered_by,
            status="running",
            started_at=datetime.now(timezone.utc),
            error_summary=[],
        )
        self.db.add(run)
        await self.db.commit()
        return run

    async def finish(self, run_id: int, outcome: RunOutcome) -> SyncRun:
        """Writes the terminal state once. A finished run is never touched again."""
        run = await self.db.get(SyncRun, run_id)
        if run is None or run.status != "running":
            raise ValueError(f"Sync run {run_id} is not running")
        run.status = outcome.status
        run.finished_at = datetime.now(timezone.utc)
        run.items_fetched = outcome.items_fetched
        run.items_created = outcome.items_created
        run.items_updated = outcome.items_updated
        run.items_retired = outcome.items_retired
        run.items_skipped = outcome.items_skipped
        run.items_failed = outcome.items_failed
        run.error_summary = [e.model_dump() for e in outcome.error_summary]
        run.duration_ms = outcome.duration_ms
        await self.db.commit()
        return run

    async def recent(self, limit: int = 10) -> List[SyncRun]:
        rows = await self.db.execute(
            select(SyncRun)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(limit)
        )
        return list(rows.scalars().all())

    async def count_running(self) -> int:
        rows = await self.db.execute(
            select(func.count()).select_from(SyncRun).where(SyncRun.status == "running")
        )
        return rows.scalar_one()
