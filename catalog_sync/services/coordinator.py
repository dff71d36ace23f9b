from __future__ import annotations

import asyncio
import time
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from catalog_sync.config import Settings, settings
from catalog_sync.exceptions import FetchError, RunTimeout, TransientNetworkError
from catalog_sync.lease import NullLease, RunLease
from catalog_sync.repositories.audits import AuditSink, DatabaseAuditSink
from catalog_sync.repositories.catalog import CatalogRepository
from catalog_sync.repositories.runs import SyncRunRepository
from catalog_sync.schemas import AuditEntryIn, ErrorItem, ExternalRecord, RunOutcome, SyncRunOut
from catalog_sync.services.billetweb import BilletwebClient
from catalog_sync.services.reconciler import SYSTEM_ACTOR, Reconciler, RunTally

log = structlog.get_logger(__name__)


class RunCoordinator:
    """
    Owns the single-flight guarantee and the SyncRun lifecycle.

    attempt_run() never raises: lock contention yields a `skipped` outcome
    and every failure inside the run becomes a terminal SyncRun status.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: BilletwebClient,
        *,
        sink: Optional[AuditSink] = None,
        lease: Optional[RunLease] = None,
        run_timeout: float = 120.0,
        partial_policy: str = "abort",
        default_entity_type: str = "stage",
    ):
        self._session_factory = session_factory
        self._client = client
        self._sink = sink or DatabaseAuditSink(session_factory)
        self._lease = lease or NullLease()
        self.run_timeout = run_timeout
        self.partial_policy = partial_policy
        self.default_entity_type = default_entity_type
        self._lock = asyncio.Lock()
        self.last_outcome: Optional[RunOutcome] = None

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker,
        client: BilletwebClient,
        lease: Optional[RunLease] = None,
        cfg: Settings = settings,
    ) -> "RunCoordinator":
        return cls(
            session_factory,
            client,
            lease=lease,
            run_timeout=cfg.SYNC_RUN_TIMEOUT_SECONDS,
            partial_policy=cfg.SYNC_PARTIAL_FETCH_POLICY,
            default_entity_type=cfg.SYNC_DEFAULT_ENTITY_TYPE,
        )

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def attempt_run(self, triggered_by: str = "scheduler") -> RunOutcome:
        # locked() and the uncontended acquire below happen without a yield
        if self._lock.locked():
            log.info("sync.run.skipped", reason="in_progress", triggered_by=triggered_by)
            return RunOutcome(status="skipped")

        async with self._lock:
            if not await self._lease.acquire():
                log.info("sync.run.skipped", reason="lease_held", triggered_by=triggered_by)
                return RunOutcome(status="skipped")
            try:
                outcome = await self._run(triggered_by)
            finally:
                await self._lease.release()

        self.last_outcome = outcome
        return outcome

    async def recent_runs(self, limit: int = 10) -> List[SyncRunOut]:
        async with self._session_factory() as db:
            rows = await SyncRunRepository(db).recent(limit)
            return [SyncRunOut.model_validate(r) for r in rows]

    # ── Run lifecycle ─────────────────────────────────────────────────────────

    async def _run(self, triggered_by: str) -> RunOutcome:
        t0 = time.monotonic()
        try:
            async with self._session_factory() as db:
                run = await SyncRunRepository(db).start(triggered_by)
        except Exception as exc:
            log.error("sync.run.start_failed", error=str(exc))
            return RunOutcome(
                status="failed",
                error_summary=[ErrorItem(reason=f"could not record run start: {exc}")],
            )

        run_log = log.bind(run_id=run.id, triggered_by=triggered_by)
        run_log.info("sync.run.started")
        tally = RunTally()

        try:
            status = await asyncio.wait_for(self._execute(tally), timeout=self.run_timeout)
        except asyncio.TimeoutError:
            run_log.error("sync.run.timeout", error_code=RunTimeout.error_code, timeout_s=self.run_timeout)
            tally.errors.append(ErrorItem(reason="timeout"))
            status = "failed"
        except FetchError as exc:
            run_log.error("sync.run.fetch_failed", error_code=exc.error_code, error=exc.detail)
            tally.errors.append(ErrorItem(reason=f"{exc.error_code}: {exc.detail}"))
            status = "failed"
        except asyncio.CancelledError:
            tally.errors.append(ErrorItem(reason="cancelled"))
            await self._finalize(run.id, self._outcome(run.id, "failed", tally, t0), run_log)
            raise
        except Exception as exc:
            run_log.exception("sync.run.crashed")
            tally.errors.append(ErrorItem(reason=f"unexpected error: {exc}"))
            status = "failed"

        outcome = self._outcome(run.id, status, tally, t0)
        await self._finalize(run.id, outcome, run_log)
        return outcome

    async def _execute(self, tally: RunTally) -> str:
        async with self._session_factory() as db:
            reconciler = Reconciler(
                CatalogRepository(db), self._sink, tally, self.default_entity_type
            )
            # the whole upstream picture must be in hand before any write
            records = []
            try:
                async for record in self._client.fetch_all():
                    records.append(record)
                    tally.fetched += 1
            except TransientNetworkError as exc:
                if self.partial_policy != "apply_prefix" or not records:
                    raise
                return await self._apply_prefix(reconciler, tally, records, exc)
            await reconciler.apply(records)
            await reconciler.retire_missing()
            return tally.status

    async def _apply_prefix(
        self,
        reconciler: Reconciler,
        tally: RunTally,
        records: List[ExternalRecord],
        exc: TransientNetworkError,
    ) -> str:
        # an incomplete picture must not retire anything
        await reconciler.apply(records)
        tally.note(f"fetch aborted after {tally.fetched} records, retirement skipped: {exc.detail}")
        log.warning("sync.run.prefix_applied", fetched=tally.fetched, error=exc.detail)
        return tally.status

    @staticmethod
    def _outcome(run_id: int, status: str, tally: RunTally, t0: float) -> RunOutcome:
        return RunOutcome(
            status=status,
            run_id=run_id,
            items_fetched=tally.fetched,
            items_created=tally.created,
            items_updated=tally.updated,
            items_retired=tally.retired,
            items_skipped=tally.skipped,
            items_failed=tally.failed,
            error_summary=list(tally.errors),
            duration_ms=int((time.monotonic() - t0) * 1000),
        )

    async def _finalize(self, run_id: int, outcome: RunOutcome, run_log) -> None:
        try:
            async with self._session_factory() as db:
                run = await SyncRunRepository(db).finish(run_id, outcome)
        except Exception as exc:
            run_log.error("sync.run.finalize_failed", error=str(exc))
            return

        counts = outcome.model_dump(exclude={"run_id", "error_summary", "status"})
        if outcome.status == "succeeded":
            run_log.info("sync.run.finished", status=outcome.status, **counts)
        else:
            run_log.warning(
                "sync.run.finished",
                status=outcome.status,
                errors=[e.model_dump() for e in outcome.error_summary[:10]],
                **counts,
            )

        try:
            await self._sink.record(AuditEntryIn(
                action="sync_run.finished",
                entity_type="sync_run",
                entity_id=str(run_id),
                actor_id=SYSTEM_ACTOR,
                timestamp=run.finished_at,
                metadata={"status": outcome.status, **counts},
            ))
        except Exception as exc:
            run_log.warning("audit.emit.failed", action="sync_run.finished", error=str(exc))
