from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from catalog_sync.config import Settings, settings
from catalog_sync.schemas import SchedulerState
from catalog_sync.services.coordinator import RunCoordinator

log = structlog.get_logger(__name__)

JOB_ID = "billetweb_sync"


class SyncScheduler:
    """
    Timing source for sync runs. Holds no data of its own: every tick hands
    over to the coordinator, and whatever that tick raises is logged and
    dropped so the next tick still fires.
    """

    def __init__(self, coordinator: RunCoordinator):
        self.coordinator = coordinator
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: Optional[asyncio.Task] = None
        self.tick_count = 0
        self.last_error: Optional[str] = None

    @property
    def started(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, interval_seconds: int, jitter_seconds: int = 0) -> None:
        if self.started:
            log.info("scheduler.already_started")
            return

        offset = random.uniform(-jitter_seconds, jitter_seconds) if jitter_seconds else 0.0
        first_run = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, interval_seconds + offset))

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=interval_seconds, jitter=jitter_seconds or None),
            id=JOB_ID,
            next_run_time=first_run,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        log.info(
            "scheduler.started",
            interval_s=interval_seconds,
            jitter_s=jitter_seconds,
            first_run=first_run.isoformat(),
        )

    def stop(self) -> None:
        """Cancels future ticks. A run already in flight keeps going."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("scheduler.stopped", inflight=self.coordinator.is_running)
        self._scheduler = None

    async def wait_idle(self, timeout: float) -> bool:
        """For graceful shutdown: wait for the in-flight run, if any."""
        task = self._inflight
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            log.warning("scheduler.drain.timeout", timeout_s=timeout)
        return bool(done)

    def next_run_at(self) -> Optional[datetime]:
        if not self.started:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def state(self) -> SchedulerState:
        last = self.coordinator.last_outcome
        return SchedulerState(
            state="running" if self.coordinator.is_running else "idle",
            started=self.started,
            next_run_at=self.next_run_at(),
            tick_count=self.tick_count,
            last_outcome=last.status if last else None,
            last_error=self.last_error,
        )

    async def _tick(self) -> None:
        self.tick_count += 1
        # shielded so shutting the scheduler down does not cancel a live run
        self._inflight = asyncio.ensure_future(
            self.coordinator.attempt_run(triggered_by="scheduler")
        )
        try:
            outcome = await asyncio.shield(self._inflight)
            self.last_error = None
            log.info("scheduler.tick.done", status=outcome.status, run_id=outcome.run_id)
        except asyncio.CancelledError:
            log.info("scheduler.tick.detached")
            raise
        except Exception as exc:
            self.last_error = str(exc)
            log.error("scheduler.tick.failed", error=str(exc))


def start_scheduler(coordinator: RunCoordinator, cfg: Settings = settings) -> Optional[SyncScheduler]:
    """Process bootstrap entry point. Returns the handle to stop on shutdown."""
    if not cfg.SCHEDULER_ENABLED:
        log.info("scheduler.disabled", reason="SCHEDULER_ENABLED=false")
        return None
    if not cfg.billetweb_configured:
        log.warning("scheduler.disabled", reason="BILLETWEB_API_KEY not set")
        return None

    scheduler = SyncScheduler(coordinator)
    scheduler.start(cfg.SYNC_INTERVAL_SECONDS, cfg.SYNC_JITTER_SECONDS)
    return scheduler
