from __future__ import annotations
from typing import Optional

from fastapi import Request

from catalog_sync.exceptions import ServiceUnavailableError
from catalog_sync.schemas import SchedulerState
from catalog_sync.services.coordinator import RunCoordinator
from catalog_sync.services.scheduler import SyncScheduler


def get_coordinator(request: Request) -> RunCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise ServiceUnavailableError("Sync engine not initialized")
    return coordinator


def get_scheduler(request: Request) -> Optional[SyncScheduler]:
    return getattr(request.app.state, "scheduler", None)


def scheduler_state(coordinator: RunCoordinator, scheduler: Optional[SyncScheduler]) -> SchedulerState:
    if scheduler is not None:
        return scheduler.state()
    # scheduler disabled: manual runs still go through the coordinator
    last = coordinator.last_outcome
    return SchedulerState(
        state="running" if coordinator.is_running else "idle",
        started=False,
        last_outcome=last.status if last else None,
    )
