import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.exceptions import DataAccessError
from catalog_sync.models import CatalogItem
from catalog_sync.repositories.catalog import CatalogRepository
from catalog_sync.schemas import BilletwebEvent
from catalog_sync.services.reconciler import (
    Action, Reconciler, RunTally, decide, entity_type_for, map_event,
)
from fakes import RecordingSink, make_record


def _item(**kw) -> CatalogItem:
    defaults = dict(entity_type="stage", sync_status="synced", synced_content_hash="h1")
    defaults.update(kw)
    return CatalogItem(**defaults)


async def _run(db, records, sink=None, retire=True):
    tally = RunTally()
    reconciler = Reconciler(CatalogRepository(db), sink or RecordingSink(), tally)
    await reconciler.apply(records)
    if retire:
        await reconciler.retire_missing()
    return tally


# ── decide() ──────────────────────────────────────────────────────────────────

def test_decide_creates_when_absent():
    assert decide(make_record("A1", "h1"), None, "stage") is Action.CREATE


def test_decide_never_touches_manual_items():
    item = _item(sync_status="manual", synced_content_hash="old")
    assert decide(make_record("A1", "new"), item, "stage") is Action.SKIP_MANUAL
    assert decide(make_record("A1", "new"), item, "formation") is Action.SKIP_MANUAL


def test_decide_skips_unchanged_hash():
    assert decide(make_record("A1", "h1"), _item(), "stage") is Action.SKIP_UNCHANGED


def test_decide_updates_changed_hash():
    assert decide(make_record("A1", "h1b"), _item(), "stage") is Action.UPDATE


def test_decide_revives_stale_even_when_hash_matches():
    assert decide(make_record("A1", "h1"), _item(sync_status="stale"), "stage") is Action.REVIVE


def test_decide_flags_entity_type_mismatch():
    assert decide(make_record("A1", "h2"), _item(), "formation") is Action.CONFLICT
    assert decide(make_record("A1", "h2"), _item(sync_status="conflict"), "stage") is Action.SKIP_CONFLICT


# ── Mapping ───────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("category,expected", [
    ("Formation", "formation"),
    ("Stage d'été", "stage"),
    ("ANIMATIONS", "animation"),
    ("Concert", "stage"),
    (None, "stage"),
])
def test_entity_type_for(category, expected):
    event = BilletwebEvent(id="1", category=category, places_total=1, places_remaining=1)
    assert entity_type_for(event, "stage") == expected


def test_map_event_sets_full_flag_and_fallback_title():
    event = BilletwebEvent(id=42, name="  ", places_total=12, places_remaining=0)
    fields = map_event(event, "formation")
    assert fields["is_full"] is True
    assert fields["title"] == "Billetweb 42"
    assert fields["entity_type"] == "formation"
    assert fields["places_left"] == 0


# ── apply() against the store ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_run_creates_items(db, fetch_items):
    sink = RecordingSink()
    tally = await _run(db, [make_record("A1", "h1"), make_record("A2", "h2")], sink)

    assert (tally.created, tally.updated, tally.retired, tally.failed) == (2, 0, 0, 0)
    assert tally.status == "succeeded"
    assert sink.actions() == ["catalog_item.created", "catalog_item.created"]
    assert all(e.actor_id == "system:sync" for e in sink.entries)

    items = await fetch_items()
    assert set(items) == {"A1", "A2"}
    assert items["A1"].sync_status == "synced"
    assert items["A1"].synced_content_hash == "h1"
    assert items["A1"].last_synced_at is not None


@pytest.mark.asyncio
async def test_changed_hash_updates_only_that_item(db, fetch_items):
    await _run(db, [make_record("A1", "h1"), make_record("A2", "h2")])
    sink = RecordingSink()
    tally = await _run(
        db, [make_record("A1", "h1b", places_remaining=0), make_record("A2", "h2")], sink
    )

    assert (tally.created, tally.updated, tally.skipped) == (0, 1, 1)
    assert sink.actions() == ["catalog_item.updated"]
    assert sink.entries[0].metadata["previous_hash"] == "h1"

    items = await fetch_items()
    assert items["A1"].synced_content_hash == "h1b"
    assert items["A1"].is_full is True
    assert items["A2"].synced_content_hash == "h2"


@pytest.mark.asyncio
async def test_missing_record_is_retired(db, fetch_items):
    await _run(db, [make_record("A1", "h1"), make_record("A2", "h2")])
    sink = RecordingSink()
    tally = await _run(db, [make_record("A1", "h1")], sink)

    assert tally.retired == 1
    assert sink.actions() == ["catalog_item.retired"]
    items = await fetch_items()
    assert items["A2"].sync_status == "stale"
    assert items["A2"].retired_at is not None
    assert items["A1"].sync_status == "synced"
    assert items["A1"].retired_at is None


@pytest.mark.asyncio
async def test_second_run_on_unchanged_upstream_is_a_noop(db):
    records = [make_record("A1", "h1"), make_record("A2", "h2")]
    await _run(db, records)
    sink = RecordingSink()
    tally = await _run(db, records, sink)

    assert (tally.created, tally.updated, tally.retired, tally.failed) == (0, 0, 0, 0)
    assert tally.skipped == 2
    assert sink.entries == []


@pytest.mark.asyncio
async def test_manual_item_is_never_overwritten(db, fetch_items):
    repo = CatalogRepository(db)
    await repo.create({
        "entity_type": "stage", "title": "Edited by admin", "external_id": "A1",
        "places_total": 10, "places_left": 3, "sync_status": "manual",
        "synced_content_hash": "h1",
    })

    sink = RecordingSink()
    tally = await _run(db, [make_record("A1", "zzz", name="Upstream", places_remaining=0)], sink)

    assert tally.skipped == 1
    assert tally.updated == 0
    assert sink.entries == []
    item = (await fetch_items())["A1"]
    assert item.title == "Edited by admin"
    assert item.places_left == 3
    assert item.sync_status == "manual"


@pytest.mark.asyncio
async def test_manual_item_absent_upstream_is_not_retired(db, fetch_items):
    await CatalogRepository(db).create({
        "entity_type": "stage", "title": "Kept", "external_id": "M1", "sync_status": "manual",
    })
    tally = await _run(db, [])
    assert tally.retired == 0
    assert (await fetch_items())["M1"].sync_status == "manual"


@pytest.mark.asyncio
async def test_stale_item_reappearing_is_revived(db, fetch_items):
    await _run(db, [make_record("A1", "h1")])
    await _run(db, [])
    assert (await fetch_items())["A1"].sync_status == "stale"

    sink = RecordingSink()
    tally = await _run(db, [make_record("A1", "h1")], sink)

    assert tally.updated == 1
    assert sink.entries[0].metadata["revived"] is True
    item = (await fetch_items())["A1"]
    assert item.sync_status == "synced"
    assert item.retired_at is None


@pytest.mark.asyncio
async def test_category_change_flags_conflict_without_writing_data(db, fetch_items):
    await _run(db, [make_record("A1", category="stage")])
    sink = RecordingSink()
    tally = await _run(db, [make_record("A1", category="formation", name="Renamed")], sink)

    assert tally.updated == 0
    assert sink.actions() == ["catalog_item.sync_conflict"]
    item = (await fetch_items())["A1"]
    assert item.sync_status == "conflict"
    assert item.entity_type == "stage"
    assert item.title == "Stage A1"


@pytest.mark.asyncio
async def test_one_failing_write_does_not_stop_the_run(db, fetch_items, monkeypatch):
    original_create = CatalogRepository.create

    async def flaky_create(self, fields):
        if fields["external_id"] == "A1":
            raise DataAccessError("create failed: disk full", context={"external_id": "A1"})
        return await original_create(self, fields)

    monkeypatch.setattr(CatalogRepository, "create", flaky_create)
    tally = await _run(db, [make_record("A1"), make_record("A2"), make_record("A3")])

    assert tally.failed == 1
    assert tally.created == 2
    assert tally.status == "partial"
    assert [e.external_id for e in tally.errors] == ["A1"]
    assert set(await fetch_items()) == {"A2", "A3"}


@pytest.mark.asyncio
async def test_database_error_rolls_back_one_item_and_session_keeps_working(db, fetch_items, monkeypatch):
    await _run(db, [make_record("A1", "h1"), make_record("A2", "h2")])

    original_flush = AsyncSession.flush
    failures = []

    async def flaky_flush(self, objects=None):
        if not failures and any(getattr(o, "external_id", None) == "A1" for o in self.dirty):
            failures.append("A1")
            raise OperationalError("UPDATE catalog_items", {}, Exception("database is locked"))
        return await original_flush(self, objects)

    monkeypatch.setattr(AsyncSession, "flush", flaky_flush)
    tally = await _run(db, [make_record("A1", "h1b"), make_record("A2", "h2b"), make_record("A3", "h3")])

    assert failures == ["A1"]
    assert (tally.failed, tally.updated, tally.created) == (1, 1, 1)
    assert tally.errors[0].external_id == "A1"
    assert "update failed" in tally.errors[0].reason
    items = await fetch_items()
    assert items["A1"].synced_content_hash == "h1"
    assert items["A1"].sync_status == "synced"
    assert items["A2"].synced_content_hash == "h2b"
    assert items["A3"].synced_content_hash == "h3"


@pytest.mark.asyncio
async def test_invalid_payload_fails_item_but_keeps_it_alive(db, fetch_items):
    await _run(db, [make_record("A1", "h1"), make_record("A2", "h2")])
    broken = make_record("A2", "h2x", places_total=-5)
    tally = await _run(db, [make_record("A1", "h1"), broken])

    assert tally.failed == 1
    assert tally.retired == 0
    assert "places_total" in tally.errors[0].reason
    assert (await fetch_items())["A2"].sync_status == "synced"


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_the_item(db, fetch_items):
    tally = await _run(db, [make_record("A1")], sink=RecordingSink(fail=True))
    assert tally.created == 1
    assert tally.failed == 0
    assert "A1" in await fetch_items()
