from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.exceptions import DataAccessError
from catalog_sync.models import CatalogItem, SYNC_STATUSES


class CatalogRepository:
    """
    Data-access layer for catalog items.

    Every write commits on its own so each call is atomic. Any database
    failure is rolled back and surfaced as DataAccessError, which leaves the
    session usable for the next call.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _guard(self, operation: str, **context: Any):
        try:
            yield
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise DataAccessError(f"{operation} failed: {exc}", context=context) from exc

    async def _require(self, item_id: int) -> CatalogItem:
        row = await self.db.get(CatalogItem, item_id)
        if row is None:
            raise DataAccessError(f"Catalog item {item_id} does not exist", context={"id": item_id})
        return row

    async def get(self, item_id: int) -> Optional[CatalogItem]:
        try:
            return await self.db.get(CatalogItem, item_id)
        except SQLAlchemyError as exc:
            raise DataAccessError(f"get failed: {exc}", context={"id": item_id}) from exc

    async def find_by_external_id(self, external_id: str) -> Optional[CatalogItem]:
        try:
            rows = await self.db.execute(
                select(CatalogItem).where(CatalogItem.external_id == external_id)
            )
            return rows.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise DataAccessError(
                f"lookup failed: {exc}", context={"external_id": external_id}
            ) from exc

    async def synced_external_ids(self) -> Dict[str, int]:
        """Maps external_id -> id for every item currently in `synced` state."""
        try:
            rows = await self.db.execute(
                select(CatalogItem.external_id, CatalogItem.id).where(
                    CatalogItem.sync_status == "synced",
                    CatalogItem.external_id.is_not(None),
                )
            )
            return {ext: item_id for ext, item_id in rows.all()}
        except SQLAlchemyError as exc:
            raise DataAccessError(f"synced id scan failed: {exc}") from exc

    async def create(self, fields: Dict[str, Any]) -> CatalogItem:
        row = CatalogItem(**fields)
        async with self._guard("create", external_id=fields.get("external_id")):
            self.db.add(row)
            await self.db.flush()
        return row

    async def update(self, item_id: int, fields: Dict[str, Any]) -> CatalogItem:
        async with self._guard("update", id=item_id):
            row = await self._require(item_id)
            for key, value in fields.items():
                setattr(row, key, value)
            await self.db.flush()
        return row

    async def mark_stale(self, item_id: int, retired_at: datetime) -> CatalogItem:
        async with self._guard("mark_stale", id=item_id):
            row = await self._require(item_id)
            row.sync_status = "stale"
            row.retired_at = retired_at
            await self.db.flush()
        return row

    async def set_sync_status(self, item_id: int, status: str) -> CatalogItem:
        if status not in SYNC_STATUSES:
            raise ValueError(f"sync_status must be one of {SYNC_STATUSES}")
        async with self._guard("set_sync_status", id=item_id, status=status):
            row = await self._require(item_id)
            row.sync_status = status
            await self.db.flush()
        return row
