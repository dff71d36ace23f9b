from sqlalchemy import (
    Boolean, Column, Integer, String, JSON,
    DateTime, Index, func,
)
from catalog_sync.database import Base


SYNC_STATUSES = ("synced", "stale", "conflict", "manual")
ENTITY_TYPES = ("animation", "formation", "stage")


class CatalogItem(Base):
    """An Animation, Formation or Stage as shown on the public site."""
    __tablename__ = "catalog_items"
    __mapper_args__ = {"eager_defaults": True}

    id                  = Column(Integer, primary_key=True)
    entity_type         = Column(String(20), nullable=False)
    title               = Column(String(255), nullable=False)
    starts_at           = Column(DateTime(timezone=True), nullable=True)
    ends_at             = Column(DateTime(timezone=True), nullable=True)
    places_total        = Column(Integer, nullable=True)
    places_left         = Column(Integer, nullable=True)
    is_full             = Column(Boolean, nullable=False, default=False)
    external_id         = Column(String(100), nullable=True)   # Billetweb event id
    synced_content_hash = Column(String(64), nullable=True)
    last_synced_at      = Column(DateTime(timezone=True), nullable=True)
    sync_status         = Column(String(20), nullable=False, default="manual")
    retired_at          = Column(DateTime(timezone=True), nullable=True)
    created_at          = Column(DateTime(timezone=True), server_default=func.now())
    updated_at          = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_catalog_external_id", "external_id", unique=True),
        Index("ix_catalog_sync_status", "sync_status"),
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id              = Column(Integer, primary_key=True)
    triggered_by    = Column(String(50), nullable=False, default="scheduler")  # scheduler | manual
    status          = Column(String(20), nullable=False, default="running")
    started_at      = Column(DateTime(timezone=True), nullable=False)
    finished_at     = Column(DateTime(timezone=True), nullable=True)
    items_fetched   = Column(Integer, nullable=False, default=0)
    items_created   = Column(Integer, nullable=False, default=0)
    items_updated   = Column(Integer, nullable=False, default=0)
    items_retired   = Column(Integer, nullable=False, default=0)
    items_skipped   = Column(Integer, nullable=False, default=0)
    items_failed    = Column(Integer, nullable=False, default=0)
    error_summary   = Column(JSON, nullable=False, default=list)  # [{external_id, reason}]
    duration_ms     = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_run_started", "started_at"),
        Index("ix_run_status", "status"),
    )


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id          = Column(Integer, primary_key=True)
    action      = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id   = Column(String(100), nullable=False)
    actor_id    = Column(String(50), nullable=False, default="system:sync")
    timestamp   = Column(DateTime(timezone=True), nullable=False)
    details     = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_timestamp", "timestamp"),
    )
