"""SQLAlchemy ORM models backing the document store.

Each collection is its own table holding the document as JSONB plus a
version counter. Fields the pipeline filters on (flyer of an item, run
status) are copied into indexed columns on write.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class _DocumentMixin:
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class FlyerRow(_DocumentMixin, Base):
    __tablename__ = "flyers"


class FlyerItemRow(_DocumentMixin, Base):
    __tablename__ = "flyer_items"
    __table_args__ = (Index("idx_flyer_items_flyer", "parent_flyer_id"),)

    parent_flyer_id: Mapped[str | None] = mapped_column(
        ForeignKey("flyers.id", ondelete="CASCADE"), nullable=True
    )


class CatalogEntryRow(_DocumentMixin, Base):
    __tablename__ = "catalog_entries"


class ApprovalRuleRow(_DocumentMixin, Base):
    __tablename__ = "auto_approval_rules"


class WorkflowRunRow(_DocumentMixin, Base):
    __tablename__ = "workflow_runs"
    __table_args__ = (Index("idx_workflow_runs_status", "status"),)

    status: Mapped[str | None] = mapped_column(String(20), nullable=True)


class StepRecordRow(_DocumentMixin, Base):
    __tablename__ = "step_records"
    __table_args__ = (Index("idx_step_records_run", "run_id"),)

    run_id: Mapped[str | None] = mapped_column(
        ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=True
    )


ROW_MODELS: dict[str, type[_DocumentMixin]] = {
    "flyers": FlyerRow,
    "flyer_items": FlyerItemRow,
    "catalog_entries": CatalogEntryRow,
    "auto_approval_rules": ApprovalRuleRow,
    "workflow_runs": WorkflowRunRow,
    "step_records": StepRecordRow,
}

# document field -> indexed column, per table
INDEXED_FIELDS: dict[str, dict[str, str]] = {
    "flyer_items": {"parent_flyer_id": "parent_flyer_id"},
    "workflow_runs": {"status": "status"},
    "step_records": {"run_id": "run_id"},
}
