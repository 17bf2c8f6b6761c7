from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.revmgr.models import Base


class WorkflowState(Base):
    """
    Per-document workflow metadata.

    `current_version_id` has no foreign key: pointers to deleted or foreign
    versions stay representable and the read path clears them.
    """

    __tablename__ = "document_workflow_states"

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)

    # open | pending
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    current_version_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # open | pending | locked (deprecated; only meaningful in pending mode)
    legacy_status: Mapped[str | None] = mapped_column(String(16), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": lock_version}


class WorkflowAuditEntry(Base):
    """Mode change record; at most AUDIT_LOG_LIMIT rows are kept per document."""

    __tablename__ = "workflow_audit_entries"
    __table_args__ = (
        Index("idx_workflow_audit_doc_created", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String(320), nullable=True)

    previous_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    new_mode: Mapped[str] = mapped_column(String(16), nullable=False)

    actor_origin: Mapped[str | None] = mapped_column(String(64), nullable=True)  # client address, best-effort


class TimelineCacheEntry(Base):
    """Backing table for the database cache backend; one row per (document, slice)."""

    __tablename__ = "timeline_cache_entries"

    document_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. "timeline:6", "status"

    # ISO-8601 text so that unparsable values can be detected and discarded.
    computed_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
