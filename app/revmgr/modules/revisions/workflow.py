"""
Per-document workflow metadata: mode, current pointer, legacy status and
the bounded mode-change audit log.
"""
from __future__ import annotations

from enum import Enum

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.revmgr.audit import AuditEntry
from app.revmgr.errors import ValidationError

from .models import WorkflowAuditEntry, WorkflowState

AUDIT_LOG_LIMIT = 10


class WorkflowMode(str, Enum):
    OPEN = "open"
    PENDING = "pending"


class LegacyStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    LOCKED = "locked"


def parse_mode(raw: object) -> WorkflowMode:
    if isinstance(raw, WorkflowMode):
        return raw
    value = raw.strip().lower() if isinstance(raw, str) else raw
    try:
        return WorkflowMode(value)
    except ValueError:
        raise ValidationError(
            f"Invalid mode: {raw!r}.",
            field="mode",
            allowed=[m.value for m in WorkflowMode],
        ) from None


def parse_legacy_status(raw: object) -> LegacyStatus:
    if isinstance(raw, LegacyStatus):
        return raw
    value = raw.strip().lower() if isinstance(raw, str) else raw
    try:
        return LegacyStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {raw!r}.",
            field="status",
            allowed=[st.value for st in LegacyStatus],
        ) from None


class WorkflowMetadataStore:
    def __init__(self, *, default_mode: WorkflowMode | str = WorkflowMode.OPEN) -> None:
        self.default_mode = parse_mode(default_mode)

    def get(self, s: Session, document_id: int) -> WorkflowState:
        """
        Stored state, or an unsaved default. Never adds anything to the session.
        """
        state = s.get(WorkflowState, document_id)
        if state is not None:
            return state
        return WorkflowState(
            document_id=document_id,
            mode=self.default_mode.value,
            current_version_id=None,
            legacy_status=None,
        )

    def _ensure(self, s: Session, document_id: int) -> WorkflowState:
        state = s.get(WorkflowState, document_id)
        if state is None:
            state = self.get(s, document_id)
            s.add(state)
        return state

    def set_mode(self, s: Session, document_id: int, mode: WorkflowMode) -> WorkflowState:
        state = self._ensure(s, document_id)
        state.mode = mode.value
        return state

    def set_pointer(self, s: Session, document_id: int, version_id: int) -> WorkflowState:
        state = self._ensure(s, document_id)
        state.current_version_id = version_id
        return state

    def clear_pointer(self, s: Session, document_id: int) -> WorkflowState:
        state = self._ensure(s, document_id)
        state.current_version_id = None
        return state

    def set_status(self, s: Session, document_id: int, status: LegacyStatus) -> WorkflowState:
        state = self._ensure(s, document_id)
        state.legacy_status = status.value
        return state

    def clear_status(self, s: Session, document_id: int) -> WorkflowState:
        state = self._ensure(s, document_id)
        state.legacy_status = None
        return state

    def append_audit_entry(self, s: Session, document_id: int, entry: AuditEntry) -> WorkflowAuditEntry:
        row = WorkflowAuditEntry(
            document_id=document_id,
            created_at=entry.timestamp,
            actor_user_id=entry.actor_id,
            actor_name=entry.actor_name,
            previous_mode=entry.previous_mode,
            new_mode=entry.new_mode,
            actor_origin=entry.actor_origin,
        )
        s.add(row)
        s.flush()

        # Keep the newest AUDIT_LOG_LIMIT rows; id breaks timestamp ties.
        keep = (
            select(WorkflowAuditEntry.id)
            .where(WorkflowAuditEntry.document_id == document_id)
            .order_by(WorkflowAuditEntry.created_at.desc(), WorkflowAuditEntry.id.desc())
            .limit(AUDIT_LOG_LIMIT)
        )
        keep_ids = list(s.scalars(keep).all())
        s.execute(
            delete(WorkflowAuditEntry)
            .where(WorkflowAuditEntry.document_id == document_id)
            .where(WorkflowAuditEntry.id.not_in(keep_ids))
            .execution_options(synchronize_session=False)
        )
        return row

    def audit_log(self, s: Session, document_id: int) -> list[WorkflowAuditEntry]:
        """Chronological (oldest first)."""
        q = (
            select(WorkflowAuditEntry)
            .where(WorkflowAuditEntry.document_id == document_id)
            .order_by(WorkflowAuditEntry.created_at.asc(), WorkflowAuditEntry.id.asc())
        )
        return list(s.scalars(q).all())
