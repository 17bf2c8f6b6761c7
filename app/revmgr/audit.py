from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import has_request_context, request

from app.revmgr.models import User


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    actor_id: int | None
    actor_name: str | None
    previous_mode: str
    new_mode: str
    actor_origin: str | None = None


def request_origin() -> str | None:
    """Client address of the current request, if there is one."""
    if not has_request_context():
        return None
    return request.remote_addr or None


def build_mode_audit_entry(
    *,
    actor: User | None,
    previous_mode: str,
    new_mode: str,
    origin: str | None = None,
    timestamp: datetime | None = None,
) -> AuditEntry:
    """
    Audit record for a mode change. Origin defaults to the request's client address.
    """
    return AuditEntry(
        timestamp=timestamp or datetime.utcnow(),
        actor_id=actor.id if actor else None,
        actor_name=actor.name if actor else None,
        previous_mode=previous_mode,
        new_mode=new_mode,
        actor_origin=origin if origin is not None else request_origin(),
    )
