from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.revmgr.db import db_session
from app.revmgr.errors import NotFoundError, ValidationError
from app.revmgr.rbac import require_permission

from .service import RevisionEngine

bp = Blueprint("revisions", __name__)


def _engine() -> RevisionEngine:
    return current_app.extensions["revision_engine"]


def _payload() -> dict[str, Any]:
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body is not valid JSON.")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data
    return request.form.to_dict()


def _required(data: dict[str, Any], field: str) -> Any:
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required.", field=field)
    return value


@bp.get("/<int:document_id>")
@require_permission("revisions.view")
def get_timeline(document_id: int):
    s = db_session()
    data = _engine().get_timeline(s, document_id, limit=request.args.get("limit"))
    # Reads may select or clear the pointer.
    s.commit()
    return jsonify(data)


@bp.post("/<int:version_id>/set-current")
@require_permission("revisions.set_current")
def set_current(version_id: int):
    s = db_session()
    engine = _engine()
    data = _payload()

    version = engine.versions.get_version(s, version_id)
    if version is None:
        raise NotFoundError("Version not found.", version_id=version_id)

    document_id = version.document_id
    raw_doc = data.get("document_id")
    if raw_doc not in (None, ""):
        try:
            document_id = int(raw_doc)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid document_id: {raw_doc!r}.", field="document_id") from None

    result = engine.set_current(s, document_id, version_id, actor=g.current_user)
    s.commit()
    return jsonify({"ok": True, "message": "Version set as current.", **result})


@bp.get("/<int:document_id>/status")
@require_permission("revisions.view")
def get_status(document_id: int):
    s = db_session()
    return jsonify(_engine().get_status(s, document_id))


@bp.put("/<int:document_id>/status")
@require_permission("revisions.status")
def update_status(document_id: int):
    s = db_session()
    status = _required(_payload(), "status")
    result = _engine().set_legacy_status(s, document_id, status)
    s.commit()
    return jsonify({"ok": True, "message": "Status updated.", **result})


@bp.put("/<int:document_id>/mode")
@require_permission("revisions.mode")
def update_mode(document_id: int):
    s = db_session()
    mode = _required(_payload(), "mode")
    result = _engine().set_mode(s, document_id, mode, actor=g.current_user, origin=request.remote_addr)
    s.commit()
    return jsonify({"ok": True, **result})


@bp.get("/<int:document_id>/audit")
@require_permission("revisions.view")
def audit_log(document_id: int):
    s = db_session()
    return jsonify({"document_id": document_id, "entries": _engine().audit_log(s, document_id)})
