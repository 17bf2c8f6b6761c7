from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.revmgr.db import db_session
from app.revmgr.errors import NotFoundError, ValidationError
from app.revmgr.rbac import require_permission
from app.revmgr.utils import isoformat

from .store import create_document, load_document

bp = Blueprint("documents", __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _text(data: dict, field: str, default: str = "") -> str:
    value = data.get(field, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.", field=field)
    return value


@bp.post("")
@require_permission("documents.edit")
def create():
    s = db_session()
    data = _json_body()
    d = create_document(
        s,
        title=_text(data, "title"),
        body=_text(data, "body"),
        excerpt=_text(data, "excerpt"),
        author=g.current_user,
    )
    s.commit()
    return jsonify({"ok": True, "document_id": d.id, "modified_at": isoformat(d.modified_at)}), 201


@bp.put("/<int:document_id>")
@require_permission("documents.edit")
def update(document_id: int):
    s = db_session()
    data = _json_body()
    engine = current_app.extensions["revision_engine"]
    d = load_document(s, document_id)
    if d is None:
        raise NotFoundError("Document not found.", document_id=document_id)
    title = _text(data, "title", d.title).strip()
    if not title:
        raise ValidationError("title is required.", field="title")
    engine.versions.update_document_content(
        s,
        document_id,
        title=title,
        body=_text(data, "body", d.body),
        excerpt=_text(data, "excerpt", d.excerpt),
        author=g.current_user,
    )
    s.commit()
    return jsonify({"ok": True, "document_id": document_id, "modified_at": isoformat(d.modified_at)})


@bp.delete("/versions/<int:version_id>")
@require_permission("documents.edit")
def delete_version(version_id: int):
    s = db_session()
    engine = current_app.extensions["revision_engine"]
    document_id = engine.versions.delete_version(s, version_id)
    s.commit()
    return jsonify({"ok": True, "document_id": document_id, "version_id": version_id})


@bp.get("/<int:document_id>")
def read(document_id: int):
    """Reader view: the content the workflow currently publishes."""
    s = db_session()
    return jsonify(current_app.extensions["revision_engine"].served_content(s, document_id))
