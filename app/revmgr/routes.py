from flask import Blueprint, jsonify
from sqlalchemy import text

from app.revmgr.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including database reachability."""
    s = db_session()
    s.execute(text("SELECT 1"))
    return jsonify({"ok": True})


@bp.get("/healthz")
def healthz():
    """
    Fast liveness check. No DB access, minimal overhead.
    """
    return "ok", 200
