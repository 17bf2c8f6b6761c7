from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.revmgr.db import db_session
from app.revmgr.models import User
from app.revmgr.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

_PUBLIC_PREFIXES = ("/health", "/healthz")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(_PUBLIC_PREFIXES):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    try:
        user = db_session().get(User, int(user_id))
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


def _credentials() -> tuple[str, str]:
    data = request.get_json(silent=True) if request.is_json else None
    if isinstance(data, dict):
        return (str(data.get("email") or "").strip().lower(), str(data.get("password") or ""))
    return ((request.form.get("email") or "").strip().lower(), request.form.get("password") or "")


@bp.post("/login")
def login():
    email, password = _credentials()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"ok": False, "error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    s = db_session()
    user = s.scalars(select(User).where(User.email == email)).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        current_app.logger.info("Login failed email=%s ip=%s request_id=%s", email, ip, g.request_id)
        return jsonify({"ok": False, "error": "invalid_credentials", "message": "Invalid credentials."}), 401

    session.clear()
    session["user_id"] = user.id
    _login_attempts[ip].clear()
    current_app.logger.info("Login user_id=%s request_id=%s", user.id, g.request_id)
    return jsonify(
        {
            "ok": True,
            "user": {"id": user.id, "email": user.email, "name": user.name},
            "csrf_token": ensure_csrf_token(),
        }
    )


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        current_app.logger.info("Logout user_id=%s request_id=%s", user.id, g.request_id)
    session.clear()
    return jsonify({"ok": True})
