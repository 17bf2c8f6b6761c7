import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, jsonify, request, session

from app.revmgr.config import load_config
from app.revmgr.db import init_db, teardown_db_session
from app.revmgr.errors import register_error_handlers
from app.revmgr.routes import bp as routes_bp
from app.revmgr.auth import bp as auth_bp, load_current_user
from app.revmgr.modules.documents.admin import bp as documents_bp
from app.revmgr.modules.revisions.admin import bp as revisions_bp
from app.revmgr.modules.revisions.cache import cache_from_config
from app.revmgr.modules.revisions.service import engine_from_config
from app.revmgr.security import ensure_csrf_token, validate_csrf

_UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.logger.setLevel(app.config["LOG_LEVEL"])
    logging.getLogger("app.revmgr").setLevel(app.config["LOG_LEVEL"])

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # One engine per process; handlers reach it through app.extensions.
    sm = app.extensions["sqlalchemy_sessionmaker"]
    cache = cache_from_config(app.config, sm)
    cache.subscribe(sm)
    app.extensions["timeline_cache"] = cache
    app.extensions["revision_engine"] = engine_from_config(app.config, cache)
    app.logger.info(
        "Revision engine ready (cache_backend=%s ttl=%ss timeline_limit=%s default_mode=%s)",
        app.config["CACHE_BACKEND"],
        app.config["CACHE_TTL_SECONDS"],
        app.config["TIMELINE_LIMIT"],
        app.config["DEFAULT_MODE"],
    )

    app.before_request(load_current_user)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        session.permanent = True
        if request.method in _UNSAFE_METHODS:
            # Login/logout establish or drop the session that carries the token.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"ok": False, "error": "csrf_failed", "message": "CSRF token missing or invalid.", "context": {}}), 400
        else:
            ensure_csrf_token()
        return None

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")
    app.register_blueprint(revisions_bp, url_prefix="/api/revisions")

    register_error_handlers(app)
    app.teardown_appcontext(teardown_db_session)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
