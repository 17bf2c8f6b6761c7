"""
Error taxonomy for the revision workflow.

Service code raises these; `register_error_handlers` turns them into JSON
responses for the HTTP layer. `StaleReference` is internal: the engine
recovers from it (clears the pointer) and it never reaches a client.
"""
from __future__ import annotations

from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException


class RevisionError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message, "context": self.context}


class NotFoundError(RevisionError):
    status_code = 404
    code = "not_found"


class ValidationError(RevisionError):
    status_code = 400
    code = "validation_error"


class ConflictError(RevisionError):
    status_code = 409
    code = "conflict"


class UpstreamWriteFailure(RevisionError):
    status_code = 500
    code = "upstream_write_failure"


class StaleReference(RevisionError):
    status_code = 409
    code = "stale_reference"


def _rollback_request_session() -> None:
    s = getattr(g, "db_session", None)
    if s is not None:
        s.rollback()


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(RevisionError)
    def _revision_error(e: RevisionError):  # type: ignore[no-redef]
        _rollback_request_session()
        if e.status_code >= 500:
            app.logger.error(
                "%s: %s context=%s request_id=%s",
                e.code,
                e.message,
                e.context,
                getattr(g, "request_id", None),
                exc_info=e.__cause__ or e,
            )
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        body: dict[str, Any] = {
            "ok": False,
            "error": (e.name or "error").lower().replace(" ", "_"),
            "message": e.description,
            "context": {},
        }
        missing = getattr(g, "missing_permission", None)
        if e.code == 403 and missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
            body["context"]["missing_permission"] = missing
        return jsonify(body), e.code or 500

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):  # type: ignore[no-redef]
        _rollback_request_session()
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"ok": False, "error": "internal_error", "message": "Internal server error.", "context": {}}), 500
