"""
Revision workflow service.

`RevisionEngine` is built once per application (see `create_app`) and
handed to request handlers through `app.extensions`. Every method takes the
caller's session; the caller commits.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.revmgr.audit import build_mode_audit_entry
from app.revmgr.config import MAX_TIMELINE_LIMIT
from app.revmgr.errors import (
    ConflictError,
    NotFoundError,
    StaleReference,
    UpstreamWriteFailure,
    ValidationError,
)
from app.revmgr.modules.documents.models import Document
from app.revmgr.modules.documents.store import Version, VersionStore, load_document
from app.revmgr.utils import isoformat, trim_words

from .cache import CONTENT_KEY, STATUS_KEY, TimelineCache, timeline_key
from .status import DEFAULT_EXCERPT_WORDS, Classification, classify
from .workflow import (
    LegacyStatus,
    WorkflowMetadataStore,
    WorkflowMode,
    parse_legacy_status,
    parse_mode,
)

if TYPE_CHECKING:
    from app.revmgr.models import User

logger = logging.getLogger(__name__)

DEFAULT_TIMELINE_LIMIT = 6
SERVED_EXCERPT_WORDS = 55


def _flush(s: Session, document_id: int) -> None:
    try:
        s.flush()
    except (StaleDataError, IntegrityError) as e:
        raise ConflictError(
            "Workflow state was changed by another request; reload and retry.",
            document_id=document_id,
        ) from e


class RevisionEngine:
    def __init__(
        self,
        *,
        versions: VersionStore,
        workflow: WorkflowMetadataStore,
        cache: TimelineCache,
        timeline_limit: int = DEFAULT_TIMELINE_LIMIT,
        excerpt_words: int = DEFAULT_EXCERPT_WORDS,
    ) -> None:
        self.versions = versions
        self.workflow = workflow
        self.cache = cache
        self.timeline_limit = timeline_limit
        self.excerpt_words = excerpt_words

    # -- helpers -----------------------------------------------------------

    def _document_or_404(self, s: Session, document_id: int) -> Document:
        d = load_document(s, document_id)
        if d is None:
            raise NotFoundError("Document not found.", document_id=document_id)
        return d

    def _resolve_limit(self, limit: object) -> int:
        if limit is None:
            return self.timeline_limit
        try:
            value = int(limit)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid limit: {limit!r}.", field="limit") from None
        if value < 1:
            raise ValidationError("limit must be at least 1.", field="limit")
        if value > MAX_TIMELINE_LIMIT:
            raise ValidationError(
                f"limit must be at most {MAX_TIMELINE_LIMIT}.",
                field="limit",
                maximum=MAX_TIMELINE_LIMIT,
            )
        return value

    def _resolve_pointer(self, s: Session, document_id: int, version_id: int) -> Version:
        """The pointed-to version, or StaleReference when it is gone or belongs elsewhere."""
        v = self.versions.get_version(s, version_id)
        if v is None or v.document_id != document_id:
            raise StaleReference(
                "Current version pointer does not resolve to a version of this document.",
                document_id=document_id,
                version_id=version_id,
            )
        return v

    # -- read path ---------------------------------------------------------

    def get_timeline(self, s: Session, document_id: int, *, limit: object = None) -> dict[str, Any]:
        limit = self._resolve_limit(limit)
        started = self.cache.now()
        document = self._document_or_404(s, document_id)
        state = self.workflow.get(s, document_id)

        if state.mode == WorkflowMode.OPEN.value:
            return {
                "document_id": document_id,
                "mode": WorkflowMode.OPEN.value,
                "legacy_status": None,
                "current_version_id": None,
                "timeline": [],
                "total_count": 0,
            }

        key = timeline_key(limit)
        cached = self.cache.get(document_id, modified_at=document.modified_at, key=key)
        if cached is not None:
            return cached

        versions = self.versions.list_versions(s, document_id, limit=limit)
        result = classify(versions, state.current_version_id, excerpt_words=self.excerpt_words)
        pointer_written = False

        if result.stale and state.current_version_id is not None:
            try:
                anchor = self._resolve_pointer(s, document_id, state.current_version_id)
            except StaleReference as e:
                logger.warning("%s (document_id=%s version_id=%s); clearing pointer", e.message, document_id, state.current_version_id)
                self.workflow.clear_pointer(s, document_id)
                pointer_written = True
            else:
                # Pointer is valid but older than the requested window.
                result = classify(versions, anchor.id, anchor=anchor, excerpt_words=self.excerpt_words)
        elif result.selected:
            self.workflow.set_pointer(s, document_id, result.current_version_id)  # type: ignore[arg-type]
            logger.info("Selected most recent version as current (document_id=%s version_id=%s)", document_id, result.current_version_id)
            pointer_written = True

        if pointer_written:
            _flush(s, document_id)

        payload = {
            "document_id": document_id,
            "mode": state.mode,
            "legacy_status": state.legacy_status,
            "current_version_id": self.workflow.get(s, document_id).current_version_id,
            "timeline": [e.to_dict() for e in result.entries],
            "total_count": len(result.entries),
        }
        # A pointer write invalidates this document on commit; cache on the next read.
        if not pointer_written:
            self.cache.put(document_id, payload, key=key, computed_at=started)
        return payload

    def get_status(self, s: Session, document_id: int) -> dict[str, Any]:
        started = self.cache.now()
        document = self._document_or_404(s, document_id)
        cached = self.cache.get(document_id, modified_at=document.modified_at, key=STATUS_KEY)
        if cached is not None:
            return cached
        state = self.workflow.get(s, document_id)
        payload = {
            "document_id": document_id,
            "mode": state.mode,
            "legacy_status": state.legacy_status,
            "current_version_id": state.current_version_id,
        }
        self.cache.put(document_id, payload, key=STATUS_KEY, computed_at=started)
        return payload

    def served_content(self, s: Session, document_id: int) -> dict[str, Any]:
        """
        What readers see: the current version's content in pending mode,
        the live document otherwise (or when the pointer does not resolve).
        """
        started = self.cache.now()
        document = self._document_or_404(s, document_id)
        cached = self.cache.get(document_id, modified_at=document.modified_at, key=CONTENT_KEY)
        if cached is not None:
            return cached

        state = self.workflow.get(s, document_id)
        source: Version | None = None
        if state.mode == WorkflowMode.PENDING.value and state.current_version_id is not None:
            try:
                source = self._resolve_pointer(s, document_id, state.current_version_id)
            except StaleReference:
                logger.warning(
                    "Serving live content; pointer does not resolve (document_id=%s version_id=%s)",
                    document_id,
                    state.current_version_id,
                )

        if source is not None:
            payload = {
                "document_id": document_id,
                "version_id": source.id,
                "title": source.title,
                "body": source.body,
                "excerpt": source.excerpt or trim_words(source.body, SERVED_EXCERPT_WORDS),
                "modified_at": isoformat(source.timestamp),
            }
        else:
            payload = {
                "document_id": document_id,
                "version_id": None,
                "title": document.title,
                "body": document.body,
                "excerpt": document.excerpt or trim_words(document.body, SERVED_EXCERPT_WORDS),
                "modified_at": isoformat(document.modified_at),
            }
        self.cache.put(document_id, payload, key=CONTENT_KEY, computed_at=started)
        return payload

    def audit_log(self, s: Session, document_id: int) -> list[dict[str, Any]]:
        self._document_or_404(s, document_id)
        return [
            {
                "timestamp": isoformat(row.created_at),
                "actor_id": row.actor_user_id,
                "actor_name": row.actor_name,
                "previous_mode": row.previous_mode,
                "new_mode": row.new_mode,
                "actor_origin": row.actor_origin,
            }
            for row in self.workflow.audit_log(s, document_id)
        ]

    # -- write path --------------------------------------------------------

    def set_mode(
        self,
        s: Session,
        document_id: int,
        mode: object,
        *,
        actor: User | None = None,
        origin: str | None = None,
    ) -> dict[str, Any]:
        new_mode = parse_mode(mode)
        self._document_or_404(s, document_id)
        previous = WorkflowMode(self.workflow.get(s, document_id).mode)

        if previous is new_mode:
            return {"document_id": document_id, "mode": new_mode.value, "changed": False}

        self.workflow.set_mode(s, document_id, new_mode)
        if new_mode is WorkflowMode.OPEN:
            self.workflow.clear_pointer(s, document_id)
            self.workflow.clear_status(s, document_id)
        _flush(s, document_id)

        entry = build_mode_audit_entry(
            actor=actor,
            previous_mode=previous.value,
            new_mode=new_mode.value,
            origin=origin,
        )
        self.workflow.append_audit_entry(s, document_id, entry)
        self.cache.invalidate(document_id)
        logger.info(
            "Mode changed document_id=%s %s -> %s actor_id=%s",
            document_id,
            previous.value,
            new_mode.value,
            entry.actor_id,
        )
        return {"document_id": document_id, "mode": new_mode.value, "changed": True, "previous_mode": previous.value}

    def set_legacy_status(self, s: Session, document_id: int, status: object) -> dict[str, Any]:
        new_status = parse_legacy_status(status)
        self._document_or_404(s, document_id)
        state = self.workflow.get(s, document_id)

        if new_status is LegacyStatus.OPEN:
            self.workflow.clear_status(s, document_id)
        elif state.mode != WorkflowMode.PENDING.value:
            raise ValidationError(
                f"Status {new_status.value!r} requires pending mode.",
                document_id=document_id,
                mode=state.mode,
            )
        else:
            self.workflow.set_status(s, document_id, new_status)
        _flush(s, document_id)
        self.cache.invalidate(document_id)
        return {"document_id": document_id, "status": new_status.value}

    def set_current(
        self,
        s: Session,
        document_id: int,
        version_id: int,
        *,
        actor: User | None = None,
    ) -> dict[str, Any]:
        """
        Make `version_id` the document's current version.

        The live document takes the version's title/body/excerpt without
        producing a new version. If that write fails the pointer is left
        untouched.
        """
        version = self.versions.get_version(s, version_id)
        if version is None:
            raise NotFoundError("Version not found.", version_id=version_id)
        self._document_or_404(s, document_id)
        if version.document_id != document_id:
            raise ValidationError(
                "Version does not belong to this document.",
                document_id=document_id,
                version_id=version_id,
            )
        state = self.workflow.get(s, document_id)
        if state.mode != WorkflowMode.PENDING.value:
            raise ValidationError(
                "Document is in open mode; switch to pending before choosing a current version.",
                document_id=document_id,
                mode=state.mode,
            )

        try:
            with self.versions.suppress_autoversion(s), s.begin_nested():
                self.versions.update_document_content(
                    s,
                    document_id,
                    title=version.title,
                    body=version.body,
                    excerpt=version.excerpt,
                    author=actor,
                )
        except SQLAlchemyError as e:
            raise UpstreamWriteFailure("Cannot update document with version content.", document_id=document_id) from e

        self.workflow.set_pointer(s, document_id, version_id)
        _flush(s, document_id)

        result: Classification = classify(
            self.versions.list_versions(s, document_id),
            version_id,
            excerpt_words=self.excerpt_words,
        )
        self.cache.invalidate(document_id)
        logger.info("Current version set document_id=%s version_id=%s", document_id, version_id)
        return {
            "document_id": document_id,
            "version_id": version_id,
            "statuses": {str(k): v for k, v in result.statuses().items()},
        }


def engine_from_config(config: dict, cache: TimelineCache) -> RevisionEngine:
    return RevisionEngine(
        versions=VersionStore(),
        workflow=WorkflowMetadataStore(default_mode=config.get("DEFAULT_MODE") or WorkflowMode.OPEN),
        cache=cache,
        timeline_limit=int(config.get("TIMELINE_LIMIT") or DEFAULT_TIMELINE_LIMIT),
        excerpt_words=int(config.get("EXCERPT_WORDS") or DEFAULT_EXCERPT_WORDS),
    )
