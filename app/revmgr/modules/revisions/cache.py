"""
Timeline cache.

Records are keyed by document id plus a slice key ("timeline:<limit>",
"status", "content"). Invalidation always drops every slice of a document.
A record is served only while it is younger than the TTL and was computed
no earlier than the document's last modification.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import chain
from typing import Any

from sqlalchemy import delete, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.revmgr.modules.documents.models import Document, DocumentVersion
from app.revmgr.utils import isoformat, parse_datetime

from .models import TimelineCacheEntry, WorkflowState

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
MAX_TRACKED_INVALIDATIONS = 1024
STATUS_KEY = "status"
CONTENT_KEY = "content"

# Session.info key holding document ids touched by flushes not yet committed.
_PENDING_INVALIDATIONS = "revmgr.pending_invalidations"


def timeline_key(limit: int) -> str:
    return f"timeline:{limit}"


class CacheBackendError(RuntimeError):
    pass


@dataclass(frozen=True)
class CacheRecord:
    document_id: int
    key: str
    # datetime, ISO string, or None; anything unparsable invalidates the record.
    computed_at: object
    payload: dict[str, Any]


class CacheBackend:
    def read(self, document_id: int, key: str) -> CacheRecord | None:
        raise NotImplementedError

    def write(self, record: CacheRecord) -> None:
        raise NotImplementedError

    def delete(self, document_id: int, key: str) -> None:
        raise NotImplementedError

    def delete_document(self, document_id: int) -> None:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    """Process-local backend."""

    def __init__(self) -> None:
        self._records: dict[int, dict[str, CacheRecord]] = {}
        self._lock = threading.Lock()

    def read(self, document_id: int, key: str) -> CacheRecord | None:
        with self._lock:
            rec = self._records.get(document_id, {}).get(key)
        if rec is None:
            return None
        return CacheRecord(rec.document_id, rec.key, rec.computed_at, copy.deepcopy(rec.payload))

    def write(self, record: CacheRecord) -> None:
        stored = CacheRecord(record.document_id, record.key, record.computed_at, copy.deepcopy(record.payload))
        with self._lock:
            self._records.setdefault(record.document_id, {})[record.key] = stored

    def delete(self, document_id: int, key: str) -> None:
        with self._lock:
            slices = self._records.get(document_id)
            if slices is not None:
                slices.pop(key, None)
                if not slices:
                    del self._records[document_id]

    def delete_document(self, document_id: int) -> None:
        with self._lock:
            self._records.pop(document_id, None)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._records.values())


class SqlCacheBackend(CacheBackend):
    """
    Database-backed records in `timeline_cache_entries`.

    Uses its own short sessions so a cache failure never touches the
    request's transaction.
    """

    def __init__(self, sm: sessionmaker) -> None:
        self._sessionmaker = sm

    def read(self, document_id: int, key: str) -> CacheRecord | None:
        with self._sessionmaker() as s:
            row = s.get(TimelineCacheEntry, (document_id, key))
            if row is None:
                return None
            try:
                payload = json.loads(row.payload_json)
            except ValueError as e:
                raise CacheBackendError(f"Corrupt cache payload for document {document_id} ({key})") from e
            return CacheRecord(document_id, key, row.computed_at, payload)

    def write(self, record: CacheRecord) -> None:
        computed_at = record.computed_at
        if isinstance(computed_at, datetime):
            computed_at = isoformat(computed_at)
        with self._sessionmaker.begin() as s:
            s.merge(
                TimelineCacheEntry(
                    document_id=record.document_id,
                    cache_key=record.key,
                    computed_at=computed_at,
                    payload_json=json.dumps(record.payload, sort_keys=True, default=str),
                )
            )

    def delete(self, document_id: int, key: str) -> None:
        with self._sessionmaker.begin() as s:
            s.execute(
                delete(TimelineCacheEntry)
                .where(TimelineCacheEntry.document_id == document_id)
                .where(TimelineCacheEntry.cache_key == key)
            )

    def delete_document(self, document_id: int) -> None:
        with self._sessionmaker.begin() as s:
            s.execute(delete(TimelineCacheEntry).where(TimelineCacheEntry.document_id == document_id))


def _document_id_of(obj: object) -> int | None:
    if isinstance(obj, Document):
        return obj.id
    if isinstance(obj, (DocumentVersion, WorkflowState)):
        return obj.document_id
    return None


class TimelineCache:
    def __init__(
        self,
        backend: CacheBackend,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.backend = backend
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        # document_id -> time of the last invalidation seen by this process
        self._invalidated_at: dict[int, datetime] = {}
        self._lock = threading.Lock()

    def get(self, document_id: int, *, modified_at: datetime | None, key: str) -> dict[str, Any] | None:
        try:
            record = self.backend.read(document_id, key)
        except (SQLAlchemyError, CacheBackendError) as e:
            logger.warning("Cache read failed (document_id=%s key=%s); treating as miss: %s", document_id, key, e)
            return None
        if record is None:
            logger.debug("Cache miss document_id=%s key=%s", document_id, key)
            return None

        reason = self._invalid_reason(record, modified_at)
        if reason:
            logger.debug("Cache discard document_id=%s key=%s reason=%s", document_id, key, reason)
            self._delete(document_id, key)
            return None
        logger.debug("Cache hit document_id=%s key=%s", document_id, key)
        return record.payload

    def _invalid_reason(self, record: CacheRecord, modified_at: datetime | None) -> str | None:
        computed_at = parse_datetime(record.computed_at)
        if computed_at is None:
            return "unparsable computed_at"
        if computed_at.tzinfo is not None:
            # Stored stamps are naive UTC; compare offset-carrying ones on the same basis.
            computed_at = computed_at.astimezone(timezone.utc).replace(tzinfo=None)
        if self._clock() - computed_at > self.ttl:
            return "expired"
        if modified_at is not None and computed_at < modified_at:
            return "document modified"
        return None

    def now(self) -> datetime:
        """Cache clock. Read it before loading the data a record is built from."""
        return self._clock()

    def put(
        self,
        document_id: int,
        payload: dict[str, Any],
        *,
        key: str,
        computed_at: datetime | None = None,
    ) -> None:
        """
        Store `payload`. `computed_at` should be taken before the source reads;
        a write committed while the payload was being built then makes the
        record invalid. Defaults to the current time.
        """
        stamp = computed_at if computed_at is not None else self._clock()
        with self._lock:
            invalidated_at = self._invalidated_at.get(document_id)
        if invalidated_at is not None and invalidated_at >= stamp:
            logger.debug("Cache put skipped document_id=%s key=%s; invalidated while computing", document_id, key)
            return
        record = CacheRecord(document_id=document_id, key=key, computed_at=stamp, payload=payload)
        try:
            self.backend.write(record)
        except (SQLAlchemyError, CacheBackendError) as e:
            logger.warning("Cache write failed (document_id=%s key=%s): %s", document_id, key, e)

    def _delete(self, document_id: int, key: str) -> None:
        try:
            self.backend.delete(document_id, key)
        except (SQLAlchemyError, CacheBackendError) as e:
            logger.warning("Cache delete failed (document_id=%s key=%s): %s", document_id, key, e)

    def invalidate(self, document_id: int) -> None:
        """Drop every slice of a document. Safe to call when nothing is cached."""
        self._note_invalidation(document_id)
        try:
            self.backend.delete_document(document_id)
        except (SQLAlchemyError, CacheBackendError) as e:
            logger.warning("Cache invalidation failed (document_id=%s): %s", document_id, e)
        else:
            logger.debug("Cache invalidated document_id=%s", document_id)

    def _note_invalidation(self, document_id: int) -> None:
        now = self._clock()
        with self._lock:
            self._invalidated_at[document_id] = now
            if len(self._invalidated_at) > MAX_TRACKED_INVALIDATIONS:
                # Puts older than the TTL are never useful, so older marks can go.
                cutoff = now - self.ttl
                self._invalidated_at = {k: v for k, v in self._invalidated_at.items() if v > cutoff}

    def subscribe(self, sm: sessionmaker) -> None:
        """
        Invalidate on commit for every document whose versions, content or
        workflow state were written through sessions from `sm`.
        """
        event.listen(sm, "after_flush", self._collect_touched)
        event.listen(sm, "after_commit", self._invalidate_touched)
        event.listen(sm, "after_rollback", self._discard_touched)

    def _collect_touched(self, session: Session, flush_context: object) -> None:
        pending: set[int] = session.info.setdefault(_PENDING_INVALIDATIONS, set())
        for obj in chain(session.new, session.dirty, session.deleted):
            document_id = _document_id_of(obj)
            if document_id is not None:
                pending.add(document_id)

    def _invalidate_touched(self, session: Session) -> None:
        pending: set[int] = session.info.pop(_PENDING_INVALIDATIONS, set())
        for document_id in sorted(pending):
            self.invalidate(document_id)

    def _discard_touched(self, session: Session) -> None:
        session.info.pop(_PENDING_INVALIDATIONS, None)


def cache_from_config(config: dict, sm: sessionmaker) -> TimelineCache:
    backend_name = (config.get("CACHE_BACKEND") or "memory").strip().lower()
    backend: CacheBackend
    if backend_name == "db":
        backend = SqlCacheBackend(sm)
    else:
        backend = MemoryCacheBackend()
    return TimelineCache(backend, ttl_seconds=int(config.get("CACHE_TTL_SECONDS") or DEFAULT_TTL_SECONDS))
