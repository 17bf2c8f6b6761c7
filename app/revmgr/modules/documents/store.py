"""
VersionStore adapter over the host's document tables.

The revision workflow treats this as an external collaborator: it reads
version lists, resolves single versions and writes document content. The
host's automatic versioning (a new version on every content write) lives
here too, together with the scoped guard that suppresses it.
"""
from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.revmgr.errors import NotFoundError, UpstreamWriteFailure, ValidationError

from .models import Document, DocumentVersion

if TYPE_CHECKING:
    from app.revmgr.models import User

logger = logging.getLogger(__name__)

# Session.info key; set while automatic version creation is suppressed.
AUTOVERSION_SUPPRESSED = "revmgr.autoversion_suppressed"


@dataclass(frozen=True)
class Version:
    id: int
    document_id: int
    timestamp: datetime
    title: str
    body: str = ""
    excerpt: str = ""
    author_id: int | None = None
    author_name: str = ""


def _to_version(row: DocumentVersion) -> Version:
    return Version(
        id=row.id,
        document_id=row.document_id,
        timestamp=row.created_at,
        title=row.title,
        body=row.body or "",
        excerpt=row.excerpt or "",
        author_id=row.author_user_id,
        author_name=row.author.name if row.author else "",
    )


def load_document(s: Session, document_id: int) -> Document | None:
    """Document store lookup (existence and modification time)."""
    return s.get(Document, document_id)


def create_document(
    s: Session,
    *,
    title: str,
    body: str = "",
    excerpt: str = "",
    author: User | None = None,
) -> Document:
    """Create a document together with its first version, as the host does on first save."""
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required.", field="title")
    d = Document(title=title, body=body or "", excerpt=excerpt or "", author_user_id=author.id if author else None)
    s.add(d)
    s.flush()
    VersionStore().create_version(s, d, author=author)
    return d


class VersionStore:
    def list_versions(self, s: Session, document_id: int, *, limit: int | None = None) -> list[Version]:
        """Versions of a document, newest first (ties broken by id, newest first)."""
        q = (
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.created_at.desc(), DocumentVersion.id.desc())
        )
        if limit is not None:
            q = q.limit(limit)
        return [_to_version(row) for row in s.scalars(q).all()]

    def get_version(self, s: Session, version_id: int) -> Version | None:
        row = s.get(DocumentVersion, version_id)
        return _to_version(row) if row else None

    def create_version(self, s: Session, document: Document, *, author: User | None = None) -> Version:
        row = DocumentVersion(
            document_id=document.id,
            title=document.title,
            body=document.body,
            excerpt=document.excerpt,
            author_user_id=author.id if author else document.author_user_id,
            created_at=datetime.utcnow(),
        )
        s.add(row)
        document.modified_at = row.created_at
        s.flush()
        return _to_version(row)

    def delete_version(self, s: Session, version_id: int) -> int:
        """Delete a version; returns the parent document id."""
        row = s.get(DocumentVersion, version_id)
        if not row:
            raise NotFoundError("Version not found.", version_id=version_id)
        document_id = row.document_id
        s.delete(row)
        document = load_document(s, document_id)
        if document is not None:
            document.modified_at = datetime.utcnow()
        s.flush()
        return document_id

    def update_document_content(
        self,
        s: Session,
        document_id: int,
        *,
        title: str,
        body: str,
        excerpt: str,
        author: User | None = None,
    ) -> Document:
        """
        Write the live document content.

        Creates a new version afterwards unless `suppress_autoversion` is active
        on this session. Database failures surface as UpstreamWriteFailure.
        """
        document = load_document(s, document_id)
        if document is None:
            raise NotFoundError("Document not found.", document_id=document_id)
        try:
            document.title = title
            document.body = body
            document.excerpt = excerpt
            document.modified_at = datetime.utcnow()
            s.flush()
            if not s.info.get(AUTOVERSION_SUPPRESSED):
                self.create_version(s, document, author=author)
        except SQLAlchemyError as e:
            raise UpstreamWriteFailure("Cannot update document content.", document_id=document_id) from e
        return document

    @contextmanager
    def suppress_autoversion(self, s: Session) -> Generator[None, None, None]:
        """Suppress automatic version creation for writes on `s`; restored on every exit path."""
        previous = s.info.get(AUTOVERSION_SUPPRESSED, False)
        s.info[AUTOVERSION_SUPPRESSED] = True
        try:
            yield
        finally:
            if previous:
                s.info[AUTOVERSION_SUPPRESSED] = previous
            else:
                s.info.pop(AUTOVERSION_SUPPRESSED, None)
            logger.debug("autoversion restored (suppressed=%s)", previous)
