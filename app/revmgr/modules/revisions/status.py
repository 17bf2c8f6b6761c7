"""
Status classification for a document's versions.

Pure computation: no session, no cache, no writes. Pointer selection and
stale-pointer detection are reported on the result; persisting them is the
caller's job.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from app.revmgr.modules.documents.store import Version
from app.revmgr.utils import isoformat, trim_words

DEFAULT_EXCERPT_WORDS = 15


class RevisionStatus(str, Enum):
    CURRENT = "current"
    PENDING = "pending"
    PAST = "past"


@dataclass(frozen=True)
class TimelineEntry:
    version_id: int
    timestamp: datetime
    title: str
    author: str
    excerpt: str
    status: RevisionStatus
    is_current: bool
    position: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.version_id,
            "date": isoformat(self.timestamp),
            "title": self.title,
            "author": self.author,
            "excerpt": self.excerpt,
            "status": self.status.value,
            "is_current": self.is_current,
            "position": self.position,
        }


@dataclass(frozen=True)
class Classification:
    entries: list[TimelineEntry] = field(default_factory=list)
    # Resolved pointer after selection; None when the list is empty or the pointer is stale.
    current_version_id: int | None = None
    # True when no pointer was supplied and the most recent version was chosen.
    selected: bool = False
    # True when the supplied pointer matched no version (and no anchor was given).
    stale: bool = False

    def statuses(self) -> dict[int, str]:
        return {e.version_id: e.status.value for e in self.entries}


def sort_key(v: Version) -> tuple[datetime, int]:
    return (v.timestamp, v.id)


def classify(
    versions: Iterable[Version],
    current_version_id: int | None,
    *,
    anchor: Version | None = None,
    excerpt_words: int = DEFAULT_EXCERPT_WORDS,
) -> Classification:
    """
    Label every version current/pending/past relative to the current pointer.

    Versions may arrive in any order; output is sorted by (timestamp, id)
    descending with positions 0..n-1. A version is pending when it sorts
    after the current one, i.e. a strictly later timestamp, or an equal
    timestamp and a larger id.

    `anchor` is the resolved current version when it exists but lies outside
    the supplied window (timeline limits); comparisons use it and no entry
    is marked current.
    """
    ordered = sorted(versions, key=sort_key, reverse=True)
    if not ordered:
        return Classification()

    selected = False
    pointer = current_version_id
    if pointer is None:
        pointer = ordered[0].id
        selected = True

    current = next((v for v in ordered if v.id == pointer), None)
    if current is None and anchor is not None and anchor.id == pointer:
        current = anchor
    stale = current is None

    entries: list[TimelineEntry] = []
    for position, v in enumerate(ordered):
        if current is None:
            status = RevisionStatus.PAST
        elif v.id == current.id:
            status = RevisionStatus.CURRENT
        elif sort_key(v) > sort_key(current):
            status = RevisionStatus.PENDING
        else:
            status = RevisionStatus.PAST
        entries.append(
            TimelineEntry(
                version_id=v.id,
                timestamp=v.timestamp,
                title=v.title,
                author=v.author_name,
                excerpt=trim_words(v.body, excerpt_words),
                status=status,
                is_current=status is RevisionStatus.CURRENT,
                position=position,
            )
        )

    return Classification(
        entries=entries,
        current_version_id=None if stale else pointer,
        selected=selected,
        stale=stale,
    )
