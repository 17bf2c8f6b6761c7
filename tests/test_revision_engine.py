"""
Service-level tests for RevisionEngine: the timeline read path, pointer
self-healing, mode and status transitions, and set_current.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from werkzeug.security import generate_password_hash

from app.revmgr import create_app
from app.revmgr.config import MAX_TIMELINE_LIMIT
from app.revmgr.db import session_scope
from app.revmgr.errors import ConflictError, NotFoundError, UpstreamWriteFailure, ValidationError
from app.revmgr.models import Base, User
from app.revmgr.modules.documents.models import Document, DocumentVersion
from app.revmgr.modules.documents.store import AUTOVERSION_SUPPRESSED, VersionStore
from app.revmgr.modules.revisions.models import WorkflowState
from app.revmgr.modules.revisions.service import RevisionEngine
from app.revmgr.modules.revisions.workflow import AUDIT_LOG_LIMIT, WorkflowMetadataStore

T0 = datetime(2020, 1, 1)


class SpyVersionStore(VersionStore):
    def __init__(self):
        self.calls: list[str] = []

    def list_versions(self, s, document_id, *, limit=None):
        self.calls.append("list_versions")
        return super().list_versions(s, document_id, limit=limit)

    def get_version(self, s, version_id):
        self.calls.append("get_version")
        return super().get_version(s, version_id)


class CommitDuringReadStore(VersionStore):
    """Commits a content write from another session right after the first version listing."""

    def __init__(self, app, document_id):
        self.app = app
        self.document_id = document_id
        self.fired = False

    def list_versions(self, s, document_id, *, limit=None):
        versions = super().list_versions(s, document_id, limit=limit)
        if not self.fired:
            self.fired = True
            with session_scope(self.app) as other:
                VersionStore().update_document_content(other, self.document_id, title="Doc", body="edited elsewhere", excerpt="")
        return versions


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DEFAULT_MODE", "open")
    monkeypatch.setenv("CACHE_BACKEND", "memory")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add(User(email="editor@example.com", display_name="Ed Itor", password_hash=generate_password_hash("pw"), is_active=True))
    return app


@pytest.fixture()
def engine(app) -> RevisionEngine:
    return app.extensions["revision_engine"]


def _seed(app, *, seconds=(10, 20, 30), body="live body") -> tuple[int, list[int]]:
    """A document with versions created at T0 + seconds; returns (doc_id, version ids oldest first)."""
    with session_scope(app) as s:
        d = Document(title="Doc", body=body, excerpt="")
        s.add(d)
        s.flush()
        ids = []
        for i, sec in enumerate(seconds, start=1):
            v = DocumentVersion(document_id=d.id, title=f"V{i}", body=f"body {i}", created_at=T0 + timedelta(seconds=sec))
            s.add(v)
            s.flush()
            ids.append(v.id)
        return d.id, ids


def _pending(app, engine, doc_id):
    with session_scope(app) as s:
        engine.set_mode(s, doc_id, "pending")


def _version_count(app, doc_id) -> int:
    with session_scope(app) as s:
        return s.scalar(select(func.count()).select_from(DocumentVersion).where(DocumentVersion.document_id == doc_id))


def _state(app, doc_id) -> WorkflowState | None:
    with session_scope(app) as s:
        return s.get(WorkflowState, doc_id)


class TestOpenMode:
    def test_open_mode_is_inert(self, app, engine):
        doc_id, _ = _seed(app)
        spy = SpyVersionStore()
        inert = RevisionEngine(versions=spy, workflow=engine.workflow, cache=engine.cache)
        with session_scope(app) as s:
            data = inert.get_timeline(s, doc_id)
        assert data["mode"] == "open"
        assert data["timeline"] == []
        assert data["current_version_id"] is None
        assert spy.calls == []
        # Reads in open mode never create workflow state.
        assert _state(app, doc_id) is None

    def test_unknown_document(self, app, engine):
        with session_scope(app) as s:
            with pytest.raises(NotFoundError):
                engine.get_timeline(s, 999)

    def test_invalid_limit(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(ValidationError):
                engine.get_timeline(s, doc_id, limit="abc")
            with pytest.raises(ValidationError):
                engine.get_timeline(s, doc_id, limit=0)

    def test_limit_is_capped(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            with pytest.raises(ValidationError) as exc:
                engine.get_timeline(s, doc_id, limit=MAX_TIMELINE_LIMIT + 1)
        assert exc.value.context["maximum"] == MAX_TIMELINE_LIMIT
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)
        with session_scope(app) as s:
            assert engine.get_timeline(s, doc_id, limit=MAX_TIMELINE_LIMIT)["total_count"] == 3


class TestTimeline:
    def test_first_read_selects_and_persists_most_recent(self, app, engine):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)

        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert data["current_version_id"] == v3
        assert [(e["id"], e["status"]) for e in data["timeline"]] == [(v3, "current"), (v2, "past"), (v1, "past")]
        assert data["total_count"] == 3
        assert _state(app, doc_id).current_version_id == v3

        with session_scope(app) as s:
            again = engine.get_timeline(s, doc_id)
        assert again == data

    def test_second_read_is_served_from_cache(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)  # selects pointer, not cached
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)  # computes and caches

        spy = SpyVersionStore()
        cached = RevisionEngine(versions=spy, workflow=engine.workflow, cache=engine.cache)
        with session_scope(app) as s:
            cached.get_timeline(s, doc_id)
        assert spy.calls == []

    def test_write_committed_during_read_is_not_served(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)  # selects pointer, not cached

        racing = RevisionEngine(versions=CommitDuringReadStore(app, doc_id), workflow=engine.workflow, cache=engine.cache)
        with session_scope(app) as s:
            assert racing.get_timeline(s, doc_id)["total_count"] == 3

        with session_scope(app) as s:
            fresh = engine.get_timeline(s, doc_id)
        assert fresh["total_count"] == 4
        assert fresh["timeline"][0]["status"] == "pending"

    def test_pointer_in_middle(self, app, engine):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.workflow.set_pointer(s, doc_id, v2)
        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert [(e["id"], e["status"]) for e in data["timeline"]] == [(v3, "pending"), (v2, "current"), (v1, "past")]
        assert [e["is_current"] for e in data["timeline"]] == [False, True, False]

    def test_stale_pointer_is_cleared(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.workflow.set_pointer(s, doc_id, 9999)
        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert data["current_version_id"] is None
        assert {e["status"] for e in data["timeline"]} == {"past"}
        assert _state(app, doc_id).current_version_id is None

    def test_pointer_to_other_documents_version_is_cleared(self, app, engine):
        doc_id, _ = _seed(app)
        _, (foreign, *_rest) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.workflow.set_pointer(s, doc_id, foreign)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)
        assert _state(app, doc_id).current_version_id is None

    def test_pointer_outside_window_is_kept(self, app, engine):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.workflow.set_pointer(s, doc_id, v1)
        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id, limit=2)
        assert data["current_version_id"] == v1
        assert [(e["id"], e["status"]) for e in data["timeline"]] == [(v3, "pending"), (v2, "pending")]
        assert _state(app, doc_id).current_version_id == v1

    def test_deleted_current_version_heals(self, app, engine):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.workflow.set_pointer(s, doc_id, v2)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)
        with session_scope(app) as s:
            engine.versions.delete_version(s, v2)
        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert [e["id"] for e in data["timeline"]] == [v3, v1]
        assert data["current_version_id"] is None

    def test_empty_document(self, app, engine):
        doc_id, _ = _seed(app, seconds=())
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert data["timeline"] == []
        assert data["current_version_id"] is None

    def test_deleting_document_cascades_to_versions_and_state(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)
        with session_scope(app) as s:
            s.delete(s.get(Document, doc_id))
        assert _version_count(app, doc_id) == 0
        assert _state(app, doc_id) is None
        with session_scope(app) as s:
            with pytest.raises(NotFoundError):
                engine.get_timeline(s, doc_id)


class TestModeAndStatus:
    def test_mode_change_writes_audit(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            actor = s.scalars(select(User)).first()
            result = engine.set_mode(s, doc_id, "pending", actor=actor, origin="10.0.0.1")
        assert result["changed"] is True
        with session_scope(app) as s:
            log = engine.audit_log(s, doc_id)
        assert len(log) == 1
        assert log[0]["previous_mode"] == "open"
        assert log[0]["new_mode"] == "pending"
        assert log[0]["actor_name"] == "Ed Itor"
        assert log[0]["actor_origin"] == "10.0.0.1"

    def test_self_transition_is_noop(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            result = engine.set_mode(s, doc_id, "open")
        assert result["changed"] is False
        with session_scope(app) as s:
            assert engine.audit_log(s, doc_id) == []
        assert _state(app, doc_id) is None

    def test_switching_to_open_clears_pointer_and_status(self, app, engine):
        doc_id, (v1, _, v3) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.set_current(s, doc_id, v1)
            engine.set_legacy_status(s, doc_id, "locked")
        with session_scope(app) as s:
            engine.set_mode(s, doc_id, "open")
        state = _state(app, doc_id)
        assert state.mode == "open"
        assert state.current_version_id is None
        assert state.legacy_status is None

        # Back to pending: starts without a pointer until the next read picks one.
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            assert engine.set_mode(s, doc_id, "pending")["changed"] is False
        state = _state(app, doc_id)
        assert state.mode == "pending"
        assert state.current_version_id is None

        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert data["current_version_id"] == v3
        assert data["timeline"][0]["status"] == "current"
        assert _state(app, doc_id).current_version_id == v3

        with session_scope(app) as s:
            log = engine.audit_log(s, doc_id)
        assert [(e["previous_mode"], e["new_mode"]) for e in log] == [
            ("open", "pending"),
            ("pending", "open"),
            ("open", "pending"),
        ]

    def test_audit_log_is_bounded(self, app, engine):
        doc_id, _ = _seed(app)
        for i in range(AUDIT_LOG_LIMIT + 3):
            with session_scope(app) as s:
                engine.set_mode(s, doc_id, "pending" if i % 2 == 0 else "open")
        with session_scope(app) as s:
            log = engine.audit_log(s, doc_id)
        assert len(log) == AUDIT_LOG_LIMIT
        # Last change (i = 12) was open -> pending.
        assert log[-1]["new_mode"] == "pending"
        assert log[-1]["previous_mode"] == "open"

    def test_invalid_mode(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(ValidationError) as exc:
                engine.set_mode(s, doc_id, "closed")
        assert exc.value.context["field"] == "mode"

    def test_legacy_status_requires_pending(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(ValidationError):
                engine.set_legacy_status(s, doc_id, "locked")
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.set_legacy_status(s, doc_id, "locked")
        assert _state(app, doc_id).legacy_status == "locked"
        with session_scope(app) as s:
            engine.set_legacy_status(s, doc_id, "open")
        assert _state(app, doc_id).legacy_status is None

    def test_invalid_legacy_status(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(ValidationError):
                engine.set_legacy_status(s, doc_id, "archived")

    def test_concurrent_write_conflicts(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        sm = app.extensions["sqlalchemy_sessionmaker"]
        first, second = sm(), sm()
        try:
            engine.workflow.get(first, doc_id)
            engine.workflow.get(second, doc_id)
            engine.set_legacy_status(first, doc_id, "locked")
            first.commit()
            with pytest.raises(ConflictError):
                engine.set_legacy_status(second, doc_id, "pending")
            second.rollback()
        finally:
            first.close()
            second.close()
        assert _state(app, doc_id).legacy_status == "locked"

    def test_default_mode_comes_from_store(self, app):
        doc_id, _ = _seed(app)
        store = WorkflowMetadataStore(default_mode="pending")
        with session_scope(app) as s:
            assert store.get(s, doc_id).mode == "pending"
            assert s.get(WorkflowState, doc_id) is None


class TestSetCurrent:
    def test_promotes_without_new_version(self, app, engine):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)
        before = _version_count(app, doc_id)
        with session_scope(app) as s:
            result = engine.set_current(s, doc_id, v1)
            assert AUTOVERSION_SUPPRESSED not in s.info
        assert result["statuses"] == {str(v3): "pending", str(v2): "pending", str(v1): "current"}
        assert _version_count(app, doc_id) == before
        with session_scope(app) as s:
            d = s.get(Document, doc_id)
            assert d.title == "V1"
            assert d.body == "body 1"
        assert _state(app, doc_id).current_version_id == v1

    def test_invalidates_cached_timeline(self, app, engine):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)
        with session_scope(app) as s:
            engine.get_timeline(s, doc_id)
        with session_scope(app) as s:
            engine.set_current(s, doc_id, v2)
        with session_scope(app) as s:
            data = engine.get_timeline(s, doc_id)
        assert data["current_version_id"] == v2

    def test_served_content_follows_pointer(self, app, engine):
        doc_id, (v1, v2, _) = _seed(app)
        with session_scope(app) as s:
            assert engine.served_content(s, doc_id)["body"] == "live body"
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.set_current(s, doc_id, v2)
        with session_scope(app) as s:
            served = engine.served_content(s, doc_id)
        assert served["version_id"] == v2
        assert served["body"] == "body 2"

    def test_unknown_version(self, app, engine):
        doc_id, _ = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            with pytest.raises(NotFoundError):
                engine.set_current(s, doc_id, 9999)

    def test_unknown_document(self, app, engine):
        _, (v1, _, _) = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(NotFoundError):
                engine.set_current(s, 9999, v1)

    def test_version_of_other_document(self, app, engine):
        doc_id, _ = _seed(app)
        _, (foreign, _, _) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            with pytest.raises(ValidationError):
                engine.set_current(s, doc_id, foreign)

    def test_rejected_in_open_mode(self, app, engine):
        doc_id, (v1, _, _) = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(ValidationError):
                engine.set_current(s, doc_id, v1)
        assert _state(app, doc_id) is None

    def test_failed_write_leaves_pointer_and_guard(self, app, engine, monkeypatch):
        doc_id, (v1, v2, v3) = _seed(app)
        _pending(app, engine, doc_id)
        with session_scope(app) as s:
            engine.set_current(s, doc_id, v3)

        def _fail(*args, **kwargs):
            raise UpstreamWriteFailure("Cannot update document content.", document_id=doc_id)

        monkeypatch.setattr(engine.versions, "update_document_content", _fail)
        sm = app.extensions["sqlalchemy_sessionmaker"]
        with sm() as s:
            with pytest.raises(UpstreamWriteFailure):
                engine.set_current(s, doc_id, v1)
            assert AUTOVERSION_SUPPRESSED not in s.info
            s.rollback()
        assert _state(app, doc_id).current_version_id == v3


class TestAutoversion:
    def test_content_write_creates_version(self, app, engine):
        doc_id, _ = _seed(app)
        before = _version_count(app, doc_id)
        with session_scope(app) as s:
            engine.versions.update_document_content(s, doc_id, title="Doc", body="new", excerpt="")
        assert _version_count(app, doc_id) == before + 1

    def test_guard_restored_after_exception(self, app, engine):
        doc_id, _ = _seed(app)
        with session_scope(app) as s:
            with pytest.raises(RuntimeError):
                with engine.versions.suppress_autoversion(s):
                    assert s.info[AUTOVERSION_SUPPRESSED] is True
                    raise RuntimeError("boom")
            assert AUTOVERSION_SUPPRESSED not in s.info

    def test_nested_guard_keeps_outer_scope(self, app, engine):
        doc_id, _ = _seed(app)
        before = _version_count(app, doc_id)
        with session_scope(app) as s:
            with engine.versions.suppress_autoversion(s):
                with engine.versions.suppress_autoversion(s):
                    pass
                assert s.info[AUTOVERSION_SUPPRESSED] is True
                engine.versions.update_document_content(s, doc_id, title="Doc", body="quiet", excerpt="")
        assert _version_count(app, doc_id) == before
