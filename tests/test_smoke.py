import pytest
from werkzeug.security import generate_password_hash

from app.revmgr import create_app
from app.revmgr.db import session_scope
from app.revmgr.models import Base, Permission, Role, User
from app.revmgr.rbac import permission_keys, user_has_permission


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("DEFAULT_MODE", "CACHE_BACKEND", "TIMELINE_LIMIT", "CACHE_TTL_SECONDS"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p = Permission(key="revisions.view", name="Revisions: view timeline")
        r = Role(key="viewer", name="Viewer")
        r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_and_api_access(client):
    # Anonymous is rejected
    r = client.get("/api/revisions/1")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["csrf_token"]

    # Authenticated; the document just doesn't exist
    r = client.get("/api/revisions/1")
    assert r.status_code == 404

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/api/revisions/1").status_code == 401


def test_bad_config_fails_fast(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("DEFAULT_MODE", "closed")
    with pytest.raises(RuntimeError):
        create_app()


def test_timeline_limit_above_cap_fails_fast(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.delenv("DEFAULT_MODE", raising=False)
    monkeypatch.setenv("TIMELINE_LIMIT", "500")
    with pytest.raises(RuntimeError):
        create_app()


def test_production_requires_postgres(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.delenv("DEFAULT_MODE", raising=False)
    with pytest.raises(RuntimeError):
        create_app()


def test_permission_keys_follow_roles_and_active_flag():
    view = Permission(key="revisions.view", name="view")
    mode = Permission(key="revisions.mode", name="mode")
    role = Role(key="editor", name="Editor", permissions=[view, mode])
    u = User(email="x@example.com", password_hash="-", is_active=True, roles=[role])
    assert permission_keys(u) == {"revisions.view", "revisions.mode"}
    assert user_has_permission(u, "revisions.mode")

    u.is_active = False
    assert permission_keys(u) == frozenset()
    assert not user_has_permission(u, "revisions.view")
    assert permission_keys(None) == frozenset()
