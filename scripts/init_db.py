import os
import sys
from contextlib import contextmanager
from pathlib import Path

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.revmgr.models import Permission, Role, User  # noqa: E402

PERMISSIONS = (
    ("revisions.view", "Revisions: view timeline"),
    ("revisions.set_current", "Revisions: set current version"),
    ("revisions.status", "Revisions: update status"),
    ("revisions.mode", "Revisions: change workflow mode"),
    ("documents.edit", "Documents: edit content"),
)


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///revmgr.db").strip()

    with _session_scope(db_url) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.scalars(select(Permission).where(Permission.key == key)).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        perms = [ensure_perm(key, name) for key, name in PERMISSIONS]

        role_admin = s.scalars(select(Role).where(Role.key == "admin")).one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        # Editors may read and promote versions but not switch workflow mode.
        role_editor = s.scalars(select(Role).where(Role.key == "editor")).one_or_none()
        if not role_editor:
            role_editor = Role(key="editor", name="Editor")
            s.add(role_editor)
        for p in perms:
            if p.key != "revisions.mode" and p not in role_editor.permissions:
                role_editor.permissions.append(p)

        user = s.scalars(select(User).where(User.email == admin_email)).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
