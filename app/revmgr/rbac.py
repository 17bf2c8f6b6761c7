from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.revmgr.models import User


def permission_keys(user: User | None) -> frozenset[str]:
    """Every permission key granted to an active user through their roles."""
    if not user or not user.is_active:
        return frozenset()
    return frozenset(perm.key for role in user.roles for perm in role.permissions)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Gate an API handler on `permission_key`. Runs before the handler touches
    the revision engine: 401 without a session user, 403 (with the missing key
    recorded on `g` for the JSON error body) without the permission.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
