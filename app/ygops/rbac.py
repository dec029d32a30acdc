from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g
from sqlalchemy.orm import Session

from app.ygops.db import db_session
from app.ygops.errors import AuthenticationError
from app.ygops.models import User
from app.ygops.modules.admin_roles.permissions import expand_permissions, get_role_permissions, grants


def seeded_permissions(user: User) -> set[str]:
    return expand_permissions(perm.key for role in user.roles for perm in role.permissions)


def effective_permissions(user: User | None, s: Session | None = None) -> set[str]:
    """Seeded roles, platform role and admin roles, merged."""
    from app.ygops.modules.admin_roles.service import get_user_permissions

    if not user or not user.is_active or user.deleted_at is not None:
        return set()
    perms = seeded_permissions(user) | get_role_permissions(user.role)
    perms.update(get_user_permissions(s or db_session(), user.id))
    return perms


def user_has_permission(user: User | None, permission_key: str, s: Session | None = None) -> bool:
    if not user or not user.is_active or user.deleted_at is not None:
        return False
    if permission_key in seeded_permissions(user) or permission_key in get_role_permissions(user.role):
        return True
    return grants(effective_permissions(user, s), permission_key)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                raise AuthenticationError("Authentication required.")
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            raise AuthenticationError("Authentication required.")
        return fn(*args, **kwargs)

    return wrapped
