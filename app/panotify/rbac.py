from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for
from sqlalchemy.orm import Session

from app.panotify.constants import PERMISSIONS, ROLES
from app.panotify.models import Permission, Role, User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> login page, then back here.
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def ensure_roles(s: Session) -> dict[str, Role]:
    """
    Seed the permission catalogue and the built-in roles (idempotent).
    Returns roles keyed by role key.
    """
    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSIONS:
        if key not in perms:
            p = Permission(key=key, name=name)
            s.add(p)
            perms[key] = p

    roles: dict[str, Role] = {r.key: r for r in s.query(Role).all()}
    for role_key, (role_name, perm_keys) in ROLES.items():
        role = roles.get(role_key)
        if not role:
            role = Role(key=role_key, name=role_name)
            s.add(role)
            roles[role_key] = role
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
    s.flush()
    return roles
