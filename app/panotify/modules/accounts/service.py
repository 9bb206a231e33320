from __future__ import annotations

import re
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from werkzeug.security import check_password_hash, generate_password_hash

from app.panotify.audit import record_event
from app.panotify.constants import ACCOUNT_TYPE_ROLES, ACCOUNT_TYPES
from app.panotify.models import Role, User

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


_EMAIL_RE = re.compile(r"^[A-Za-z0-9+_.-]+@(.+)$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,64}$")

PROFILE_FIELDS = ("username", "first_name", "last_name", "email", "phone_number", "institution", "department")


def _clean(payload: dict, key: str) -> str:
    return (payload.get(key) or "").strip()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def validate_password(password: str | None, min_length: int = 8) -> str | None:
    """Returns an error message, or None when the password is acceptable."""
    if not password:
        return "Password is required."
    if len(password) < min_length:
        return f"Password must be at least {min_length} characters."
    return None


def username_exists(s: "Session", username: str, *, exclude_user_id: int | None = None) -> bool:
    q = s.query(User.id).filter(func.lower(User.username) == username.lower())
    if exclude_user_id is not None:
        q = q.filter(User.id != exclude_user_id)
    return q.first() is not None


def email_exists(s: "Session", email: str, *, exclude_user_id: int | None = None) -> bool:
    q = s.query(User.id).filter(User.email == email.lower())
    if exclude_user_id is not None:
        q = q.filter(User.id != exclude_user_id)
    return q.first() is not None


def _validate_identity(s: "Session", payload: dict, *, exclude_user_id: int | None = None) -> list[str]:
    errors = []
    username = _clean(payload, "username")
    email = _clean(payload, "email").lower()

    if not username:
        errors.append("Username is required.")
    elif not _USERNAME_RE.match(username):
        errors.append("Username must be 3-64 characters: letters, digits, '.', '_' or '-'.")
    elif username_exists(s, username, exclude_user_id=exclude_user_id):
        errors.append("Username is already taken.")

    if not _clean(payload, "first_name"):
        errors.append("First name is required.")
    if not _clean(payload, "last_name"):
        errors.append("Last name is required.")

    if not email:
        errors.append("Email is required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif email_exists(s, email, exclude_user_id=exclude_user_id):
        errors.append("An account with this email already exists.")
    return errors


def validate_registration(s: "Session", payload: dict, *, password_min_length: int = 8) -> list[str]:
    """Validate a registration payload. Returns list of errors."""
    errors = _validate_identity(s, payload)

    account_type = _clean(payload, "account_type")
    if account_type not in ACCOUNT_TYPES:
        errors.append(f"Account type must be one of: {', '.join(ACCOUNT_TYPES)}")

    password = payload.get("password") or ""
    pw_error = validate_password(password, password_min_length)
    if pw_error:
        errors.append(pw_error)
    elif "password_confirm" in payload and password != (payload.get("password_confirm") or ""):
        errors.append("Passwords do not match.")
    return errors


def _role_for(s: "Session", account_type: str) -> Role:
    role_key = ACCOUNT_TYPE_ROLES[account_type]
    role = s.query(Role).filter(Role.key == role_key).one_or_none()
    if role is None:
        raise RuntimeError(f"Role '{role_key}' is missing; run scripts/init_db.py to seed roles.")
    return role


def register_user(s: "Session", payload: dict) -> User:
    """
    Create a Student or Instructor account. Caller validates first.
    Institution/department are only kept for instructors.
    """
    account_type = _clean(payload, "account_type")
    is_instructor = account_type == "Instructor"
    user = User(
        username=_clean(payload, "username"),
        email=_clean(payload, "email").lower(),
        password_hash=generate_password_hash(payload.get("password") or ""),
        first_name=_clean(payload, "first_name"),
        last_name=_clean(payload, "last_name"),
        phone_number=_clean(payload, "phone_number") or None,
        account_type=account_type,
        institution=(_clean(payload, "institution") or None) if is_instructor else None,
        department=(_clean(payload, "department") or None) if is_instructor else None,
        is_active=True,
    )
    user.roles.append(_role_for(s, account_type))
    s.add(user)
    s.flush()

    record_event(
        s,
        actor=user,
        action="user.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": user.username, "account_type": account_type},
    )
    return user


def authenticate(s: "Session", login: str, password: str, account_type: str | None = None) -> User | None:
    """Look a user up by username or email and verify the password."""
    login = (login or "").strip()
    if not login or not password:
        return None
    user = (
        s.query(User)
        .filter(or_(func.lower(User.username) == login.lower(), User.email == login.lower()))
        .one_or_none()
    )
    if not user or not user.is_active:
        return None
    if account_type and user.account_type != account_type:
        return None
    if not check_password_hash(user.password_hash, password):
        return None
    return user


def validate_profile(s: "Session", user: User, payload: dict) -> list[str]:
    return _validate_identity(s, payload, exclude_user_id=user.id)


def update_profile(s: "Session", user: User, payload: dict, actor: User) -> User:
    changes = {}
    for field in PROFILE_FIELDS:
        if field in ("institution", "department") and not user.is_instructor:
            continue
        new = _clean(payload, field)
        if field == "email":
            new = new.lower()
        new_value = new or (None if field in ("phone_number", "institution", "department") else getattr(user, field))
        old_value = getattr(user, field)
        if new_value != old_value:
            changes[field] = {"old": old_value, "new": new_value}
            setattr(user, field, new_value)

    record_event(
        s,
        actor=actor,
        action="user.update_profile",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"changes": changes},
    )
    return user


def change_password(
    s: "Session",
    user: User,
    old_password: str,
    new_password: str,
    *,
    min_length: int = 8,
) -> list[str]:
    """Change own password after verifying the current one. Returns list of errors."""
    if not check_password_hash(user.password_hash, old_password or ""):
        return ["Current password is incorrect."]
    pw_error = validate_password(new_password, min_length)
    if pw_error:
        return [pw_error]
    user.password_hash = generate_password_hash(new_password)
    record_event(s, actor=user, action="user.password_change", entity_type="User", entity_id=str(user.id))
    return []


def reset_password(s: "Session", user: User, new_password: str, actor: User, *, min_length: int = 8) -> list[str]:
    """Administrative password reset (no old password). Returns list of errors."""
    pw_error = validate_password(new_password, min_length)
    if pw_error:
        return [pw_error]
    user.password_hash = generate_password_hash(new_password)
    record_event(
        s,
        actor=actor,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": actor.email},
    )
    return []


def set_active(s: "Session", user: User, is_active: bool, actor: User) -> None:
    if user.is_active == is_active:
        return
    user.is_active = is_active
    record_event(
        s,
        actor=actor,
        action="user.activate" if is_active else "user.deactivate",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": user.username},
    )


def list_students(s: "Session") -> list[User]:
    return s.query(User).filter(User.account_type == "Student").order_by(User.last_name, User.first_name).all()


def list_instructors(s: "Session") -> list[User]:
    return s.query(User).filter(User.account_type == "Instructor").order_by(User.last_name, User.first_name).all()
