from __future__ import annotations

from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.panotify.db import db_session
from app.panotify.models import AuditEvent, User
from app.panotify.modules.accounts.service import (
    change_password,
    list_instructors,
    list_students,
    reset_password,
    set_active,
    update_profile,
    validate_profile,
)
from app.panotify.rbac import require_permission

bp = Blueprint("accounts", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _min_length() -> int:
    return int(current_app.config.get("PASSWORD_MIN_LENGTH", 8))


# ---------- Own profile ----------

@bp.get("/me")
@require_permission("profile.edit")
def me():
    user = _current_user()
    role_keys = sorted({r.key for r in (user.roles or [])})
    return render_template("accounts/me.html", user=user, role_keys=role_keys, form=None)


@bp.post("/me")
@require_permission("profile.edit")
def me_update():
    s = db_session()
    user = _current_user()
    payload = request.form.to_dict()
    errors = validate_profile(s, user, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        role_keys = sorted({r.key for r in (user.roles or [])})
        return render_template("accounts/me.html", user=user, role_keys=role_keys, form=payload), 400
    update_profile(s, user, payload, actor=user)
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("accounts.me"))


@bp.post("/me/password")
@require_permission("profile.edit")
def me_change_password():
    s = db_session()
    user = _current_user()
    new_password = request.form.get("new_password") or ""
    if new_password != (request.form.get("new_password_confirm") or ""):
        flash("New passwords do not match.", "danger")
        return redirect(url_for("accounts.me"))

    errors = change_password(
        s, user, request.form.get("current_password") or "", new_password, min_length=_min_length()
    )
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("accounts.me"))
    s.commit()
    flash("Password changed.", "success")
    return redirect(url_for("accounts.me"))


# ---------- Account administration ----------

@bp.get("/admin/accounts")
@require_permission("accounts.manage")
def accounts_list():
    s = db_session()
    account_type = (request.args.get("type") or "").strip()
    if account_type == "Student":
        users = list_students(s)
    elif account_type == "Instructor":
        users = list_instructors(s)
    else:
        q = s.query(User)
        if account_type:
            q = q.filter(User.account_type == account_type)
        users = q.order_by(User.account_type.asc(), User.last_name.asc(), User.first_name.asc()).all()
    return render_template("accounts/list.html", users=users, account_type=account_type)


@bp.get("/admin/accounts/<int:user_id>")
@require_permission("accounts.manage")
def accounts_detail(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    return render_template("accounts/detail.html", account=user)


@bp.post("/admin/accounts/<int:user_id>/update")
@require_permission("accounts.manage")
def accounts_update(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    if user.id == u.id:
        flash("You cannot modify your own account from this page.", "danger")
        return redirect(url_for("accounts.accounts_detail", user_id=user_id))

    set_active(s, user, request.form.get("is_active") == "1", u)
    s.commit()
    flash(f"Account updated for {user.username}.", "success")
    return redirect(url_for("accounts.accounts_detail", user_id=user_id))


@bp.post("/admin/accounts/<int:user_id>/reset-password")
@require_permission("accounts.manage")
def accounts_reset_password(user_id: int):
    s = db_session()
    u = _current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    password = request.form.get("password") or ""
    if password != (request.form.get("password_confirm") or ""):
        flash("Passwords do not match.", "danger")
        return redirect(url_for("accounts.accounts_detail", user_id=user_id))

    errors = reset_password(s, user, password, u, min_length=_min_length())
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("accounts.accounts_detail", user_id=user_id))
    s.commit()
    flash(f"Password reset for {user.username}.", "success")
    return redirect(url_for("accounts.accounts_detail", user_id=user_id))


@bp.get("/admin/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit trail UI (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "accounts/audit.html",
        events=events,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
