from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for

from app.panotify.audit import record_event
from app.panotify.constants import ACCOUNT_TYPES
from app.panotify.db import db_session
from app.panotify.models import User
from app.panotify.modules.accounts.service import authenticate, register_user, validate_registration

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)


def _check_rate_limit(ip: str) -> bool:
    limit = int(current_app.config.get("LOGIN_RATE_LIMIT", 5))
    window = int(current_app.config.get("LOGIN_RATE_WINDOW", 300))
    cutoff = datetime.utcnow() - timedelta(seconds=window)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= limit


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only local paths, to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    if getattr(g, "current_user", None):
        return redirect(url_for("dashboard.index"))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt, account_types=ACCOUNT_TYPES)


@bp.post("/login")
def login_post():
    login = (request.form.get("login") or "").strip()
    password = request.form.get("password") or ""
    account_type = (request.form.get("account_type") or "").strip() or None
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        current_app.logger.warning("Login rate limit hit (ip=%s)", ip)
        flash("Too many login attempts. Please wait a few minutes and try again.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    s = db_session()
    user = authenticate(s, login, password, account_type)
    if not user:
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=login[:128],
            reason="Invalid credentials",
            metadata={"login": login, "account_type": account_type},
        )
        s.commit()
        flash("Invalid username or password.", "danger")
        return redirect(url_for("auth.login_get", next=nxt or None))

    session.clear()
    session["user_id"] = user.id
    _login_attempts[ip].clear()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return redirect(_safe_next(nxt) or url_for("dashboard.index"))


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))


@bp.get("/register")
def register_get():
    account_type = (request.args.get("type") or "Student").strip()
    if account_type not in ACCOUNT_TYPES:
        account_type = "Student"
    return render_template("auth/register.html", account_type=account_type, account_types=ACCOUNT_TYPES, form={})


@bp.post("/register")
def register_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_registration(
        s, payload, password_min_length=int(current_app.config.get("PASSWORD_MIN_LENGTH", 8))
    )
    if errors:
        for e in errors:
            flash(e, "danger")
        payload.pop("password", None)
        payload.pop("password_confirm", None)
        return (
            render_template(
                "auth/register.html",
                account_type=payload.get("account_type") or "Student",
                account_types=ACCOUNT_TYPES,
                form=payload,
            ),
            400,
        )

    user = register_user(s, payload)
    s.commit()
    current_app.logger.info("Registered %s account %s (id=%s)", user.account_type, user.username, user.id)
    flash("Registration successful. Please log in.", "success")
    return redirect(url_for("auth.login_get"))
