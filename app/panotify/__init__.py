import logging
import os
from datetime import timedelta

from flask import Flask, g, render_template, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from app.panotify.config import load_config
from app.panotify.db import init_db, teardown_db_session
from app.panotify.routes import bp as routes_bp
from app.panotify.auth import bp as auth_bp, load_current_user
from app.panotify.dashboard import bp as dashboard_bp
from app.panotify.modules.accounts.admin import bp as accounts_bp
from app.panotify.modules.courses.admin import bp as courses_bp
from app.panotify.modules.exams.admin import bp as exams_bp
from app.panotify.modules.reports.admin import bp as reports_bp

logger = logging.getLogger(__name__)

_REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "courses",
    "course_enrollments",
    "exams",
    "questions",
    "exam_attempts",
    "student_answers",
    "audit_events",
)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.panotify.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.panotify.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm, "current_user": getattr(g, "current_user", None)}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("percent")
    def _percent_filter(value) -> str:
        return f"{float(value or 0):.1f}%"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login, logout and registration run before a session exists.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production refuses to boot without a real secret and database.
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(accounts_bp, url_prefix="/account")
    app.register_blueprint(courses_bp, url_prefix="/courses")
    app.register_blueprint(exams_bp, url_prefix="/exams")
    app.register_blueprint(reports_bp, url_prefix="/reports")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Log missing tables when migrations have not been applied.
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in _REQUIRED_TABLES if not insp.has_table(t)]
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing tables: %s", ", ".join(missing))
    except SQLAlchemyError as e:
        app.logger.error("Schema health check failed: %s", e)

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; app ready to serve")
    return app
