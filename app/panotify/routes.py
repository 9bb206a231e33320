from flask import Blueprint, g, redirect, render_template, url_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    if getattr(g, "current_user", None):
        return redirect(url_for("dashboard.index"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Liveness for monitors."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    return "ok", 200
