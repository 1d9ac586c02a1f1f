from flask import Blueprint, current_app

from app.licensing.engine import get_engine

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True, "env": current_app.config.get("ENV")}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/api/registration-period")
def registration_period():
    p = get_engine().registration_period()
    return {
        "is_open": p.is_open,
        "registration_year": p.registration_year,
        "days_until_open": p.days_until_open,
        "days_until_close": p.days_until_close,
    }
