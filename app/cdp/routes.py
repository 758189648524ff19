from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for liveness probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/health/schema")
def schema_health():
    """
    Readiness: 503 while tables/columns the identity code writes to are missing.
    Re-inspects the database, so it turns green once `alembic upgrade head` has run.
    """
    from app.cdp import schema_drift

    missing = schema_drift(current_app.extensions["sqlalchemy_engine"])
    current_app.config["_schema_health_ok"] = not missing
    current_app.config["_schema_health_missing"] = missing
    return {"ok": not missing, "missing": missing}, (503 if missing else 200)
