import logging
import os
import uuid

from flask import Flask, g, request
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.cdp.config import load_config
from app.cdp.db import init_db, teardown_db_session
from app.cdp.routes import bp as routes_bp

# Tables and columns the code relies on; checked at startup against the live schema.
_EXPECTED_SCHEMA: dict[str, tuple[str, ...]] = {
    "profiles": ("tenant_id", "status", "email_key", "phone_key", "company_key", "metadata"),
    "profile_identifiers": ("tenant_id", "source", "source_type", "external_id", "is_active", "is_primary"),
    "merge_candidates": ("status", "match_reasons", "conflict_fields", "survivor_id"),
    "profile_sync_runs": ("tenant_id", "total_fetched", "status"),
    "audit_events": ("tenant_id", "action", "metadata_json"),
    "tags": (),
    "profile_tags": (),
    "profile_events": (),
    "deals": (),
    "activities": (),
    "quotations": (),
    "billings": (),
}


def schema_drift(engine) -> list[str]:
    """Tables or columns from _EXPECTED_SCHEMA that the live database lacks."""
    missing: list[str] = []
    insp = sa_inspect(engine)
    for table, columns in _EXPECTED_SCHEMA.items():
        if not insp.has_table(table):
            missing.append(f"{table} (table)")
            continue
        present = {c["name"] for c in insp.get_columns(table)}
        missing.extend(f"{table}.{col}" for col in columns if col not in present)
    return missing


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
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

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            missing = schema_drift(app.extensions["sqlalchemy_engine"])
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        if missing:
            app.config["_schema_health_ok"] = False
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"ok": False, "error": "internal error"}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
