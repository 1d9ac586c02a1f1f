import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import inspect as sa_inspect

from app.licensing.auth import bp as auth_bp, load_current_user
from app.licensing.config import load_config
from app.licensing.constants import QUOTA_POLICIES
from app.licensing.db import init_db, teardown_db_session
from app.licensing.engine import LicensingEngine
from app.licensing.errors import LicensingError
from app.licensing.modules.counters.api import bp as counters_bp
from app.licensing.modules.imports.api import bp as imports_bp
from app.licensing.modules.quota.api import bp as quota_bp
from app.licensing.modules.refrigerants.api import bp as refrigerants_bp
from app.licensing.modules.registrations.api import bp as registrations_bp
from app.licensing.modules.technicians.api import bp as technicians_bp
from app.licensing.routes import bp as routes_bp

logger = logging.getLogger(__name__)

REQUIRED_TABLES = (
    "importer_accounts",
    "refrigerants",
    "registrations",
    "import_licenses",
    "import_line_items",
    "sequence_counters",
    "audit_events",
    "technicians",
)


def create_app(**engine_overrides) -> Flask:
    """
    `engine_overrides` are passed to LicensingEngine (storage, notifier,
    documents, clock) so tests can swap collaborators.
    """
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # Supporting documents: 10MB per file enforced in the imports API
    app.config.setdefault("MAX_CONTENT_LENGTH", 50 * 1024 * 1024)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    if app.config.get("QUOTA_OVER_LIMIT_POLICY") not in QUOTA_POLICIES:
        raise RuntimeError(
            f"QUOTA_OVER_LIMIT_POLICY must be one of {sorted(QUOTA_POLICIES)}, got {app.config.get('QUOTA_OVER_LIMIT_POLICY')!r}."
        )

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.extensions["licensing_engine"] = LicensingEngine(app, **engine_overrides)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(registrations_bp, url_prefix="/api")
    app.register_blueprint(imports_bp, url_prefix="/api")
    app.register_blueprint(quota_bp, url_prefix="/api")
    app.register_blueprint(refrigerants_bp, url_prefix="/api")
    app.register_blueprint(counters_bp, url_prefix="/api")
    app.register_blueprint(technicians_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): log once if migrations have not been applied.
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)

    @app.errorhandler(LicensingError)
    def _err_licensing(e: LicensingError):  # type: ignore[no-redef]
        if e.status_code >= 409:
            app.logger.info("%s (request_id=%s): %s", type(e).__name__, getattr(g, "request_id", None), e)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "NotFound", "message": "Not found."}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "PayloadTooLarge", "message": "File too large. Maximum size is 50MB."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "InternalServerError", "message": "Internal error.", "request_id": rid}), 500

    logger.info("create_app() complete; app ready to serve")

    return app
