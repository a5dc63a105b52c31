"""
PTW Engine
Flask Application Factory.

Usage:
    from ptw import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask.cli import AppGroup
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from ptw.auth import init_auth
from ptw.config import config
from ptw.middleware.logging_config import configure_logging
from ptw.middleware.rate_limiter import init_rate_limits
from ptw.middleware.timing import init_request_timing
from ptw.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Identity / CSRF / API key middleware ─────────────────────────────
    init_auth(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from ptw.models import organization as _organization_models  # noqa: F401
    from ptw.models import policy as _policy_models              # noqa: F401
    from ptw.models import permit as _permit_models              # noqa: F401
    from ptw.models import notification as _notification_models  # noqa: F401
    from ptw.models import scheduling as _scheduling_models      # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from ptw.blueprints.notification_bp import notification_bp
    from ptw.blueprints.permit_bp import permit_bp
    from ptw.blueprints.policy_bp import policy_bp

    app.register_blueprint(permit_bp)
    app.register_blueprint(policy_bp)
    app.register_blueprint(notification_bp)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("ptw.services.scheduled_jobs")  # registers timer handlers and jobs
    from ptw.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── CLI commands (flask ptw ...) ─────────────────────────────────────
    ptw_cli = AppGroup("ptw", help="Permit engine maintenance commands.")

    @ptw_cli.command("init-db")
    def init_db_cmd():
        """Create all tables and the scheduled-job records."""
        db.create_all()
        created = SchedulerService.ensure_jobs_registered()
        logger.info("Database initialised; %d scheduled job records created.", len(created))

    @ptw_cli.command("run-timers")
    def run_timers_cmd():
        """Fire every due timer once (cron / worker entry point)."""
        summary = SchedulerService.run_due()
        logger.info("Timer run: %s", summary)

    @ptw_cli.command("reconcile-timers")
    def reconcile_timers_cmd():
        """Run the timer reconciliation job once."""
        result = SchedulerService.run_job("timer_reconciliation")
        logger.info("Reconciliation: %s", result)

    app.cli.add_command(ptw_cli)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "PTW Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "RATE_LIMITED", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
