"""
CRA Request Tracker
Flask Application Factory.

Usage:
    from cra_tracker import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from cra_tracker.auth import init_auth
from cra_tracker.config import config
from cra_tracker.middleware.logging_config import configure_logging
from cra_tracker.middleware.rate_limiter import init_rate_limits
from cra_tracker.middleware.timing import init_request_timing
from cra_tracker.models import db
from cra_tracker.services.notification import build_notification_settings

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
    default_limits=[],                     # per-route limits only
    storage_uri=os.getenv("REDIS_URL") or "memory://",
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
    app.config.from_object(config[config_name]())

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

    # ── Notification settings (merged once, read-only afterwards) ────────
    app.extensions["cra_notifications"] = build_notification_settings(app.config)

    # ── Content-Type guard & request timing ──────────────────────────────
    init_auth(app)
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from cra_tracker.models import audit as _audit_models                # noqa: F401
    from cra_tracker.models import notification as _notification_models  # noqa: F401
    from cra_tracker.models import request as _request_models            # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from cra_tracker.blueprints.audit_bp import audit_bp
    from cra_tracker.blueprints.dashboard_bp import dashboard_bp
    from cra_tracker.blueprints.health_bp import health_bp
    from cra_tracker.blueprints.request_bp import request_bp

    app.register_blueprint(request_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("status-integrity")
    @click.option("--limit", default=100, show_default=True, help="Max rows per list (1..500).")
    def status_integrity_cmd(limit):
        """Report requests whose status disagrees with their history."""
        from cra_tracker.services.status_integrity import generate_status_integrity_report
        report = generate_status_integrity_report(limit=limit)
        click.echo(json.dumps(report, indent=2))

    @app.cli.command("status-snapshot")
    @click.option("--output", type=click.Path(dir_okay=False, writable=True), default=None,
                  help="Write the snapshot to a file instead of stdout.")
    def status_snapshot_cmd(output):
        """Dump current vs. last recorded status for every request."""
        from cra_tracker.services.status_integrity import generate_status_snapshot
        payload = json.dumps(generate_status_snapshot(), indent=2)
        if output:
            with open(output, "w", encoding="utf-8") as fh:
                fh.write(payload + "\n")
            logger.info("Status snapshot written to %s", output)
        else:
            click.echo(payload)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404
        return e

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        if request.path.startswith("/api/"):
            return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500
        return e

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
