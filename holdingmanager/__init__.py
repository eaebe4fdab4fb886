"""
HoldingManager — Approval Workflow & Alerts
Flask Application Factory.

Usage:
    from holdingmanager import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from holdingmanager.config import config
from holdingmanager.middleware.logging_config import configure_logging
from holdingmanager.middleware.rate_limiter import init_rate_limits
from holdingmanager.middleware.timing import init_request_timing
from holdingmanager.models import db

logger = logging.getLogger(__name__)


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
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can validate required env vars.
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

    init_request_timing(app)

    # ── Workflow definitions (immutable for the process lifetime) ────────
    from holdingmanager.services import workflow_registry
    workflow_registry.init_app(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from holdingmanager.models import alert as _alert_models            # noqa: F401
    from holdingmanager.models import finance as _finance_models        # noqa: F401
    from holdingmanager.models import scheduling as _scheduling_models  # noqa: F401
    from holdingmanager.models import workflow as _workflow_models      # noqa: F401

    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(app.instance_path, exist_ok=True)

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from holdingmanager.blueprints.alert_bp import alert_bp
    from holdingmanager.blueprints.scheduler_bp import scheduler_bp
    from holdingmanager.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(alert_bp)
    app.register_blueprint(scheduler_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "HoldingManager"}

    init_rate_limits(app, limiter)

    # ── Scheduler ────────────────────────────────────────────────────────
    from holdingmanager.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    SchedulerService.ensure_jobs_registered()
    if not app.config.get("TESTING"):
        SchedulerService.start()

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "detail": str(e.description)}, 429

    return app
