"""
Request Desk
Flask Application Factory.

Usage:
    from reqdesk import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from reqdesk.config import config
from reqdesk.core.exceptions import (
    AlreadyResolved,
    AuthenticationRequired,
    ConflictError,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    ValidationError,
    WorkflowMisconfigured,
)
from reqdesk.middleware.jwt_auth import init_jwt_middleware
from reqdesk.middleware.logging_config import configure_logging
from reqdesk.middleware.rate_limiter import init_rate_limits
from reqdesk.middleware.timing import init_request_timing
from reqdesk.models import db
from reqdesk.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


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
    storage_uri=os.getenv("REDIS_URL", "memory://"),    # Redis in production
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
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(os.path.dirname(app.config["SQLALCHEMY_DATABASE_URI"][len("sqlite:///"):]), exist_ok=True)

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

    # ── Request timing + identity ────────────────────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)

    # ── Models (import so tables are registered) ─────────────────────────
    from reqdesk.models import approval, org, request, workflow  # noqa: F401

    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from reqdesk.blueprints.approval_bp import approval_bp
    from reqdesk.blueprints.health_bp import health_bp
    from reqdesk.blueprints.org_bp import org_bp
    from reqdesk.blueprints.request_bp import request_bp
    from reqdesk.blueprints.tracking_bp import tracking_bp
    from reqdesk.blueprints.vehicle_request_bp import vehicle_request_bp
    from reqdesk.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(org_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(request_bp)
    app.register_blueprint(vehicle_request_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(tracking_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app


def _register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return api_error(E.VALIDATION_INVALID, str(e), details=e.details)

    @app.errorhandler(WorkflowMisconfigured)
    def handle_misconfigured(e):
        details = {"step_order": e.step_order, "step_name": e.step_name} if e.step_order else None
        return api_error(E.WORKFLOW_MISCONFIGURED, str(e), details=details)

    @app.errorhandler(AuthenticationRequired)
    def handle_unauthenticated(e):
        return api_error(E.UNAUTHENTICATED, str(e))

    @app.errorhandler(PermissionDenied)
    def handle_forbidden(e):
        logger.info("Permission denied: %s", e, extra={"user_id": e.user_id, "action": e.action})
        return api_error(E.FORBIDDEN, str(e))

    @app.errorhandler(AlreadyResolved)
    def handle_already_resolved(e):
        return api_error(E.ALREADY_RESOLVED, str(e))

    @app.errorhandler(InvalidTransition)
    def handle_invalid_transition(e):
        return api_error(E.CONFLICT_STATE, str(e), details={"current_status": e.current_status})

    @app.errorhandler(ConflictError)
    def handle_conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e), details={"field": e.field})

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.BAD_REQUEST, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(Exception)
    def server_error(e):
        if isinstance(e, HTTPException):
            return api_error(E.BAD_REQUEST, e.description or e.name, status=e.code)
        db.session.rollback()
        logger.exception("Unhandled error: %s", e)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("seed-workflows")
    def seed_workflows_cmd():
        """Create default workflows mirroring the built-in approval chains."""
        from reqdesk.services.workflow_service import seed_default_workflows
        count = seed_default_workflows()
        db.session.commit()
        logger.info("Seeded %s default workflows.", count)

    @app.cli.command("issue-token")
    @click.argument("user_id", type=int)
    def issue_token_cmd(user_id):
        """Print an access token for USER_ID (local testing and integrations)."""
        from reqdesk.models.org import User
        from reqdesk.services.jwt_service import generate_token_for
        user = db.session.get(User, user_id)
        if user is None:
            raise click.ClickException(f"User {user_id} not found")
        click.echo(generate_token_for(user))
