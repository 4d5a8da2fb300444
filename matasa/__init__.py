"""
Matasa incident pipeline
Flask Application Factory.

Usage:
    from matasa import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from matasa.config import config
from matasa.middleware.logging_config import configure_logging
from matasa.middleware.rate_limiter import init_rate_limits
from matasa.middleware.timing import init_request_timing
from matasa.models import db
from matasa.utils.errors import E, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _import_models():
    """Import all model modules so metadata is complete before create_all."""
    from matasa.models import alert, escalation, incident, notification, scheduling, ussd  # noqa: F401


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
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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

    _import_models()
    with app.app_context():
        if db.engine.url.get_backend_name() == "sqlite":
            if db.engine.url.database not in (None, "", ":memory:"):
                os.makedirs(os.path.dirname(db.engine.url.database), exist_ok=True)
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from matasa.blueprints.admin_bp import admin_bp
    from matasa.blueprints.health_bp import health_bp
    from matasa.blueprints.incident_bp import incident_bp
    from matasa.blueprints.ussd_bp import ussd_bp

    app.register_blueprint(ussd_bp)
    app.register_blueprint(incident_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(health_bp)

    # ── Pipeline services ────────────────────────────────────────────────
    from matasa.services import init_services
    init_services(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-escalation-rules")
    def seed_escalation_rules_cmd():
        """Insert the default escalation rules that are missing."""
        from matasa.models.escalation import seed_default_escalation_rules
        created = seed_default_escalation_rules()
        db.session.commit()
        logger.info("Seeded %s new escalation rules.", len(created))

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one scheduled job by name (for cron)."""
        from matasa.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(f"{result['job_name']}: {result['status']} {result.get('error') or ''}".rstrip())

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(400)
    def bad_request(e):
        return api_error(E.MALFORMED_REQUEST, e.description or "Malformed request")

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, f"Not found: {request.path}")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, "Method not allowed")

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        original = getattr(e, "original_exception", None) or e
        logger.error("500 error on %s: %s", request.path, original, exc_info=original)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("matasa.services.scheduled_jobs")  # registers @register_job handlers
    from matasa.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
