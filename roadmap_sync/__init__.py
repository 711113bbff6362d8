"""
Roadmap Sync
Flask Application Factory.

Usage:
    from roadmap_sync import create_app
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

from roadmap_sync.config import config
from roadmap_sync.models import db
from roadmap_sync.middleware.logging_config import configure_logging
from roadmap_sync.middleware.timing import init_request_timing
from roadmap_sync.middleware.rate_limiter import init_rate_limits

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
    default_limits=[],                     # no global limit; applied per blueprint
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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from roadmap_sync.models import workspace as _workspace_models    # noqa: F401
    from roadmap_sync.models import hierarchy as _hierarchy_models    # noqa: F401
    from roadmap_sync.models import sync_history as _sync_models      # noqa: F401
    from roadmap_sync.models import mapping as _mapping_models        # noqa: F401
    from roadmap_sync.models import ranking as _ranking_models        # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from roadmap_sync.blueprints.health_bp import health_bp
    from roadmap_sync.blueprints.workspace_bp import workspace_bp
    from roadmap_sync.blueprints.hierarchy_bp import hierarchy_bp
    from roadmap_sync.blueprints.mapping_bp import mapping_bp
    from roadmap_sync.blueprints.ranking_bp import ranking_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workspace_bp)
    app.register_blueprint(hierarchy_bp)
    app.register_blueprint(mapping_bp)
    app.register_blueprint(ranking_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sync-hierarchy")
    @click.argument("workspace_id")
    @click.option("--max-depth", type=int, default=None, help="Feature traversal depth (1-10).")
    def sync_hierarchy_cmd(workspace_id, max_depth):
        """Run one full hierarchy sync for a workspace."""
        from roadmap_sync.services.hierarchy_sync_service import SyncOptions, start_sync
        options = SyncOptions(
            workspace_id=workspace_id,
            max_depth=max_depth or app.config["SYNC_DEFAULT_MAX_DEPTH"],
        )
        result = start_sync(options)
        logger.info(
            "Sync %s finished status=%s products=%s components=%s initiatives=%s features=%s",
            result.sync_id, result.status, result.products_count, result.components_count,
            result.initiatives_count, result.features_count,
        )
        if result.error:
            logger.error("Sync %s failed: %s", result.sync_id, result.error)

    @app.cli.command("clear-hierarchy")
    @click.argument("workspace_id")
    def clear_hierarchy_cmd(workspace_id):
        """Delete the whole mirrored hierarchy of a workspace."""
        from roadmap_sync.services.hierarchy_teardown_service import clear_hierarchy
        cleared = clear_hierarchy(workspace_id)
        logger.info("clear-hierarchy workspace=%s cleared=%s", workspace_id, cleared)

    @app.cli.command("reset-stale-syncs")
    def reset_stale_syncs_cmd():
        """Mark abandoned in-progress sync runs as failed."""
        from roadmap_sync.services.sync_history_service import reset_stale_runs
        count = reset_stale_runs()
        logger.info("Reset %s stale sync run(s).", count)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logging.getLogger(__name__).error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
