import atexit
import logging
import os

from flask import Flask
from .extensions import db, migrate, rq


def create_app(config_overrides=None):
    """App factory.

    ``config_overrides`` is applied on top of ``config.Config``; tests use it
    to point the database and scratch directories at temporary locations.
    """
    app = Flask(__name__)
    app.config.from_object('config.Config')
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))

    db.init_app(app)
    migrate.init_app(app, db)
    rq.init_app(app)

    from .auth import init_auth
    init_auth(app)

    from .blueprints.recordings import bp as recordings_bp
    app.register_blueprint(recordings_bp, url_prefix="/api")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # Alembic sets SKIP_CREATE_ALL so migrations own the schema
    if app.config.get('AUTO_CREATE_TABLES') and not os.getenv("SKIP_CREATE_ALL"):
        from . import models  # noqa: F401
        with app.app_context():
            db.create_all()

    if app.config.get('RETENTION_SWEEP_ENABLED') and not app.testing:
        from .jobs.retention import RetentionScheduler
        scheduler = RetentionScheduler(
            app,
            interval_seconds=app.config.get('RETENTION_SWEEP_INTERVAL_SECONDS', 3600),
        )
        app.extensions['recorder.retention_scheduler'] = scheduler
        scheduler.start()
        atexit.register(scheduler.stop)

    return app
