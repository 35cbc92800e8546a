import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from flask import Flask, jsonify
from sqlalchemy import text

from .extensions import db, migrate, login_manager, storage, compile_queue
from .config import Config

# Blueprints
from .blueprints.errors import errors_bp
from .blueprints.api import api_bp
from .blueprints.public import public_bp
from .blueprints.proxy import proxy_bp
from .blueprints.storage import storage_bp


# Optional: Sentry
def _init_sentry(app):
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.0),
            environment=os.getenv("ENV", "development"),
            release=app.config.get("APP_VERSION") or os.getenv("GIT_COMMIT", None),
            send_default_pii=False,
        )
        app.logger.info("Sentry initialized.")
    except Exception as e:
        app.logger.warning(f"Sentry init failed: {e}")


def _init_logging(app):
    level_name = app.config.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    log_dir = Path(app.config.get("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / app.config.get("LOG_FILENAME", "arcards.log")

    # Formatter: text or JSON
    if app.config.get("LOG_JSON", False):
        import json_log_formatter
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(module)s: %(message)s")

    # app.logger is "arcards"; service modules log to its children
    logger = logging.getLogger("arcards")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, "_arcards", False):
            logger.removeHandler(handler)
            handler.close()

    # Rotating file handler (5MB x 5)
    file_handler = RotatingFileHandler(
        log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler._arcards = True
    logger.addHandler(file_handler)

    # Stream to stdout as well (useful on dev/docker)
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler._arcards = True
    logger.addHandler(stream_handler)

    app.logger.info("Logging initialized.")


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    # --- base config defaults ---
    app.config.setdefault("SECRET_KEY", "change-me")
    app.config.setdefault(
        "SQLALCHEMY_DATABASE_URI",
        "sqlite:///" + os.path.join(app.instance_path, "arcards.db"),
    )
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    app.config.setdefault("MAX_CONTENT_LENGTH", 100 * 1024 * 1024)
    app.config.setdefault("COMPILE_EXECUTOR", "thread")

    app.config.from_pyfile("config.py", silent=True)
    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    # Logging must come before extensions so errors during init are captured
    _init_logging(app)
    _init_sentry(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    storage.init_app(app)
    compile_queue.init_app(app)

    from . import security  # noqa: F401  (registers the request loader)
    from . import models  # noqa: F401

    # Blueprints
    app.register_blueprint(errors_bp)  # error handlers
    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(public_bp)
    app.register_blueprint(proxy_bp)
    app.register_blueprint(storage_bp)

    from .cli import arcards_cli
    app.cli.add_command(arcards_cli)

    @app.get("/health")
    def health():
        try:
            db.session.execute(text("SELECT 1"))
        except Exception:
            app.logger.exception("health check: database unavailable")
            return jsonify(status="degraded", database=False), 503
        return jsonify(status="ok", database=True, version=app.config.get("APP_VERSION"))

    return app
