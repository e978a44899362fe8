"""
Flask application factory.
"""
import logging
from typing import Callable, Optional
from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy.orm import Session

from entitlement_sync.api.webhooks import create_webhook_blueprint
from entitlement_sync.config import Settings, settings as default_settings
from entitlement_sync.db import Base, SessionLocal, init_db, init_engine, normalize_database_url
from entitlement_sync.services.ingestion import WebhookIngestor

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, session_factory: Optional[Callable[[], Session]] = None) -> Flask:
    """
    Build the webhook service.

    Args:
        settings: Settings to use (defaults to the environment-loaded instance)
        session_factory: Session factory for all stores. When omitted the process-wide
            engine is created from settings.database_url and Flask-Migrate is wired up.
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    app = Flask(__name__)

    if session_factory is None:
        engine = init_engine(settings.database_url)
        init_db(engine)
        _init_migrations(app, settings)
        session_factory = SessionLocal

    ingestor = WebhookIngestor(session_factory, settings)
    app.extensions["entitlement_sync"] = {
        "settings": settings,
        "ingestor": ingestor,
    }

    # Server-to-server endpoint; CORS only matters for browser-based webhook debuggers
    CORS(
        app,
        resources={settings.webhook_path: {"origins": settings.allowed_origins or "*"}},
        allow_headers=["Authorization", "Content-Type", "X-Client-Info", "apikey"],
        methods=["POST", "OPTIONS"],
        max_age=3600,
    )

    app.register_blueprint(create_webhook_blueprint(settings.webhook_path))

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"}), 200

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"success": False, "message": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"success": False, "message": "Method not allowed"}), 405

    logger.info(f"Webhook endpoint registered at {settings.webhook_path} (source: {ingestor.adapter.name})")
    return app


def _init_migrations(app: Flask, settings: Settings) -> None:
    """
    Initialize Flask-Migrate over the shared Base metadata so 'flask db upgrade' works.

    The Flask-SQLAlchemy instance exists only for migrations; request handling uses
    SessionLocal from db.py.
    """
    from flask_sqlalchemy import SQLAlchemy
    from flask_migrate import Migrate
    from entitlement_sync import models  # noqa: F401

    app.config['SQLALCHEMY_DATABASE_URI'] = normalize_database_url(settings.database_url)
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    db = SQLAlchemy(app, metadata=Base.metadata)
    Migrate(app, db, directory="migrations")
    logger.info("Flask-Migrate initialized successfully")
