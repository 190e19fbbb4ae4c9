"""
Flask application factory and configuration.

This module contains the Flask application factory that initializes
and configures all extensions, blueprints, and error handling for the
team membership and invitation service.
"""
import os
import uuid

import structlog
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_talisman import Talisman
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.exceptions import HTTPException

from config.settings import DevelopmentConfig, ProductionConfig, TestingConfig
from crewhub.error_utils import handle_api_exception, service_error_response
from crewhub.errors import TeamServiceError
from crewhub.models import User, db
from crewhub.structured_logging import configure_structlog

logger = structlog.get_logger(__name__)

# Shared extension instances so blueprints can exempt endpoints or add limits
csrf = CSRFProtect()
migrate = Migrate()
limiter = Limiter(key_func=get_remote_address)
login_manager = LoginManager()


def create_app(config_class=None):
    """
    Create and configure Flask application.

    Args:
        config_class: Configuration class to use. If None, it is picked
                     from the FLASK_ENV environment variable.

    Returns:
        Flask: Configured Flask application instance
    """
    app = Flask(__name__)

    if config_class is None:
        env = os.environ.get("FLASK_ENV", "development")
        if env == "production":
            config_class = ProductionConfig
        elif env == "testing":
            config_class = TestingConfig
        else:
            config_class = DevelopmentConfig

    app.config.from_object(config_class)

    # Under pytest, force hermetic settings before any extension sees the config
    if os.environ.get("PYTEST_CURRENT_TEST"):
        app.config.update(
            {
                "TESTING": True,
                "WTF_CSRF_ENABLED": False,
                "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
                "SQLALCHEMY_ENGINE_OPTIONS": {},
                "RATELIMIT_ENABLED": False,
                "RATELIMIT_STORAGE_URL": "memory://",
                "FORCE_HTTPS": False,
                "INVITATION_SWEEP_ENABLED": False,
            }
        )

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if not db_uri:
        raise RuntimeError("DATABASE_URL must be set")
    # SQLite is reserved for tests; partial indexes and row locking assume PostgreSQL
    if db_uri.startswith("sqlite:") and not app.config.get("TESTING"):
        raise RuntimeError(
            "SQLite is only supported in TESTING. Set DATABASE_URL to PostgreSQL."
        )

    configure_structlog(app, role="web")

    init_extensions(app)
    register_blueprints(app)
    register_error_handlers(app)

    # Security headers (only in production or if explicitly enabled)
    if app.config.get("FORCE_HTTPS") or not (app.debug or app.testing):
        Talisman(
            app,
            force_https=app.config.get("FORCE_HTTPS", False),
            content_security_policy=app.config.get("CONTENT_SECURITY_POLICY"),
        )

    logger.debug("app_created", config=config_class.__name__)
    return app


def init_extensions(app):
    """
    Initialize Flask extensions.

    Args:
        app: Flask application instance
    """
    db.init_app(app)
    migrate.init_app(app, db)

    CORS(
        app,
        resources={r"/api/*": {"origins": app.config.get("CORS_ORIGINS", [])}},
        supports_credentials=True,
    )

    csrf.init_app(app)

    app.config.setdefault("RATELIMIT_STORAGE_URI", app.config.get("RATELIMIT_STORAGE_URL"))
    limiter.init_app(app)

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        """Load user by ID for Flask-Login."""
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required", "kind": "unauthenticated"}), 401

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    # A failed view must not leave an aborted transaction on the session
    @app.teardown_request
    def _teardown_request(exc):
        if exc is not None:
            db.session.rollback()


def register_blueprints(flask_app):
    """
    Register Flask blueprints.

    Args:
        flask_app: Flask application instance
    """
    from crewhub.api import api_bp

    # Import API modules to register their routes on api_bp
    import crewhub.api.email_invitations  # noqa: F401
    import crewhub.api.health  # noqa: F401
    import crewhub.api.invitations  # noqa: F401
    import crewhub.api.teams  # noqa: F401

    flask_app.register_blueprint(api_bp, url_prefix="/api")

    from crewhub.auth.routes import auth_bp

    flask_app.register_blueprint(auth_bp, url_prefix="/auth")


def register_error_handlers(app):
    """
    Register JSON error handlers.

    Args:
        app: Flask application instance
    """

    @app.errorhandler(TeamServiceError)
    def team_service_error(error):
        db.session.rollback()
        body, status = service_error_response(logger, error)
        return jsonify(body), status

    @app.errorhandler(CSRFError)
    def csrf_error(error):
        return jsonify({"error": error.description, "kind": "csrf"}), 400

    @app.errorhandler(HTTPException)
    def http_error(error):
        kind = (error.name or "error").lower().replace(" ", "_")
        return jsonify({"error": error.description, "kind": kind}), error.code

    @app.errorhandler(Exception)
    def unexpected_error(error):
        db.session.rollback()
        body, status = handle_api_exception(
            logger,
            "unhandled_exception",
            path=request.path,
            method=request.method,
        )
        return jsonify(body), status
