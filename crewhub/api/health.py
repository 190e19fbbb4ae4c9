"""Health endpoint for the API blueprint.

- GET /health
    - Liveness and database reachability check for load balancers.
    - No auth required.
"""
import structlog
from flask import jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from crewhub.api import api_bp
from crewhub.error_utils import safe_log_error
from crewhub.models import db

logger = structlog.get_logger(__name__)


@api_bp.route("/health", methods=["GET"])
def health_check():
    """Report process health and whether the database answers."""
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db.session.rollback()
        safe_log_error(logger, "health_check_database_unreachable")
        return jsonify({"status": "degraded", "database": "unreachable"}), 503
    return jsonify({"status": "healthy", "database": "ok"})
