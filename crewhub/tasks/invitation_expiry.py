"""
Celery task that sweeps stale PENDING invitations to EXPIRED.
Runs as a scheduled task via Celery Beat.

Both registered-user and email invitations are swept. The sweep is
corrective only: every read and transition path performs the same expiry
check, so a missed run never affects correctness.
"""
import structlog
from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from crewhub import create_app
from crewhub.email_invitations import mark_expired_email_invitations
from crewhub.error_utils import safe_log_error
from crewhub.invitations import mark_expired_invitations
from crewhub.models import db, utcnow

logger = structlog.get_logger(__name__)


@shared_task(bind=True)
def mark_expired_invitations_task(self):
    """
    Flip every PENDING invitation whose expiry has passed to EXPIRED.

    Returns:
        dict: Sweep statistics
    """
    app = create_app()
    with app.app_context():
        now = utcnow()
        logger.info("invitation_sweep_started", cutoff=now.isoformat())
        try:
            expired = mark_expired_invitations(now=now)
            email_expired = mark_expired_email_invitations(now=now)
        except SQLAlchemyError as e:
            db.session.rollback()
            safe_log_error(logger, "invitation_sweep_failed", exc_info=e)
            return {"error": str(e), "expired": 0, "email_expired": 0}

        logger.info(
            "invitation_sweep_complete", expired=expired, email_expired=email_expired
        )
        return {
            "expired": expired,
            "email_expired": email_expired,
            "cutoff": now.isoformat(),
        }
