"""
Celery application configuration.

The worker runs the periodic expired-invitation sweep. Beat schedules it
every INVITATION_SWEEP_INTERVAL_SECONDS unless INVITATION_SWEEP_ENABLED is
off.
"""
import os

from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger

from config.settings import Config

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))


def make_celery(app_name=__name__, config=None):
    """Create and configure Celery application."""
    config = config or Config()

    celery_app = Celery(
        app_name,
        broker=config.CELERY_BROKER_URL,
        backend=config.CELERY_RESULT_BACKEND,
        include=["crewhub.tasks.invitation_expiry"],
    )

    celery_app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        broker_connection_retry_on_startup=True,
    )

    beat_schedule = {}
    if config.INVITATION_SWEEP_ENABLED:
        beat_schedule["mark-expired-invitations"] = {
            "task": "crewhub.tasks.invitation_expiry.mark_expired_invitations_task",
            "schedule": float(config.INVITATION_SWEEP_INTERVAL_SECONDS),
        }
    celery_app.conf.beat_schedule = beat_schedule

    return celery_app


celery_app = make_celery()


def _instance_path() -> str:
    return os.environ.get("CREWHUB_INSTANCE_PATH") or os.path.join(REPO_ROOT, "instance")


# Route Celery's own loggers through structlog
@after_setup_logger.connect
def _setup_celery_logger(logger, *args, **kwargs):  # pragma: no cover - logging init
    from crewhub.structured_logging import configure_structlog_celery

    configure_structlog_celery(_instance_path())


@after_setup_task_logger.connect
def _setup_celery_task_logger(logger, *args, **kwargs):  # pragma: no cover - logging init
    from crewhub.structured_logging import configure_structlog_celery

    configure_structlog_celery(_instance_path())
