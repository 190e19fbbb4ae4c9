"""
Structured logging for the web app and the Celery worker.

Events are emitted through structlog with snake_case names and keyword
context, for example::

    logger = structlog.get_logger(__name__)
    logger.info("invitation_sent", invitation_id=7, team_id=3, receiver_id=9)

Outside of tests, standard logging is routed to rotating JSON files
(python-json-logger) under ``<instance>/logs`` plus a console stream.
Tests get a minimal console renderer and never touch the filesystem.
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from pythonjsonlogger.json import JsonFormatter

_STRUCTLOG_CONFIGURED = False

# Substrings of event keys whose values must never reach a log file
SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "authorization",
    "cookie",
    "csrf",
)

# Paths too chatty to log at INFO
QUIET_PATHS = ("/api/health",)


def get_log_dir(instance_path: str, override: str | None = None) -> str:
    """Resolve the log directory: override, then LOG_DIR, then <instance>/logs."""
    base = override or os.environ.get("LOG_DIR") or os.path.join(instance_path, "logs")
    Path(base).mkdir(parents=True, exist_ok=True)
    return base


def _add_request_context(logger, method_name, event_dict):
    """Attach request method/path and the authenticated user, when present."""
    from flask import g, has_request_context, request
    from flask_login import current_user

    if has_request_context():
        event_dict.setdefault("method", request.method)
        event_dict.setdefault("path", request.path)
        event_dict.setdefault("endpoint", request.endpoint)
        if hasattr(g, "request_id"):
            event_dict["request_id"] = g.request_id
        if current_user and current_user.is_authenticated:
            event_dict.setdefault("user_id", current_user.id)
    return event_dict


def _add_celery_context(logger, method_name, event_dict):
    """Attach the running Celery task id and name, when present."""
    from celery import current_task

    if current_task and current_task.request and current_task.request.id:
        event_dict["task_id"] = current_task.request.id
        event_dict["task_name"] = current_task.request.task
    return event_dict


def _drop_quiet_paths(logger, method_name, event_dict):
    if method_name in ("info", "debug"):
        path = event_dict.get("path") or ""
        if any(path.startswith(p) for p in QUIET_PATHS):
            raise structlog.DropEvent
    return event_dict


def _censor_sensitive_data(logger, method_name, event_dict):
    for key in list(event_dict):
        if any(marker in key.lower() for marker in SENSITIVE_KEYS):
            event_dict[key] = "***REDACTED***"
    return event_dict


def _build_json_handler(path: str, level: int) -> RotatingFileHandler:
    # 20 MB per file, 5 backups
    handler = RotatingFileHandler(path, maxBytes=20 * 1024 * 1024, backupCount=5)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler


def _build_console_handler(level: int) -> logging.StreamHandler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler


def get_log_level(app_config: dict | None = None) -> int:
    """LOG_LEVEL from app config, then environment, then INFO."""
    if app_config and app_config.get("LOG_LEVEL"):
        level_name = str(app_config["LOG_LEVEL"])
    else:
        level_name = os.environ.get("LOG_LEVEL", "INFO")
    return getattr(logging, level_name.upper(), logging.INFO)


def configure_component_loggers(base_level: int) -> None:
    """Quiet third-party loggers unless running at DEBUG."""
    verbose = base_level <= logging.DEBUG
    logging.getLogger("werkzeug").setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if verbose else logging.WARNING
    )
    logging.getLogger("celery").setLevel(min(base_level, logging.INFO))


def _configure_stdlib(log_paths: list[tuple[str, int]], level: int) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    for path, handler_level in log_paths:
        root.addHandler(_build_json_handler(path, handler_level))
    root.addHandler(_build_console_handler(level))
    configure_component_loggers(level)


def _shared_processors(*context_processors) -> list:
    return [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_logger_name,
        *context_processors,
        _censor_sensitive_data,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def configure_structlog(app, role: str = "web") -> dict:
    """
    Configure structlog for the Flask app.

    Args:
        app: Flask app (uses .config and .instance_path)
        role: "web" or "worker", recorded in the startup event

    Returns:
        dict: Paths of the log files in use (empty strings under TESTING)
    """
    global _STRUCTLOG_CONFIGURED

    if app.config.get("TESTING"):
        if not _STRUCTLOG_CONFIGURED:
            structlog.configure(
                processors=[
                    structlog.processors.add_log_level,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.dev.ConsoleRenderer(colors=False),
                ],
                wrapper_class=structlog.make_filtering_bound_logger(logging.WARNING),
                context_class=dict,
                logger_factory=structlog.PrintLoggerFactory(),
                cache_logger_on_first_use=False,
            )
            _STRUCTLOG_CONFIGURED = True
        return {"log_dir": "", "app_log": "", "error_log": ""}

    log_dir = get_log_dir(app.instance_path)
    app_log_path = os.path.join(log_dir, "app.json")
    error_log_path = os.path.join(log_dir, "error.json")
    level = get_log_level(app.config)

    if not _STRUCTLOG_CONFIGURED:
        _configure_stdlib([(app_log_path, level), (error_log_path, logging.WARNING)], level)
        structlog.configure(
            processors=_shared_processors(
                _add_request_context, _add_celery_context, _drop_quiet_paths
            ),
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _STRUCTLOG_CONFIGURED = True

    structlog.get_logger(__name__).debug(
        "logging_configured",
        role=role,
        log_dir=log_dir,
        level=logging.getLevelName(level),
    )
    return {"log_dir": log_dir, "app_log": app_log_path, "error_log": error_log_path}


def configure_structlog_celery(instance_path: str) -> None:
    """Configure structlog for Celery worker and beat processes."""
    global _STRUCTLOG_CONFIGURED

    if _STRUCTLOG_CONFIGURED:
        return

    log_dir = get_log_dir(instance_path)
    level = get_log_level()
    _configure_stdlib(
        [
            (os.path.join(log_dir, "worker.json"), level),
            (os.path.join(log_dir, "error.json"), logging.WARNING),
        ],
        level,
    )
    structlog.configure(
        processors=_shared_processors(_add_celery_context),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _STRUCTLOG_CONFIGURED = True

    structlog.get_logger(__name__).debug("celery_logging_configured", log_dir=log_dir)
