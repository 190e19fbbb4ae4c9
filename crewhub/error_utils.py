"""
Error handling utilities for consistent logging and JSON error responses.

Domain errors (``crewhub.errors.TeamServiceError``) are expected outcomes and
are answered with their own message and status. Anything else reaching an
API view is unexpected: it is logged with structured context and the client
receives a generic 500 body that leaks nothing.
"""
import logging
import sys
from typing import Any

from flask import g, has_request_context

from crewhub.errors import TeamServiceError


def safe_log_error(
    logger,
    event: str,
    exc_info: bool | BaseException | None = True,
    level: int = logging.ERROR,
    **extra_context: Any,
) -> None:
    """
    Log an error event with structured context and exception details.

    Args:
        logger: A structlog logger
        event: snake_case event name
        exc_info: True for the exception being handled, or an exception object
        level: Log level (default: ERROR)
        **extra_context: Additional fields for the event

    Example:
        try:
            send_invitation(...)
        except SQLAlchemyError as e:
            safe_log_error(logger, "invitation_send_failed", exc_info=e, team_id=team_id)
    """
    context = dict(extra_context)
    if isinstance(exc_info, BaseException):
        context["exception_type"] = type(exc_info).__name__
        context["exception_message"] = str(exc_info)
    elif exc_info is True:
        exc_type, exc_value, _ = sys.exc_info()
        if exc_type is not None:
            context["exception_type"] = exc_type.__name__
            context["exception_message"] = str(exc_value)

    logger.log(level, event, exc_info=exc_info, **context)


def service_error_response(
    logger, error: TeamServiceError
) -> tuple[dict[str, Any], int]:
    """
    Build the JSON body for a domain error and log it at warning.

    Returns:
        Tuple of (JSON response dict, status code)
    """
    logger.warning(
        "team_service_error",
        kind=error.kind,
        status_code=error.status_code,
        reason=error.message,
    )
    return error.to_dict(), error.status_code


def handle_api_exception(
    logger,
    event: str,
    status_code: int = 500,
    public_message: str | None = None,
    **extra_context: Any,
) -> tuple[dict[str, Any], int]:
    """
    Log an unexpected exception and build a sanitized JSON error response.

    Args:
        logger: A structlog logger
        event: Internal event name for logs
        status_code: HTTP status code to return
        public_message: User-facing message (defaults to a generic one)
        **extra_context: Additional context for logging

    Returns:
        Tuple of (JSON response dict, status code)
    """
    safe_log_error(logger, event, exc_info=True, **extra_context)

    if public_message is None:
        if status_code >= 500:
            public_message = "An internal error occurred. Please try again later."
        else:
            public_message = "The request could not be completed."

    response = {"error": public_message, "kind": "internal"}
    if has_request_context() and hasattr(g, "request_id"):
        response["request_id"] = g.request_id
    return response, status_code
