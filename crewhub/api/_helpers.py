"""Small request-parsing helpers shared by the API route modules.

Kept free of app state so route modules can import them without cycles.
"""
from flask import request

from crewhub.errors import ValidationError


def json_body() -> dict:
    """The request's JSON object, or an empty dict when absent."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_int(data: dict, key: str) -> int:
    """Read a required integer field from a JSON body."""
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None


def int_arg(name: str, default: int, minimum: int = 1, maximum: int | None = None) -> int:
    """Read an integer query parameter, clamped to [minimum, maximum]."""
    raw = request.args.get(name)
    if raw in (None, ""):
        value = default
    else:
        try:
            value = int(raw)
        except ValueError:
            raise ValidationError(f"{name} must be an integer") from None
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value
