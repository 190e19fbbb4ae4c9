"""
Domain errors raised by the team and invitation services.

Every error carries a human-readable message that callers surface verbatim,
plus the HTTP status the REST layer maps it to. Services raise these at the
point of detection; nothing in the engine retries them except the single
slug-collision retry in ``crewhub.teams``.
"""


class TeamServiceError(Exception):
    """Base class for all user-facing team/invitation errors."""

    status_code = 400
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class ValidationError(TeamServiceError):
    """Malformed or missing input."""

    status_code = 400
    kind = "validation"


class NotFoundError(TeamServiceError):
    """Team, user, membership or invitation does not exist."""

    status_code = 404
    kind = "not_found"


class ForbiddenError(TeamServiceError):
    """Actor lacks the role or relationship required for the action."""

    status_code = 403
    kind = "forbidden"


class ConflictError(TeamServiceError):
    """Uniqueness violation (duplicate invitation, membership or slug)."""

    status_code = 409
    kind = "conflict"


class InvalidStateError(TeamServiceError):
    """Action attempted against an invitation not in the required state."""

    status_code = 409
    kind = "invalid_state"


class ExpiredError(InvalidStateError):
    """The invitation was found past its expiry and has been flipped to EXPIRED."""

    kind = "expired"
