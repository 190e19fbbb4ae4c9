"""
Invitation status transitions and transactional acceptance.

Accepting an invitation writes two rows that must agree: the new
membership and the invitation's move to ACCEPTED. Both happen inside one
database transaction. The status write is a conditional UPDATE that only
matches a PENDING row, so when two transitions race exactly one of them
wins and the loser rolls back without leaving a membership behind.

Both invitation kinds (``Invitation`` for registered users and
``EmailInvitation`` for token holders) go through the helpers here.
"""
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from crewhub.errors import ConflictError, InvalidStateError
from crewhub.models import InvitationStatus, TeamMembership, db, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class AcceptanceResult:
    """The committed invitation and the membership it produced."""

    invitation: object
    membership: TeamMembership


def expire_stale(model, *criteria, now: datetime | None = None) -> int:
    """
    Flip PENDING rows of ``model`` past their expiry to EXPIRED and commit.

    Args:
        model: ``Invitation`` or ``EmailInvitation``
        *criteria: Extra WHERE clauses narrowing the rows considered
        now: Reference time (defaults to current UTC)

    Returns:
        int: Number of rows flipped
    """
    now = now or utcnow()
    result = db.session.execute(
        update(model)
        .where(
            model.status == InvitationStatus.PENDING,
            model.expires_at < now,
            *criteria,
        )
        .values(status=InvitationStatus.EXPIRED, updated_at=now),
        execution_options={"synchronize_session": False},
    )
    count = result.rowcount or 0
    if count:
        db.session.commit()
    return count


def conditional_transition(
    invitation,
    new_status: InvitationStatus,
    action: str,
    now: datetime | None = None,
    **extra_values,
) -> None:
    """
    Move a PENDING invitation to ``new_status`` in the open transaction.

    Does not commit. If another transaction already moved the row out of
    PENDING, the transaction is rolled back and the error names the status
    that won.

    Args:
        invitation: ``Invitation`` or ``EmailInvitation`` instance
        new_status: Target status
        action: Verb used in the error message
        now: Reference time (defaults to current UTC)
        **extra_values: Further columns written by the same UPDATE

    Raises:
        InvalidStateError: The transition is not allowed or was lost to a race
    """
    invitation.ensure_transition(new_status, action)

    model = type(invitation)
    now = now or utcnow()
    values = {"status": new_status, "updated_at": now, **extra_values}
    if new_status is not InvitationStatus.EXPIRED:
        values["responded_at"] = now

    result = db.session.execute(
        update(model)
        .where(
            model.id == invitation.id,
            model.status == InvitationStatus.PENDING,
        )
        .values(**values),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount != 1:
        db.session.rollback()
        # rollback expired the instance, so this reads the winning status
        logger.info(
            "invitation_transition_lost",
            table=model.__tablename__,
            invitation_id=invitation.id,
            attempted=new_status.value,
            current=invitation.status.value,
        )
        raise InvalidStateError(
            f"Invitation is {invitation.status.value}, cannot {action}"
        )


def commit_acceptance(invitation, user_id: int, **extra_values) -> AcceptanceResult:
    """
    Insert the membership and mark the invitation ACCEPTED atomically.

    Args:
        invitation: A PENDING, unexpired invitation the user may accept
        user_id: The accepting user
        **extra_values: Further columns written with the ACCEPTED status

    Returns:
        AcceptanceResult: Both committed rows

    Raises:
        InvalidStateError: A concurrent transition moved the invitation first
        ConflictError: The user became a member through another path
    """
    membership = TeamMembership(
        team_id=invitation.team_id, user_id=user_id, role=invitation.role
    )
    try:
        db.session.add(membership)
        db.session.flush()
        conditional_transition(
            invitation, InvitationStatus.ACCEPTED, "accept", **extra_values
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning(
            "invitation_accept_membership_conflict",
            table=type(invitation).__tablename__,
            invitation_id=invitation.id,
            user_id=user_id,
        )
        raise ConflictError("You are already a member of this team") from None
    except Exception:
        # Never leave the flushed membership behind
        db.session.rollback()
        raise

    return AcceptanceResult(invitation=invitation, membership=membership)
