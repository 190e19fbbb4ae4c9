"""
Invitation lifecycle.

An invitation starts PENDING and leaves that state exactly once, to
ACCEPTED, DECLINED, CANCELLED or EXPIRED. Expiry is a derived predicate:
every read and every transition checks ``expires_at`` and flips a stale
PENDING row to EXPIRED on the spot, so correctness never depends on the
periodic sweep in ``crewhub.tasks.invitation_expiry`` having run.
"""
from datetime import datetime

import structlog
from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from crewhub.acceptance import (
    AcceptanceResult,
    commit_acceptance,
    conditional_transition,
    expire_stale,
)
from crewhub.activity import log_invitation_event, log_member_added
from crewhub.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from crewhub.models import Invitation, InvitationStatus, TeamRole, User, db
from crewhub.team_permissions import TeamAction, get_member_role, get_membership, require
from crewhub.teams import get_team_or_error, parse_enum

logger = structlog.get_logger(__name__)


def is_expired(invitation: Invitation, now: datetime | None = None) -> bool:
    """True once the expiry has passed, whatever the stored status says."""
    return invitation.is_expired(now)


def mark_expired_invitations(now: datetime | None = None) -> int:
    """
    Sweep every stale PENDING invitation to EXPIRED.

    Purely corrective; all read and transition paths apply the same check.

    Returns:
        int: Number of invitations updated
    """
    count = expire_stale(Invitation, now=now)
    logger.info("invitations_expired", count=count)
    return count


def _get_invitation_or_error(invitation_id: int) -> Invitation:
    invitation = db.session.get(Invitation, invitation_id)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    return invitation


def _refresh_if_stale(invitation: Invitation, now: datetime | None = None) -> bool:
    """Lazily expire one invitation. Returns True if it is now EXPIRED."""
    if invitation.status is InvitationStatus.PENDING and invitation.is_expired(now):
        if expire_stale(Invitation, Invitation.id == invitation.id, now=now):
            logger.info("invitation_lazily_expired", invitation_id=invitation.id)
        else:
            # Lost to a concurrent transition; reload what won.
            db.session.refresh(invitation)
    return invitation.status is InvitationStatus.EXPIRED


def _ensure_actionable(invitation: Invitation, action: str) -> None:
    """
    Require a PENDING, unexpired invitation before a transition.

    A PENDING invitation past its expiry is flipped and committed, then the
    call fails with ExpiredError. The flip is the only change that survives
    a failed transition.
    """
    if invitation.status is not InvitationStatus.PENDING:
        raise InvalidStateError(
            f"Invitation is {invitation.status.value}, cannot {action}"
        )
    if invitation.is_expired():
        if _refresh_if_stale(invitation):
            raise ExpiredError("Invitation has expired")
        raise InvalidStateError(
            f"Invitation is {invitation.status.value}, cannot {action}"
        )


def send_invitation(
    sender_id: int,
    receiver_id: int,
    team_id: int,
    role=TeamRole.MEMBER,
    message: str | None = None,
) -> Invitation:
    """
    Invite a registered user to join a team.

    Args:
        sender_id: OWNER or ADMIN of the team
        receiver_id: User being invited
        team_id: Team to join
        role: ADMIN or MEMBER
        message: Optional note shown to the receiver

    Returns:
        Invitation: The new PENDING invitation

    Raises:
        NotFoundError: Team or receiver missing
        ValidationError: Role is OWNER or unknown, message too long
        ForbiddenError: Sender is not an owner or admin of the team
        ConflictError: Receiver already a member, or already has a pending
            invitation to the team
    """
    team = get_team_or_error(team_id)
    role = parse_enum(TeamRole, role or TeamRole.MEMBER, "role")
    if role is TeamRole.OWNER:
        raise ValidationError("Cannot invite as owner")

    if message is not None:
        message = str(message).strip() or None
        max_length = current_app.config.get("INVITATION_MESSAGE_MAX_LENGTH", 1000)
        if message and len(message) > max_length:
            raise ValidationError(
                f"Invitation message is too long (max {max_length} characters)"
            )

    require(
        get_member_role(team.id, sender_id),
        TeamAction.SEND_INVITATION,
        assigned_role=role,
    )

    if db.session.get(User, receiver_id) is None:
        raise NotFoundError("Recipient user not found")

    if get_membership(team.id, receiver_id) is not None:
        raise ConflictError("User is already a team member")

    existing = db.session.execute(
        select(Invitation).where(
            Invitation.team_id == team.id,
            Invitation.receiver_id == receiver_id,
            Invitation.status == InvitationStatus.PENDING,
        )
    ).scalar_one_or_none()
    if existing is not None and not _refresh_if_stale(existing):
        raise ConflictError("Pending invitation already exists for this user")

    invitation = Invitation(
        team_id=team.id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        role=role,
        message=message,
        status=InvitationStatus.PENDING,
        expires_at=Invitation.default_expiry(
            current_app.config.get("INVITATION_EXPIRY_DAYS", 7)
        ),
    )
    db.session.add(invitation)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Pending invitation already exists for this user") from None

    logger.info(
        "invitation_sent",
        invitation_id=invitation.id,
        team_id=team.id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        role=role.value,
    )
    log_invitation_event(invitation, "sent", actor_id=sender_id)
    return invitation


def get_invitation_by_id(invitation_id: int, requester_id: int) -> Invitation:
    """
    Fetch an invitation visible to its sender or receiver.

    Raises:
        NotFoundError: No such invitation
        ForbiddenError: Requester is neither sender nor receiver
    """
    invitation = _get_invitation_or_error(invitation_id)
    if requester_id not in (invitation.sender_id, invitation.receiver_id):
        raise ForbiddenError("Unauthorized to view this invitation")
    _refresh_if_stale(invitation)
    return invitation


def accept_invitation(invitation_id: int, user_id: int) -> AcceptanceResult:
    """
    Accept an invitation and join the team at the invited role.

    Returns:
        AcceptanceResult: The ACCEPTED invitation and the new membership

    Raises:
        NotFoundError: No such invitation
        ForbiddenError: Caller is not the receiver
        InvalidStateError: Invitation is not PENDING
        ExpiredError: Invitation was PENDING but past its expiry; it is now
            EXPIRED
        ConflictError: Caller is already a member of the team
    """
    invitation = _get_invitation_or_error(invitation_id)
    if invitation.receiver_id != user_id:
        raise ForbiddenError("Only the recipient can accept this invitation")

    _ensure_actionable(invitation, "accept")

    if get_membership(invitation.team_id, user_id) is not None:
        raise ConflictError("You are already a member of this team")

    result = commit_acceptance(invitation, user_id)

    logger.info(
        "invitation_accepted",
        invitation_id=invitation.id,
        team_id=invitation.team_id,
        user_id=user_id,
        role=invitation.role.value,
    )
    log_invitation_event(invitation, "accepted", actor_id=user_id)
    log_member_added(
        invitation.team,
        user_id,
        invitation.role.value,
        actor_id=user_id,
        invitation_id=invitation.id,
    )
    return result


def decline_invitation(invitation_id: int, user_id: int) -> Invitation:
    """Decline an invitation (receiver only, PENDING only)."""
    invitation = _get_invitation_or_error(invitation_id)
    if invitation.receiver_id != user_id:
        raise ForbiddenError("Only the recipient can decline this invitation")

    _ensure_actionable(invitation, "decline")
    conditional_transition(invitation, InvitationStatus.DECLINED, "decline")
    db.session.commit()

    logger.info("invitation_declined", invitation_id=invitation.id, user_id=user_id)
    log_invitation_event(invitation, "declined", actor_id=user_id)
    return invitation


def cancel_invitation(invitation_id: int, user_id: int) -> Invitation:
    """Cancel an invitation (sender only, PENDING only). The row is kept."""
    invitation = _get_invitation_or_error(invitation_id)
    if invitation.sender_id != user_id:
        raise ForbiddenError("Only the sender can cancel this invitation")

    _ensure_actionable(invitation, "cancel")
    conditional_transition(invitation, InvitationStatus.CANCELLED, "cancel")
    db.session.commit()

    logger.info("invitation_cancelled", invitation_id=invitation.id, user_id=user_id)
    log_invitation_event(invitation, "cancelled", actor_id=user_id)
    return invitation


def _list_invitations(criterion, status=None) -> list[Invitation]:
    expire_stale(Invitation, criterion)
    stmt = select(Invitation).where(criterion)
    if status:
        stmt = stmt.where(
            Invitation.status == parse_enum(InvitationStatus, status, "status")
        )
    stmt = stmt.order_by(Invitation.created_at.desc(), Invitation.id.desc())
    return db.session.execute(stmt).scalars().all()


def get_received_invitations(user_id: int, status=None) -> list[Invitation]:
    """Invitations addressed to a user, newest first."""
    return _list_invitations(Invitation.receiver_id == user_id, status)


def get_sent_invitations(user_id: int, status=None) -> list[Invitation]:
    """Invitations a user has sent, newest first."""
    return _list_invitations(Invitation.sender_id == user_id, status)


def get_team_invitations(team_id: int, requester_id: int, status=None) -> list[Invitation]:
    """
    All invitations for a team, newest first.

    Raises:
        NotFoundError: No such team
        ForbiddenError: Requester is not OWNER or ADMIN of the team
    """
    team = get_team_or_error(team_id)
    require(get_member_role(team.id, requester_id), TeamAction.VIEW_TEAM_INVITATIONS)
    return _list_invitations(Invitation.team_id == team.id, status)
