"""
Email invitations for people who do not have an account yet.

The invitee is addressed by email address and later identified by a random
token. The token follows the same lifecycle as a registered-user
invitation: PENDING until it is accepted, cancelled or expires, with lazy
expiry on every read and the same conditional UPDATE guarding acceptance.
Delivering the token (by mail or otherwise) is left to the caller.
"""
import secrets
from datetime import datetime

import structlog
from email_validator import EmailNotValidError, validate_email
from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from crewhub.acceptance import (
    AcceptanceResult,
    commit_acceptance,
    conditional_transition,
    expire_stale,
)
from crewhub.activity import log_email_invitation_event, log_member_added
from crewhub.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from crewhub.models import EmailInvitation, InvitationStatus, TeamRole, User, db
from crewhub.team_permissions import (
    MANAGERS,
    TeamAction,
    get_member_role,
    get_membership,
    require,
)
from crewhub.teams import get_team_or_error, parse_enum

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 32

_CLOSED_MESSAGES = {
    InvitationStatus.ACCEPTED: "This invitation has already been accepted",
    InvitationStatus.CANCELLED: "This invitation has been cancelled",
}


def normalize_email(email) -> str:
    """
    Validate an email address and return it in lower case.

    Raises:
        ValidationError: Missing or malformed address
    """
    email = str(email or "").strip()
    if not email:
        raise ValidationError("Email is required")
    try:
        validated = validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError("Invalid email address") from None
    return validated.normalized.lower()


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def _pending_for(team_id: int, email: str) -> EmailInvitation | None:
    return db.session.execute(
        select(EmailInvitation).where(
            EmailInvitation.team_id == team_id,
            EmailInvitation.email == email,
            EmailInvitation.status == InvitationStatus.PENDING,
        )
    ).scalar_one_or_none()


def _refresh_if_stale(invitation: EmailInvitation, now: datetime | None = None) -> bool:
    """Lazily expire one email invitation. Returns True if it is now EXPIRED."""
    if invitation.status is InvitationStatus.PENDING and invitation.is_expired(now):
        if expire_stale(EmailInvitation, EmailInvitation.id == invitation.id, now=now):
            logger.info("email_invitation_lazily_expired", email_invitation_id=invitation.id)
        else:
            db.session.refresh(invitation)
    return invitation.status is InvitationStatus.EXPIRED


def send_email_invitation(
    sender_id: int,
    team_id: int,
    email,
    role=TeamRole.MEMBER,
    message: str | None = None,
) -> EmailInvitation:
    """
    Invite an email address to join a team.

    Args:
        sender_id: OWNER or ADMIN of the team
        team_id: Team to join
        email: Address of the invitee
        role: ADMIN or MEMBER
        message: Optional note for the invitee

    Returns:
        EmailInvitation: The new PENDING invitation, token included

    Raises:
        NotFoundError: Team missing
        ValidationError: Bad email, role OWNER or unknown, message too long
        ForbiddenError: Sender is not an owner or admin of the team
        ConflictError: The address already belongs to a member, or already
            has a pending invitation to the team
    """
    team = get_team_or_error(team_id)
    email = normalize_email(email)
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

    require(get_member_role(team.id, sender_id), TeamAction.SEND_INVITATION)

    registered = db.session.execute(
        select(User).where(func.lower(User.email) == email)
    ).scalar_one_or_none()
    if registered is not None and get_membership(team.id, registered.id) is not None:
        raise ConflictError("User is already a team member")

    existing = _pending_for(team.id, email)
    if existing is not None and not _refresh_if_stale(existing):
        raise ConflictError("An invitation to this email for this team already exists")

    invitation = EmailInvitation(
        team_id=team.id,
        invited_by_id=sender_id,
        email=email,
        role=role,
        message=message,
        token=generate_token(),
        status=InvitationStatus.PENDING,
        expires_at=EmailInvitation.default_expiry(
            current_app.config.get("INVITATION_EXPIRY_DAYS", 7)
        ),
    )
    db.session.add(invitation)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(
            "An invitation to this email for this team already exists"
        ) from None

    logger.info(
        "email_invitation_sent",
        email_invitation_id=invitation.id,
        team_id=team.id,
        sender_id=sender_id,
        role=role.value,
    )
    log_email_invitation_event(invitation, "sent", actor_id=sender_id)
    return invitation


def validate_invitation_token(token: str) -> EmailInvitation:
    """
    Look up a token and require it to be PENDING and unexpired.

    A PENDING invitation past its expiry is flipped to EXPIRED first.

    Raises:
        NotFoundError: Unknown token
        ExpiredError: Invitation expired
        InvalidStateError: Invitation already accepted or cancelled
    """
    invitation = None
    if token:
        invitation = db.session.execute(
            select(EmailInvitation).where(EmailInvitation.token == token)
        ).scalar_one_or_none()
    if invitation is None:
        raise NotFoundError("Invalid invitation token")

    if _refresh_if_stale(invitation):
        raise ExpiredError("This invitation has expired")
    if invitation.status is not InvitationStatus.PENDING:
        raise InvalidStateError(
            _CLOSED_MESSAGES.get(
                invitation.status, f"Invitation is {invitation.status.value}"
            )
        )
    return invitation


def accept_email_invitation(token: str, user_id: int) -> AcceptanceResult:
    """
    Accept an email invitation as a signed-in user.

    Holding the token is what entitles the caller; the account's email does
    not have to match the invited address.

    Returns:
        AcceptanceResult: The ACCEPTED invitation and the new membership

    Raises:
        NotFoundError: Unknown token or user
        ExpiredError: Invitation expired
        InvalidStateError: Invitation no longer PENDING
        ConflictError: Caller is already a member of the team
    """
    invitation = validate_invitation_token(token)
    if db.session.get(User, user_id) is None:
        raise NotFoundError("User not found")

    if get_membership(invitation.team_id, user_id) is not None:
        raise ConflictError("You are already a member of this team")

    result = commit_acceptance(invitation, user_id, accepted_by_id=user_id)

    logger.info(
        "email_invitation_accepted",
        email_invitation_id=invitation.id,
        team_id=invitation.team_id,
        user_id=user_id,
        role=invitation.role.value,
    )
    log_email_invitation_event(invitation, "accepted", actor_id=user_id)
    log_member_added(
        invitation.team,
        user_id,
        invitation.role.value,
        actor_id=user_id,
        email_invitation_id=invitation.id,
    )
    return result


def cancel_email_invitation(invitation_id: int, user_id: int) -> EmailInvitation:
    """
    Cancel a PENDING email invitation. The row is kept.

    The inviter may always cancel; so may any current owner or admin.

    Raises:
        NotFoundError: No such invitation
        ForbiddenError: Caller is neither the inviter nor a team manager
        ExpiredError: Invitation was PENDING but past its expiry
        InvalidStateError: Invitation no longer PENDING
    """
    invitation = db.session.get(EmailInvitation, invitation_id)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    if (
        invitation.invited_by_id != user_id
        and get_member_role(invitation.team_id, user_id) not in MANAGERS
    ):
        raise ForbiddenError("You do not have permission to cancel this invitation")

    if invitation.status is not InvitationStatus.PENDING:
        raise InvalidStateError(
            f"Invitation is {invitation.status.value}, cannot cancel"
        )
    if _refresh_if_stale(invitation):
        raise ExpiredError("This invitation has expired")

    conditional_transition(invitation, InvitationStatus.CANCELLED, "cancel")
    db.session.commit()

    logger.info(
        "email_invitation_cancelled", email_invitation_id=invitation.id, user_id=user_id
    )
    log_email_invitation_event(invitation, "cancelled", actor_id=user_id)
    return invitation


def get_team_email_invitations(team_id: int, requester_id: int) -> list[EmailInvitation]:
    """
    Pending email invitations of a team, newest first.

    Raises:
        NotFoundError: No such team
        ForbiddenError: Requester is not OWNER or ADMIN of the team
    """
    team = get_team_or_error(team_id)
    require(get_member_role(team.id, requester_id), TeamAction.VIEW_TEAM_INVITATIONS)
    expire_stale(EmailInvitation, EmailInvitation.team_id == team.id)
    return db.session.execute(
        select(EmailInvitation)
        .where(
            EmailInvitation.team_id == team.id,
            EmailInvitation.status == InvitationStatus.PENDING,
        )
        .order_by(EmailInvitation.created_at.desc(), EmailInvitation.id.desc())
    ).scalars().all()


def has_pending_email_invitation(team_id: int, requester_id: int, email) -> bool:
    """Whether an address has a live invitation to the team (managers only)."""
    team = get_team_or_error(team_id)
    require(get_member_role(team.id, requester_id), TeamAction.VIEW_TEAM_INVITATIONS)
    existing = _pending_for(team.id, normalize_email(email))
    return existing is not None and not _refresh_if_stale(existing)


def mark_expired_email_invitations(now: datetime | None = None) -> int:
    """
    Sweep every stale PENDING email invitation to EXPIRED.

    Returns:
        int: Number of invitations updated
    """
    count = expire_stale(EmailInvitation, now=now)
    logger.info("email_invitations_expired", count=count)
    return count
