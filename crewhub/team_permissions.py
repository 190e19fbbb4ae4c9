"""
Team permission checking utilities.

This module holds the role authorization policy for membership mutation.
:func:`authorize` is a pure decision function over the actor's current role;
:func:`get_member_role` re-reads that role from the membership table on every
call so a just-demoted admin is rejected on their very next request.
"""
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select

from crewhub.errors import ForbiddenError
from crewhub.models import TeamMembership, TeamRole, db


class TeamAction(Enum):
    """Actions gated by the role policy."""

    CREATE_TEAM = "create_team"
    UPDATE_TEAM = "update_team"
    DELETE_TEAM = "delete_team"
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    CHANGE_MEMBER_ROLE = "change_member_role"
    LEAVE_TEAM = "leave_team"
    SEND_INVITATION = "send_invitation"
    VIEW_TEAM_INVITATIONS = "view_team_invitations"
    CREATE_SUB_TEAM = "create_sub_team"
    TRANSFER_OWNERSHIP = "transfer_ownership"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def _deny(reason: str) -> Decision:
    return Decision(False, reason)


OWNER_ONLY = frozenset({TeamRole.OWNER})
MANAGERS = frozenset({TeamRole.OWNER, TeamRole.ADMIN})

# (roles allowed to act, denial reason when the actor's role is not in the set)
_REQUIRED_ROLES = {
    TeamAction.UPDATE_TEAM: (OWNER_ONLY, "Only team owner can update team details"),
    TeamAction.DELETE_TEAM: (OWNER_ONLY, "Only team owner can delete the team"),
    TeamAction.ADD_MEMBER: (MANAGERS, "Only team owners and admins can add members"),
    TeamAction.REMOVE_MEMBER: (
        MANAGERS,
        "Only team owners and admins can remove members",
    ),
    TeamAction.CHANGE_MEMBER_ROLE: (
        OWNER_ONLY,
        "Only team owner can update member roles",
    ),
    TeamAction.SEND_INVITATION: (
        MANAGERS,
        "Only team owners and admins can send invitations",
    ),
    TeamAction.VIEW_TEAM_INVITATIONS: (
        MANAGERS,
        "Only team owners and admins can view team invitations",
    ),
    TeamAction.CREATE_SUB_TEAM: (MANAGERS, "Only admins can create sub-teams"),
    TeamAction.TRANSFER_OWNERSHIP: (
        OWNER_ONLY,
        "Only team owner can transfer ownership",
    ),
}

CANNOT_REMOVE_OWNER = "Cannot remove team owner. Transfer ownership or delete team instead"
CANNOT_CHANGE_OWNER_ROLE = "Cannot change owner role. Transfer ownership instead"
OWNER_CANNOT_LEAVE = "Team owner cannot leave. Transfer ownership or delete team instead"
ASSIGN_ROLE_OWNER_ONLY = "Only team owner can assign admin or owner roles"


def authorize(
    actor_role: TeamRole | None,
    action: TeamAction,
    target_role: TeamRole | None = None,
    assigned_role: TeamRole | None = None,
) -> Decision:
    """
    Decide whether an actor may perform ``action``.

    Args:
        actor_role: Actor's current role in the team, None when not a member
        action: The mutation being attempted
        target_role: Current role of the member being acted on, if any
        assigned_role: Role being granted by add member or send invitation

    Returns:
        Decision: ``allowed`` plus a human-readable ``reason`` on denial
    """
    if action is TeamAction.CREATE_TEAM:
        return ALLOW

    if action is TeamAction.LEAVE_TEAM:
        if actor_role is None:
            return _deny("You are not a member of this team")
        if actor_role is TeamRole.OWNER:
            return _deny(OWNER_CANNOT_LEAVE)
        return ALLOW

    required, reason = _REQUIRED_ROLES[action]
    if actor_role not in required:
        return _deny(reason)

    if action is TeamAction.ADD_MEMBER:
        if (
            assigned_role is not None
            and assigned_role is not TeamRole.MEMBER
            and actor_role is not TeamRole.OWNER
        ):
            return _deny(ASSIGN_ROLE_OWNER_ONLY)

    elif action is TeamAction.REMOVE_MEMBER:
        if target_role is TeamRole.OWNER:
            return _deny(CANNOT_REMOVE_OWNER)
        if actor_role is TeamRole.ADMIN and target_role is not TeamRole.MEMBER:
            return _deny("Admins can only remove regular members")

    elif action is TeamAction.CHANGE_MEMBER_ROLE:
        if target_role is TeamRole.OWNER:
            return _deny(CANNOT_CHANGE_OWNER_ROLE)

    return ALLOW


def require(
    actor_role: TeamRole | None,
    action: TeamAction,
    target_role: TeamRole | None = None,
    assigned_role: TeamRole | None = None,
) -> None:
    """
    Raise unless :func:`authorize` allows the action.

    Raises:
        ForbiddenError: Carrying the policy's denial reason verbatim
    """
    decision = authorize(actor_role, action, target_role, assigned_role)
    if not decision.allowed:
        raise ForbiddenError(decision.reason)


def get_membership(team_id: int, user_id: int) -> TeamMembership | None:
    """Fetch the (team, user) membership row, or None."""
    return db.session.execute(
        select(TeamMembership).where(
            TeamMembership.team_id == team_id, TeamMembership.user_id == user_id
        )
    ).scalar_one_or_none()


def get_member_role(team_id: int, user_id: int | None) -> TeamRole | None:
    """
    Get a user's current role in a team.

    Args:
        team_id: Team ID
        user_id: User ID (None for anonymous callers)

    Returns:
        TeamRole or None if user is not a member
    """
    if user_id is None:
        return None
    membership = get_membership(team_id, user_id)
    return membership.role if membership else None
