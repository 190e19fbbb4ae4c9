"""
Activity logging utilities for team collaboration.

This module provides helper functions to log team, membership and
invitation events for audit trails and activity feeds. Entries are written
after the mutation they describe has committed, so a failed mutation never
leaves an activity row behind.
"""

from typing import Optional

import structlog
from flask_login import current_user
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from crewhub.error_utils import safe_log_error
from crewhub.models import ActivityLog, ActivityType, EmailInvitation, Invitation, Team, db

logger = structlog.get_logger(__name__)


def _resolve_actor_id(actor_id: Optional[int]) -> int:
    if actor_id is not None:
        return actor_id
    if current_user and current_user.is_authenticated:
        return current_user.id
    raise ValueError("Actor must be provided or current_user must be authenticated")


def log_activity(
    activity_type: ActivityType,
    actor_id: Optional[int] = None,
    team: Optional[Team] = None,
    context: Optional[dict] = None,
) -> Optional[ActivityLog]:
    """
    Log an activity to the activity log.

    The mutation being described has already committed. A failure writing
    the entry is logged and rolled back, never raised to the caller.

    Args:
        activity_type: Type of activity being logged
        actor_id: ID of the user who performed the activity (defaults to current_user)
        team: Team associated with the activity (optional)
        context: Additional context data (optional)

    Returns:
        ActivityLog: The created activity log entry, or None if it could not
        be written

    Example:
        log_activity(
            ActivityType.MEMBER_ADDED,
            actor_id=owner.id,
            team=team,
            context={"target_user_id": new_member.id, "role": "member"}
        )
    """
    activity = ActivityLog(
        activity_type=activity_type,
        user_id=_resolve_actor_id(actor_id),
        team_id=team.id if team else None,
        context=context,
    )

    try:
        db.session.add(activity)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        safe_log_error(
            logger,
            "activity_log_failed",
            activity_type=activity_type.value,
            team_id=activity.team_id,
            user_id=activity.user_id,
        )
        return None

    return activity


def log_team_created(team: Team, actor_id: Optional[int] = None) -> Optional[ActivityLog]:
    """Log team creation activity."""
    return log_activity(
        ActivityType.TEAM_CREATED,
        actor_id=actor_id,
        team=team,
        context={
            "team_name": team.name,
            "slug": team.slug,
            "parent_team_id": team.parent_team_id,
        },
    )


def log_team_updated(
    team: Team, changes: dict, actor_id: Optional[int] = None
) -> Optional[ActivityLog]:
    """
    Log team update activity.

    Args:
        team: Team that was updated
        changes: Dictionary of changed fields ({"name": {"old": ..., "new": ...}})
        actor_id: User who made the update
    """
    return log_activity(
        ActivityType.TEAM_UPDATED,
        actor_id=actor_id,
        team=team,
        context={"changes": changes},
    )


def log_team_deleted(
    team_id: int, team_name: str, actor_id: Optional[int] = None
) -> Optional[ActivityLog]:
    """Log team deletion activity (not linked to the team row, which is gone)."""
    return log_activity(
        ActivityType.TEAM_DELETED,
        actor_id=actor_id,
        context={"team_id": team_id, "team_name": team_name},
    )


def log_member_added(
    team: Team,
    target_user_id: int,
    role: str,
    actor_id: Optional[int] = None,
    invitation_id: Optional[int] = None,
    email_invitation_id: Optional[int] = None,
) -> Optional[ActivityLog]:
    """
    Log member addition to team.

    Args:
        team: Team the member was added to
        target_user_id: User who was added
        role: Role assigned to the new member
        actor_id: User who added the member
        invitation_id: Invitation the membership came from, if any
        email_invitation_id: Email invitation the membership came from, if any
    """
    context = {"target_user_id": target_user_id, "role": role}
    if invitation_id is not None:
        context["invitation_id"] = invitation_id
    if email_invitation_id is not None:
        context["email_invitation_id"] = email_invitation_id
    return log_activity(
        ActivityType.MEMBER_ADDED, actor_id=actor_id, team=team, context=context
    )


def log_member_removed(
    team: Team, target_user_id: int, actor_id: Optional[int] = None
) -> Optional[ActivityLog]:
    """Log member removal from team."""
    return log_activity(
        ActivityType.MEMBER_REMOVED,
        actor_id=actor_id,
        team=team,
        context={"target_user_id": target_user_id},
    )


def log_member_left(team: Team, actor_id: Optional[int] = None) -> Optional[ActivityLog]:
    """Log member leaving team voluntarily."""
    return log_activity(ActivityType.MEMBER_LEFT, actor_id=actor_id, team=team)


def log_member_role_changed(
    team: Team,
    target_user_id: int,
    old_role: str,
    new_role: str,
    actor_id: Optional[int] = None,
) -> Optional[ActivityLog]:
    """
    Log member role change.

    Args:
        team: Team where role was changed
        target_user_id: User whose role was changed
        old_role: Previous role
        new_role: New role
        actor_id: User who changed the role
    """
    return log_activity(
        ActivityType.MEMBER_ROLE_CHANGED,
        actor_id=actor_id,
        team=team,
        context={
            "target_user_id": target_user_id,
            "old_role": old_role,
            "new_role": new_role,
        },
    )


def log_ownership_transferred(
    team: Team, previous_owner_id: int, new_owner_id: int
) -> Optional[ActivityLog]:
    """Log an ownership transfer, attributed to the previous owner."""
    return log_activity(
        ActivityType.OWNERSHIP_TRANSFERRED,
        actor_id=previous_owner_id,
        team=team,
        context={
            "previous_owner_id": previous_owner_id,
            "new_owner_id": new_owner_id,
        },
    )


_INVITATION_ACTIVITY = {
    "sent": ActivityType.INVITATION_SENT,
    "accepted": ActivityType.INVITATION_ACCEPTED,
    "declined": ActivityType.INVITATION_DECLINED,
    "cancelled": ActivityType.INVITATION_CANCELLED,
}


def log_invitation_event(
    invitation: Invitation, event: str, actor_id: int
) -> Optional[ActivityLog]:
    """
    Log an invitation lifecycle event.

    Args:
        invitation: The invitation that changed
        event: One of "sent", "accepted", "declined", "cancelled"
        actor_id: User who triggered the event
    """
    return log_activity(
        _INVITATION_ACTIVITY[event],
        actor_id=actor_id,
        team=invitation.team,
        context={
            "invitation_id": invitation.id,
            "sender_id": invitation.sender_id,
            "receiver_id": invitation.receiver_id,
            "role": invitation.role.value,
        },
    )


def log_email_invitation_event(
    invitation: EmailInvitation, event: str, actor_id: int
) -> Optional[ActivityLog]:
    """Log a lifecycle event of an email invitation ("sent", "accepted", "cancelled")."""
    return log_activity(
        _INVITATION_ACTIVITY[event],
        actor_id=actor_id,
        team=invitation.team,
        context={
            "email_invitation_id": invitation.id,
            "email": invitation.email,
            "invited_by_id": invitation.invited_by_id,
            "role": invitation.role.value,
        },
    )


def get_team_activities(
    team_id: int, limit: int = 50, offset: int = 0
) -> list[ActivityLog]:
    """
    Get recent activities for a team.

    Args:
        team_id: Team ID to fetch activities for
        limit: Maximum number of activities to return
        offset: Number of activities to skip (for pagination)

    Returns:
        List of ActivityLog entries, newest first
    """
    stmt = (
        select(ActivityLog)
        .where(ActivityLog.team_id == team_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(limit)
        .offset(offset)
    )

    return db.session.execute(stmt).scalars().all()


def count_team_activities(team_id: int) -> int:
    return db.session.execute(
        select(func.count(ActivityLog.id)).where(ActivityLog.team_id == team_id)
    ).scalar()


def get_user_activities(
    user_id: int, limit: int = 50, offset: int = 0
) -> list[ActivityLog]:
    """
    Get recent activities by a user.

    Args:
        user_id: User ID to fetch activities for
        limit: Maximum number of activities to return
        offset: Number of activities to skip (for pagination)

    Returns:
        List of ActivityLog entries, newest first
    """
    stmt = (
        select(ActivityLog)
        .where(ActivityLog.user_id == user_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(limit)
        .offset(offset)
    )

    return db.session.execute(stmt).scalars().all()
