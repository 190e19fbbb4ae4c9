"""
Team lifecycle management.

Creates, renames and deletes teams, manages sub-teams, and performs every
membership mutation (add, remove, role change, leave, ownership transfer).
Each mutating entry point re-reads the actor's role from the membership
table immediately before asking the role policy, and raises the errors from
``crewhub.errors`` with messages callers can show verbatim.

``Team.owner_id`` and the OWNER membership row are only ever written here,
by :func:`create_team` and :func:`transfer_ownership`.
"""
from enum import Enum

import structlog
from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from crewhub.activity import (
    log_member_added,
    log_member_left,
    log_member_removed,
    log_member_role_changed,
    log_ownership_transferred,
    log_team_created,
    log_team_deleted,
    log_team_updated,
)
from crewhub.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from crewhub.models import SubTeamCategory, Team, TeamMembership, TeamRole, TeamType, User, db
from crewhub.slugs import allocate_slug, disambiguate, slug_exists, slugify
from crewhub.team_permissions import (
    CANNOT_CHANGE_OWNER_ROLE,
    CANNOT_REMOVE_OWNER,
    OWNER_CANNOT_LEAVE,
    TeamAction,
    get_member_role,
    get_membership,
    require,
)

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = ("name", "description", "type", "city", "avatar", "sub_team_category")

# Sort key for member listings: OWNER, then ADMIN, then MEMBER
_ROLE_ORDER = {TeamRole.OWNER: 0, TeamRole.ADMIN: 1, TeamRole.MEMBER: 2}


def parse_enum(enum_cls: type[Enum], value, label: str):
    """
    Coerce ``value`` (enum member or case-insensitive string) to ``enum_cls``.

    Raises:
        ValidationError: If the value is not a member
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {label}. Must be one of: {allowed}") from None


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Team name is required")
    name = name.strip()
    max_length = current_app.config.get("TEAM_NAME_MAX_LENGTH", 128)
    if len(name) > max_length:
        raise ValidationError(
            f"Team name is too long (max {max_length} characters)"
        )
    return name


def _clean_optional(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def get_team_or_error(team_id: int, message: str = "Team not found") -> Team:
    team = db.session.get(Team, team_id)
    if team is None:
        raise NotFoundError(message)
    return team


def _get_user_or_error(user_id: int, message: str = "User not found") -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(message)
    return user


def _is_slug_conflict(slug: str, exclude_team_id: int | None = None) -> bool:
    """After a rollback, decide whether an IntegrityError came from the slug."""
    return slug_exists(slug, exclude_team_id)


# ---------------------------------------------------------------------------
# Team lifecycle
# ---------------------------------------------------------------------------


def create_team(owner_id: int, data: dict) -> Team:
    """
    Create a team and its OWNER membership in one transaction.

    Args:
        owner_id: User creating the team; becomes OWNER
        data: name (required), type, description, city, avatar,
            sub_team_category, parent_team_id

    Returns:
        Team: The committed team, with ``owner`` populated

    Raises:
        ValidationError: Bad name/type/category
        NotFoundError: Owner or parent team missing
        ForbiddenError: Actor may not create a sub-team under the parent
        ConflictError: Slug still collides after the retry
    """
    data = data or {}
    name = _clean_name(data.get("name"))
    team_type = parse_enum(TeamType, data.get("type") or TeamType.TEAM, "team type")
    _get_user_or_error(owner_id)

    parent_team_id = data.get("parent_team_id")
    category = None
    if parent_team_id is not None:
        try:
            parent_team_id = int(parent_team_id)
        except (TypeError, ValueError):
            raise ValidationError("parent_team_id must be an integer") from None
        parent = get_team_or_error(parent_team_id, "Parent team not found")
        require(get_member_role(parent.id, owner_id), TeamAction.CREATE_SUB_TEAM)
        if not parent.is_main_team:
            raise InvalidStateError("Sub-teams can only be created under main teams")
        if data.get("sub_team_category"):
            category = parse_enum(
                SubTeamCategory, data["sub_team_category"], "sub-team category"
            )
    else:
        require(None, TeamAction.CREATE_TEAM)

    fields = {
        "name": name,
        "description": _clean_optional(data.get("description")),
        "type": team_type,
        "sub_team_category": category,
        "city": _clean_optional(data.get("city")),
        "avatar": _clean_optional(data.get("avatar")),
        "owner_id": owner_id,
        "parent_team_id": parent_team_id,
        "is_main_team": parent_team_id is None,
    }

    slug = allocate_slug(name)
    for attempt in range(2):
        try:
            team = Team(slug=slug, **fields)
            db.session.add(team)
            db.session.flush()
            db.session.add(
                TeamMembership(team_id=team.id, user_id=owner_id, role=TeamRole.OWNER)
            )
            db.session.commit()
            break
        except IntegrityError:
            db.session.rollback()
            if attempt == 0 and _is_slug_conflict(slug):
                logger.warning("team_slug_collision_retry", slug=slug)
                slug = disambiguate(slugify(name), with_random=True)
                continue
            if _is_slug_conflict(slug):
                raise ConflictError("Team slug already exists") from None
            raise

    logger.info(
        "team_created",
        team_id=team.id,
        slug=team.slug,
        owner_id=owner_id,
        sub_team=parent_team_id is not None,
    )
    log_team_created(team, actor_id=owner_id)
    return team


def create_sub_team(parent_team_id: int, actor_id: int, data: dict) -> Team:
    """
    Create a sub-team under a main team.

    The actor must be OWNER or ADMIN of the parent and becomes OWNER of the
    new sub-team.
    """
    data = dict(data or {})
    data["parent_team_id"] = parent_team_id
    return create_team(actor_id, data)


def update_team(team_id: int, actor_id: int, data: dict) -> Team:
    """
    Update team details (owner only).

    A changed name regenerates the slug; the team's own row does not count
    as a collision. Only ``UPDATABLE_FIELDS`` are considered.

    Returns:
        Team: The updated team
    """
    team = get_team_or_error(team_id)
    require(get_member_role(team.id, actor_id), TeamAction.UPDATE_TEAM)

    data = data or {}
    updates = {}

    # Validate everything before touching the instance.
    if "name" in data:
        updates["name"] = _clean_name(data["name"])
    if "type" in data:
        updates["type"] = parse_enum(TeamType, data["type"], "team type")
    if "sub_team_category" in data:
        if team.is_main_team and data["sub_team_category"]:
            raise ValidationError("Only sub-teams can have a category")
        updates["sub_team_category"] = (
            parse_enum(SubTeamCategory, data["sub_team_category"], "sub-team category")
            if data["sub_team_category"]
            else None
        )
    for field in ("description", "city", "avatar"):
        if field in data:
            updates[field] = _clean_optional(data[field])

    updates = {f: v for f, v in updates.items() if getattr(team, f) != v}
    if "name" in updates:
        new_slug = allocate_slug(updates["name"], exclude_team_id=team.id)
        if new_slug != team.slug:
            updates["slug"] = new_slug

    if not updates:
        return team

    changes = {
        field: {"old": _plain(getattr(team, field)), "new": _plain(value)}
        for field, value in updates.items()
    }
    for field, value in updates.items():
        setattr(team, field, value)

    _commit_rename(team, changes)

    logger.info("team_updated", team_id=team.id, fields=sorted(changes))
    log_team_updated(team, changes, actor_id=actor_id)
    return team


def _commit_rename(team: Team, changes: dict) -> None:
    """Commit pending team changes, retrying once on a slug collision."""
    try:
        db.session.commit()
        return
    except IntegrityError:
        db.session.rollback()
        if "slug" not in changes or not _is_slug_conflict(changes["slug"]["new"]):
            raise

    logger.warning("team_slug_collision_retry", slug=changes["slug"]["new"])
    # The rollback expired the instance; re-apply the changes.
    for field, change in changes.items():
        setattr(team, field, _coerce_change(field, change["new"]))
    team.slug = disambiguate(slugify(team.name), with_random=True)
    changes["slug"]["new"] = team.slug
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Team slug already exists") from None


def _plain(value):
    return value.value if isinstance(value, Enum) else value


def _coerce_change(field: str, value):
    if value is None:
        return None
    if field == "type":
        return TeamType(value)
    if field == "sub_team_category":
        return SubTeamCategory(value)
    return value


def set_parent_team(team_id: int, actor_id: int, parent_team_id: int | None) -> Team:
    """
    Move a team under a main team, or detach it (``parent_team_id=None``).

    The actor must own the team and be OWNER or ADMIN of the new parent.
    Self-parenting and cycles are rejected.
    """
    team = get_team_or_error(team_id)
    require(get_member_role(team.id, actor_id), TeamAction.UPDATE_TEAM)

    if parent_team_id is None:
        if team.parent_team_id is not None:
            old_parent = team.parent_team_id
            team.parent_team_id = None
            team.is_main_team = True
            team.sub_team_category = None
            db.session.commit()
            log_team_updated(
                team,
                {"parent_team_id": {"old": old_parent, "new": None}},
                actor_id=actor_id,
            )
        return team

    if parent_team_id == team.id:
        raise ValidationError("A team cannot be its own parent")

    parent = get_team_or_error(parent_team_id, "Parent team not found")
    require(get_member_role(parent.id, actor_id), TeamAction.CREATE_SUB_TEAM)

    # Walk up from the proposed parent; reaching this team means a cycle.
    seen = set()
    cursor = parent
    while cursor is not None and cursor.id not in seen:
        if cursor.id == team.id:
            raise ValidationError("Parent assignment would create a cycle")
        seen.add(cursor.id)
        cursor = cursor.parent_team
    if cursor is not None:
        raise ValidationError("Parent assignment would create a cycle")

    if not parent.is_main_team:
        raise InvalidStateError("Sub-teams can only be created under main teams")
    if team.sub_teams.count():
        raise ValidationError("A team with sub-teams cannot become a sub-team")

    old_parent = team.parent_team_id
    team.parent_team_id = parent.id
    team.is_main_team = False
    db.session.commit()

    log_team_updated(
        team,
        {"parent_team_id": {"old": old_parent, "new": parent.id}},
        actor_id=actor_id,
    )
    return team


def delete_team(team_id: int, actor_id: int) -> None:
    """
    Delete a team (owner only).

    Memberships, invitations, activity rows and sub-teams go with it.
    """
    team = get_team_or_error(team_id)
    require(get_member_role(team.id, actor_id), TeamAction.DELETE_TEAM)

    team_name = team.name
    db.session.delete(team)
    db.session.commit()

    logger.info("team_deleted", team_id=team_id, actor_id=actor_id)
    log_team_deleted(team_id, team_name, actor_id=actor_id)


# ---------------------------------------------------------------------------
# Membership mutation
# ---------------------------------------------------------------------------


def add_member(
    team_id: int, actor_id: int, new_member_id: int, role=TeamRole.MEMBER
) -> TeamMembership:
    """
    Add a user to a team directly (owner or admin).

    Only the owner may grant ADMIN. OWNER is never granted here; ownership
    moves only through :func:`transfer_ownership`.

    Raises:
        ForbiddenError: Actor not OWNER/ADMIN, or ADMIN granting ADMIN
        ValidationError: Role is OWNER or unknown
        NotFoundError: Team or user missing
        ConflictError: User already a member
    """
    team = get_team_or_error(team_id)
    role = parse_enum(TeamRole, role or TeamRole.MEMBER, "role")

    require(
        get_member_role(team.id, actor_id), TeamAction.ADD_MEMBER, assigned_role=role
    )
    if role is TeamRole.OWNER:
        raise ValidationError("Cannot add member with owner role")

    _get_user_or_error(new_member_id)
    if get_membership(team.id, new_member_id) is not None:
        raise ConflictError("User is already a team member")

    membership = TeamMembership(team_id=team.id, user_id=new_member_id, role=role)
    db.session.add(membership)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("User is already a team member") from None

    logger.info(
        "team_member_added",
        team_id=team.id,
        user_id=new_member_id,
        role=role.value,
        actor_id=actor_id,
    )
    log_member_added(team, new_member_id, role.value, actor_id=actor_id)
    return membership


def remove_member(team_id: int, actor_id: int, target_user_id: int) -> None:
    """
    Remove a member from a team (owner or admin).

    The recorded owner can never be removed, regardless of what the
    membership table says; admins may only remove regular members.
    """
    team = get_team_or_error(team_id)
    if target_user_id == team.owner_id:
        raise ForbiddenError(CANNOT_REMOVE_OWNER)

    actor_role = get_member_role(team.id, actor_id)
    require(actor_role, TeamAction.REMOVE_MEMBER)

    target = get_membership(team.id, target_user_id)
    if target is None:
        raise NotFoundError("Member not found in team")
    require(actor_role, TeamAction.REMOVE_MEMBER, target_role=target.role)

    db.session.delete(target)
    db.session.commit()

    logger.info(
        "team_member_removed",
        team_id=team.id,
        user_id=target_user_id,
        actor_id=actor_id,
    )
    log_member_removed(team, target_user_id, actor_id=actor_id)


def update_member_role(
    team_id: int, actor_id: int, target_user_id: int, new_role
) -> TeamMembership:
    """
    Change a member's role (owner only).

    The owner's own row is never a valid target, and OWNER is never a valid
    new role.
    """
    team = get_team_or_error(team_id)
    if target_user_id == team.owner_id:
        raise ForbiddenError(CANNOT_CHANGE_OWNER_ROLE)

    new_role = parse_enum(TeamRole, new_role, "role")
    actor_role = get_member_role(team.id, actor_id)
    require(actor_role, TeamAction.CHANGE_MEMBER_ROLE)
    if new_role is TeamRole.OWNER:
        raise ValidationError("Cannot set member as owner. Transfer ownership instead")

    target = get_membership(team.id, target_user_id)
    if target is None:
        raise NotFoundError("Member not found in team")
    require(actor_role, TeamAction.CHANGE_MEMBER_ROLE, target_role=target.role)

    old_role = target.role
    if old_role is new_role:
        return target

    target.role = new_role
    db.session.commit()

    logger.info(
        "team_member_role_changed",
        team_id=team.id,
        user_id=target_user_id,
        old_role=old_role.value,
        new_role=new_role.value,
    )
    log_member_role_changed(
        team, target_user_id, old_role.value, new_role.value, actor_id=actor_id
    )
    return target


def leave_team(team_id: int, user_id: int) -> None:
    """Leave a team. The owner must transfer ownership or delete the team instead."""
    team = get_team_or_error(team_id)
    if user_id == team.owner_id:
        raise ForbiddenError(OWNER_CANNOT_LEAVE)

    membership = get_membership(team.id, user_id)
    require(membership.role if membership else None, TeamAction.LEAVE_TEAM)

    db.session.delete(membership)
    db.session.commit()

    logger.info("team_member_left", team_id=team.id, user_id=user_id)
    log_member_left(team, actor_id=user_id)


def transfer_ownership(team_id: int, actor_id: int, new_owner_id: int) -> Team:
    """
    Hand a team to another existing member.

    In one transaction the current owner's row becomes ADMIN, the new
    owner's row becomes OWNER, and ``Team.owner_id`` moves with them.
    """
    team = get_team_or_error(team_id)
    current = get_membership(team.id, actor_id)
    require(current.role if current else None, TeamAction.TRANSFER_OWNERSHIP)

    if new_owner_id == actor_id:
        raise ValidationError("You already own this team")

    successor = get_membership(team.id, new_owner_id)
    if successor is None:
        raise NotFoundError("New owner must be a member of the team")

    previous_owner_id = team.owner_id
    current.role = TeamRole.ADMIN
    successor.role = TeamRole.OWNER
    team.owner_id = new_owner_id
    db.session.commit()

    logger.info(
        "team_ownership_transferred",
        team_id=team.id,
        previous_owner_id=previous_owner_id,
        new_owner_id=new_owner_id,
    )
    log_ownership_transferred(team, previous_owner_id, new_owner_id)
    return team


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_team_by_id(team_id: int) -> Team | None:
    return db.session.get(Team, team_id)


def get_team_by_slug(slug: str) -> Team | None:
    return db.session.execute(
        select(Team).where(Team.slug == slug)
    ).scalar_one_or_none()


def search_teams(
    type=None,
    city: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int | None = None,
) -> dict:
    """
    List main teams (sub-teams excluded), newest first.

    Args:
        type: Optional TeamType filter
        city: Case-insensitive substring match on city
        search: Case-insensitive substring match on name or description
        page: 1-based page number
        limit: Page size (defaults to TEAMS_PER_PAGE, capped at TEAMS_MAX_PER_PAGE)

    Returns:
        dict: {"teams": [Team, ...], "pagination": {...}}
    """
    config = current_app.config
    limit = limit or config.get("TEAMS_PER_PAGE", 20)
    limit = max(1, min(int(limit), config.get("TEAMS_MAX_PER_PAGE", 100)))
    page = max(1, int(page or 1))

    stmt = select(Team).where(Team.is_main_team.is_(True))
    if type:
        stmt = stmt.where(Team.type == parse_enum(TeamType, type, "team type"))
    if city:
        stmt = stmt.where(Team.city.ilike(f"%{city.strip()}%"))
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(Team.name.ilike(pattern), Team.description.ilike(pattern))
        )

    total = db.session.execute(
        select(db.func.count()).select_from(stmt.subquery())
    ).scalar()
    teams = (
        db.session.execute(
            stmt.order_by(Team.created_at.desc(), Team.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        .scalars()
        .all()
    )

    return {
        "teams": teams,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


def get_user_teams(user_id: int) -> list[TeamMembership]:
    """
    Memberships of a user in main teams, most recently joined first.

    Each row carries ``.team`` and the user's ``.role`` in it.
    """
    return (
        db.session.execute(
            select(TeamMembership)
            .join(Team, Team.id == TeamMembership.team_id)
            .where(TeamMembership.user_id == user_id, Team.is_main_team.is_(True))
            .order_by(TeamMembership.joined_at.desc(), TeamMembership.id.desc())
        )
        .scalars()
        .all()
    )


def get_team_members(team_id: int) -> list[TeamMembership]:
    """Members ordered OWNER, ADMIN, MEMBER, then by join time."""
    rows = (
        db.session.execute(
            select(TeamMembership)
            .where(TeamMembership.team_id == team_id)
            .order_by(TeamMembership.joined_at, TeamMembership.id)
        )
        .scalars()
        .all()
    )
    return sorted(rows, key=lambda m: _ROLE_ORDER[m.role])


def get_sub_teams(parent_team_id: int) -> list[Team]:
    return (
        db.session.execute(
            select(Team)
            .where(Team.parent_team_id == parent_team_id)
            .order_by(Team.created_at.desc(), Team.id.desc())
        )
        .scalars()
        .all()
    )


def is_team_member(team_id: int, user_id: int) -> bool:
    return get_membership(team_id, user_id) is not None


def get_user_role_in_team(team_id: int, user_id: int) -> TeamRole | None:
    return get_member_role(team_id, user_id)
