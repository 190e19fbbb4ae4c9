"""
Database models for Crewhub.

This module contains all SQLAlchemy models defining the database schema
for users, teams, team memberships, user and email invitations, and the
activity log.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import check_password_hash, generate_password_hash

from crewhub.errors import InvalidStateError

# Initialize SQLAlchemy instance
db = SQLAlchemy()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the store keeps naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TeamRole(Enum):
    """
    Enumeration for team member roles.

    - OWNER: Team owner with full permissions (exactly one per team)
    - ADMIN: Can add/remove regular members and send invitations
    - MEMBER: Regular member
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class TeamType(Enum):
    """Kind of team. Deployments use a subset of these taxonomies."""

    COMPANY = "company"
    ORGANIZATION = "organization"
    TEAM = "team"
    DEPARTMENT = "department"
    PROJECT = "project"
    AGENCY = "agency"
    STARTUP = "startup"


class SubTeamCategory(Enum):
    """Department category, only meaningful for sub-teams."""

    ENGINEERING = "engineering"
    MARKETING = "marketing"
    DESIGN = "design"
    HR = "hr"
    SALES = "sales"
    PRODUCT = "product"
    OPERATIONS = "operations"
    FINANCE = "finance"
    LEGAL = "legal"
    SUPPORT = "support"
    OTHER = "other"


class InvitationStatus(Enum):
    """
    Invitation lifecycle states.

    PENDING is the only non-terminal state; every other state is final.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Allowed status transitions. Terminal states map to nothing.
INVITATION_TRANSITIONS = {
    InvitationStatus.PENDING: frozenset(
        {
            InvitationStatus.ACCEPTED,
            InvitationStatus.DECLINED,
            InvitationStatus.CANCELLED,
            InvitationStatus.EXPIRED,
        }
    ),
    InvitationStatus.ACCEPTED: frozenset(),
    InvitationStatus.DECLINED: frozenset(),
    InvitationStatus.CANCELLED: frozenset(),
    InvitationStatus.EXPIRED: frozenset(),
}


class ActivityType(Enum):
    """
    Enumeration for activity log types.

    Team Activities:
    - TEAM_CREATED / TEAM_UPDATED / TEAM_DELETED
    - MEMBER_ADDED / MEMBER_REMOVED / MEMBER_LEFT / MEMBER_ROLE_CHANGED
    - OWNERSHIP_TRANSFERRED

    Invitation Activities:
    - INVITATION_SENT / INVITATION_ACCEPTED / INVITATION_DECLINED
    - INVITATION_CANCELLED
    """

    TEAM_CREATED = "team_created"
    TEAM_UPDATED = "team_updated"
    TEAM_DELETED = "team_deleted"
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"
    MEMBER_LEFT = "member_left"
    MEMBER_ROLE_CHANGED = "member_role_changed"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    INVITATION_SENT = "invitation_sent"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    INVITATION_CANCELLED = "invitation_cancelled"


def _enum_column(enum_cls, name, **kwargs):
    return db.Column(
        db.Enum(
            enum_cls,
            name=name,
            values_callable=lambda enum: [e.value for e in enum],
        ),
        **kwargs,
    )


class User(UserMixin, db.Model):
    """
    User model for authentication and profile summaries.

    Only the fields the team engine needs are stored here: identity,
    credentials and the display summary nested into team/invitation payloads.
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    avatar = db.Column(db.String(500))

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_login = db.Column(db.DateTime)

    def set_password(self, password: str) -> None:
        """
        Hash and set the user's password.

        Args:
            password: Plain text password to hash
        """
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        """
        Check if the provided password matches the stored hash.

        Args:
            password: Plain text password to verify

        Returns:
            bool: True if password matches, False otherwise
        """
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self) -> str:
        """
        Get user's full name.

        Returns:
            str: Combined first and last name, or username if names not set
        """
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.username

    def to_summary(self) -> dict:
        """Compact representation nested into team and invitation payloads."""
        return {
            "id": self.id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar": self.avatar,
        }

    def __repr__(self) -> str:
        return f"<User {self.username}>"


class Team(db.Model):
    """
    Team model for collaboration features.

    Each team has exactly one owner. ``owner_id`` duplicates the single
    OWNER-role membership row for cheap lookups; both are only written by
    ``crewhub.teams.create_team`` and ``crewhub.teams.transfer_ownership``.
    Teams may be nested one level deep: sub-teams point at a main team.
    """

    __tablename__ = "teams"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    slug = db.Column(db.String(160), unique=True, nullable=False, index=True)
    description = db.Column(db.Text)
    type = _enum_column(TeamType, "teamtype", nullable=False, default=TeamType.TEAM)
    sub_team_category = _enum_column(SubTeamCategory, "subteamcategory", nullable=True)
    city = db.Column(db.String(120))
    avatar = db.Column(db.String(500))

    # Team ownership
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    # Hierarchy
    parent_team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
    )
    is_main_team = db.Column(db.Boolean, default=True, nullable=False)

    # Timestamps
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    owner = db.relationship(
        "User",
        foreign_keys=[owner_id],
        backref=db.backref("owned_teams", lazy="dynamic"),
    )

    parent_team = db.relationship(
        "Team",
        remote_side=[id],
        backref=db.backref(
            "sub_teams", lazy="dynamic", cascade="all, delete-orphan"
        ),
    )

    memberships = db.relationship(
        "TeamMembership",
        back_populates="team",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )

    def __repr__(self) -> str:
        return f"<Team {self.id} '{self.slug}'>"

    def to_summary(self) -> dict:
        """Compact representation nested into invitation payloads."""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "avatar": self.avatar,
            "type": self.type.value if self.type else None,
        }

    def to_dict(self, include_members: bool = False) -> dict:
        """
        Convert team to dictionary for JSON serialization.

        Args:
            include_members: Embed the ordered member list

        Returns:
            dict: Team data including owner summary and counts
        """
        data = {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "type": self.type.value if self.type else None,
            "sub_team_category": self.sub_team_category.value
            if self.sub_team_category
            else None,
            "city": self.city,
            "avatar": self.avatar,
            "owner_id": self.owner_id,
            "owner": self.owner.to_summary() if self.owner else None,
            "parent_team_id": self.parent_team_id,
            "is_main_team": self.is_main_team,
            "member_count": self.memberships.count(),
            "sub_team_count": self.sub_teams.count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_members:
            from crewhub.teams import get_team_members

            data["members"] = [m.to_dict() for m in get_team_members(self.id)]
        return data


class TeamMembership(db.Model):
    """
    Association model for team members.

    Tracks which users belong to which teams and their roles. A user holds
    at most one row (and therefore one role) per team.
    """

    __tablename__ = "team_memberships"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    role = _enum_column(TeamRole, "teamrole", nullable=False, default=TeamRole.MEMBER)

    # Timestamps
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    team = db.relationship("Team", back_populates="memberships")
    user = db.relationship(
        "User",
        backref=db.backref(
            "team_memberships", lazy="dynamic", cascade="all, delete-orphan"
        ),
    )

    # Unique constraint: a user can only be in a team once
    __table_args__ = (
        db.UniqueConstraint("team_id", "user_id", name="unique_team_member"),
    )

    def __repr__(self) -> str:
        return f"<TeamMembership team={self.team_id} user={self.user_id} role={self.role.value}>"

    def to_dict(self) -> dict:
        """Convert membership to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "team_id": self.team_id,
            "user_id": self.user_id,
            "role": self.role.value,
            "user": self.user.to_summary() if self.user else None,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class InvitationStateMixin:
    """Expiry and transition checks shared by both invitation kinds."""

    @staticmethod
    def default_expiry(days: int = 7, now: datetime | None = None) -> datetime:
        """Expiration timestamp for an invitation created at ``now``."""
        return (now or utcnow()) + timedelta(days=days)

    def is_expired(self, now: datetime | None = None) -> bool:
        """
        Check whether the invitation has passed its expiry.

        This is the derived predicate; ``status`` only caches the result once
        something has flipped it to EXPIRED.
        """
        if self.status is InvitationStatus.EXPIRED:
            return True
        return self.expires_at is not None and self.expires_at < (now or utcnow())

    def ensure_transition(self, new_status: InvitationStatus, action: str) -> None:
        """
        Check that the invitation may move to ``new_status``.

        The status itself is written by a conditional UPDATE in
        ``crewhub.acceptance.conditional_transition``, never by assignment.

        Args:
            new_status: Target status
            action: Verb used in the error message ("accept", "decline", ...)

        Raises:
            InvalidStateError: If the transition is not allowed
        """
        if new_status not in INVITATION_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Invitation is {self.status.value}, cannot {action}"
            )


class Invitation(InvitationStateMixin, db.Model):
    """
    Invitation for a registered user to join a team at a given role.

    Invitations are never deleted by the engine: decline, cancel and expiry
    are terminal statuses. At most one PENDING invitation may exist per
    (team, receiver); the partial unique index below is the final arbiter
    when two senders race.
    """

    __tablename__ = "invitations"

    id = db.Column(db.Integer, primary_key=True)

    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    receiver_id = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=False, index=True
    )

    # Role to assign when accepted (never OWNER)
    role = _enum_column(TeamRole, "teamrole", nullable=False, default=TeamRole.MEMBER)
    message = db.Column(db.Text)

    status = _enum_column(
        InvitationStatus,
        "invitationstatus",
        nullable=False,
        default=InvitationStatus.PENDING,
    )

    # Timestamps
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    responded_at = db.Column(db.DateTime, nullable=True)

    # Relationships
    team = db.relationship(
        "Team",
        backref=db.backref("invitations", lazy="dynamic", cascade="all, delete-orphan"),
    )
    sender = db.relationship("User", foreign_keys=[sender_id])
    receiver = db.relationship("User", foreign_keys=[receiver_id])

    __table_args__ = (
        db.Index(
            "uq_invitation_pending_team_receiver",
            "team_id",
            "receiver_id",
            unique=True,
            postgresql_where=db.text("status = 'pending'"),
            sqlite_where=db.text("status = 'pending'"),
        ),
        db.Index("idx_invitation_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Invitation {self.id} user={self.receiver_id} → Team {self.team_id} ({self.status.value})>"

    def to_dict(self) -> dict:
        """Convert invitation to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "team_id": self.team_id,
            "team": self.team.to_summary() if self.team else None,
            "sender_id": self.sender_id,
            "sender": self.sender.to_summary() if self.sender else None,
            "receiver_id": self.receiver_id,
            "receiver": self.receiver.to_summary() if self.receiver else None,
            "role": self.role.value,
            "message": self.message,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "responded_at": self.responded_at.isoformat()
            if self.responded_at
            else None,
        }


class EmailInvitation(InvitationStateMixin, db.Model):
    """
    Invitation addressed to an email address rather than a registered user.

    Whoever presents the token may accept it once they have an account. The
    statuses are those of ``Invitation`` minus DECLINED: the invitee has no
    account to decline with. At most one PENDING row may exist per
    (team, email).
    """

    __tablename__ = "email_invitations"

    id = db.Column(db.Integer, primary_key=True)

    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    invited_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    email = db.Column(db.String(120), nullable=False, index=True)

    role = _enum_column(TeamRole, "teamrole", nullable=False, default=TeamRole.MEMBER)
    message = db.Column(db.Text)

    # Hex token handed to the invitee; unguessable and unique
    token = db.Column(db.String(64), unique=True, nullable=False)

    status = _enum_column(
        InvitationStatus,
        "invitationstatus",
        nullable=False,
        default=InvitationStatus.PENDING,
    )
    accepted_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    responded_at = db.Column(db.DateTime, nullable=True)

    team = db.relationship(
        "Team",
        backref=db.backref(
            "email_invitations", lazy="dynamic", cascade="all, delete-orphan"
        ),
    )
    invited_by = db.relationship("User", foreign_keys=[invited_by_id])
    accepted_by = db.relationship("User", foreign_keys=[accepted_by_id])

    __table_args__ = (
        db.Index(
            "uq_email_invitation_pending_team_email",
            "team_id",
            "email",
            unique=True,
            postgresql_where=db.text("status = 'pending'"),
            sqlite_where=db.text("status = 'pending'"),
        ),
        db.Index("idx_email_invitation_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<EmailInvitation {self.id} {self.email} → Team {self.team_id} ({self.status.value})>"

    def to_dict(self, include_token: bool = False) -> dict:
        """
        Convert the invitation to a dictionary for JSON serialization.

        The token is only included for the inviter's own response.
        """
        data = {
            "id": self.id,
            "team_id": self.team_id,
            "team": self.team.to_summary() if self.team else None,
            "email": self.email,
            "invited_by_id": self.invited_by_id,
            "invited_by": self.invited_by.to_summary() if self.invited_by else None,
            "role": self.role.value,
            "message": self.message,
            "status": self.status.value,
            "accepted_by_id": self.accepted_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "responded_at": self.responded_at.isoformat()
            if self.responded_at
            else None,
        }
        if include_token:
            data["token"] = self.token
        return data


class ActivityLog(db.Model):
    """
    Activity log for tracking team and invitation events.

    Records membership changes, ownership transfers and invitation outcomes
    for audit trail and activity feeds.
    """

    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)

    activity_type = _enum_column(ActivityType, "activitytype", nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    team_id = db.Column(
        db.Integer, db.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
    )

    # Additional context (JSON for flexibility)
    # Examples:
    # - For MEMBER_ROLE_CHANGED: {"old_role": "member", "new_role": "admin", "target_user_id": 123}
    # - For INVITATION_SENT: {"invitation_id": 7, "receiver_id": 9, "role": "member"}
    context = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    user = db.relationship("User", backref=db.backref("activities", lazy="dynamic"))
    team = db.relationship(
        "Team",
        backref=db.backref("activities", lazy="dynamic", cascade="all, delete-orphan"),
    )

    __table_args__ = (
        db.Index("idx_activity_team_created", "team_id", "created_at"),
        db.Index("idx_activity_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog {self.activity_type.value} user={self.user_id} team={self.team_id}>"

    def to_dict(self) -> dict:
        """
        Convert activity log to dictionary for JSON serialization.

        Returns:
            dict: Activity log data including user info and context
        """
        return {
            "id": self.id,
            "activity_type": self.activity_type.value,
            "user_id": self.user_id,
            "user": {
                "id": self.user.id,
                "username": self.user.username,
            }
            if self.user
            else None,
            "team_id": self.team_id,
            "context": self.context,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
