"""create team membership and invitation schema

Revision ID: a3c1e5f7b9d2
Revises:
Create Date: 2026-10-17 09:12:44.318204

"""
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a3c1e5f7b9d2"
down_revision = None
branch_labels = None
depends_on = None

TEAM_ROLES = ("owner", "admin", "member")
TEAM_TYPES = (
    "company",
    "organization",
    "team",
    "department",
    "project",
    "agency",
    "startup",
)
SUB_TEAM_CATEGORIES = (
    "engineering",
    "marketing",
    "design",
    "hr",
    "sales",
    "product",
    "operations",
    "finance",
    "legal",
    "support",
    "other",
)
INVITATION_STATUSES = ("pending", "accepted", "declined", "cancelled", "expired")
ACTIVITY_TYPES = (
    "team_created",
    "team_updated",
    "team_deleted",
    "member_added",
    "member_removed",
    "member_left",
    "member_role_changed",
    "ownership_transferred",
    "invitation_sent",
    "invitation_accepted",
    "invitation_declined",
    "invitation_cancelled",
)

ENUMS = {
    "teamrole": TEAM_ROLES,
    "teamtype": TEAM_TYPES,
    "subteamcategory": SUB_TEAM_CATEGORIES,
    "invitationstatus": INVITATION_STATUSES,
    "activitytype": ACTIVITY_TYPES,
}


def _enum(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade():
    bind = op.get_bind()
    # teamrole is shared by two tables, so types are created once up front
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=80), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("avatar", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_login", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("slug", sa.String(length=160), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", _enum("teamtype"), nullable=False),
        sa.Column("sub_team_category", _enum("subteamcategory"), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("avatar", sa.String(length=500), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("parent_team_id", sa.Integer(), nullable=True),
        sa.Column("is_main_team", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["parent_team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_teams_slug", "teams", ["slug"], unique=True)

    op.create_table(
        "team_memberships",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", _enum("teamrole"), nullable=False),
        sa.Column("joined_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id", "user_id", name="unique_team_member"),
    )

    op.create_table(
        "invitations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("receiver_id", sa.Integer(), nullable=False),
        sa.Column("role", _enum("teamrole"), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", _enum("invitationstatus"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["receiver_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invitations_receiver_id", "invitations", ["receiver_id"])
    op.create_index(
        "idx_invitation_status_expires", "invitations", ["status", "expires_at"]
    )
    # At most one PENDING invitation per (team, receiver)
    op.create_index(
        "uq_invitation_pending_team_receiver",
        "invitations",
        ["team_id", "receiver_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("activity_type", _enum("activitytype"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])
    op.create_index(
        "idx_activity_team_created", "activity_logs", ["team_id", "created_at"]
    )
    op.create_index(
        "idx_activity_user_created", "activity_logs", ["user_id", "created_at"]
    )


def downgrade():
    op.drop_index("idx_activity_user_created", table_name="activity_logs")
    op.drop_index("idx_activity_team_created", table_name="activity_logs")
    op.drop_index("ix_activity_logs_created_at", table_name="activity_logs")
    op.drop_table("activity_logs")

    op.drop_index("uq_invitation_pending_team_receiver", table_name="invitations")
    op.drop_index("idx_invitation_status_expires", table_name="invitations")
    op.drop_index("ix_invitations_receiver_id", table_name="invitations")
    op.drop_table("invitations")

    op.drop_table("team_memberships")

    op.drop_index("ix_teams_slug", table_name="teams")
    op.drop_table("teams")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")

    for name in ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
