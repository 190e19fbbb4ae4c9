"""add email invitations

Revision ID: c7d2f4a8e1b3
Revises: a3c1e5f7b9d2
Create Date: 2026-10-17 14:03:27.905118

"""
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "c7d2f4a8e1b3"
down_revision = "a3c1e5f7b9d2"
branch_labels = None
depends_on = None


def upgrade():
    # Both enum types already exist from the initial revision
    teamrole = postgresql.ENUM(name="teamrole", create_type=False)
    invitationstatus = postgresql.ENUM(name="invitationstatus", create_type=False)

    op.create_table(
        "email_invitations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("invited_by_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("role", teamrole, nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("status", invitationstatus, nullable=False),
        sa.Column("accepted_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["invited_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["accepted_by_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token", name="uq_email_invitations_token"),
    )
    op.create_index("ix_email_invitations_email", "email_invitations", ["email"])
    op.create_index(
        "idx_email_invitation_status_expires",
        "email_invitations",
        ["status", "expires_at"],
    )
    # At most one PENDING invitation per (team, email)
    op.create_index(
        "uq_email_invitation_pending_team_email",
        "email_invitations",
        ["team_id", "email"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade():
    op.drop_index("uq_email_invitation_pending_team_email", table_name="email_invitations")
    op.drop_index("idx_email_invitation_status_expires", table_name="email_invitations")
    op.drop_index("ix_email_invitations_email", table_name="email_invitations")
    op.drop_table("email_invitations")
