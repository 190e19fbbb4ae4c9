"""
Tests for transactional acceptance and conditional status transitions.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import update

from crewhub.acceptance import commit_acceptance, conditional_transition
from crewhub.errors import ConflictError, InvalidStateError
from crewhub.invitations import accept_invitation, send_invitation
from crewhub.models import Invitation, InvitationStatus, TeamMembership, TeamRole, db
from crewhub.team_permissions import get_membership


class TestConditionalTransition:
    """Test the PENDING-guarded status update."""

    def test_transition_from_pending(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            conditional_transition(invitation, InvitationStatus.DECLINED, "decline")
            db.session.commit()
            assert invitation.status is InvitationStatus.DECLINED
            assert invitation.responded_at is not None

    def test_terminal_status_rejected_before_update(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            conditional_transition(invitation, InvitationStatus.CANCELLED, "cancel")
            db.session.commit()
            with pytest.raises(InvalidStateError) as exc:
                conditional_transition(invitation, InvitationStatus.ACCEPTED, "accept")
            assert exc.value.message == "Invitation is cancelled, cannot accept"

    def test_lost_race_rolls_back(self, app, users, team):
        """Should roll back everything when the row is no longer PENDING"""
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            invitation_id = invitation.id

            db.session.add(
                TeamMembership(
                    team_id=team, user_id=users["invitee"], role=TeamRole.MEMBER
                )
            )
            db.session.flush()
            # Move the row out of PENDING behind the ORM's back
            db.session.execute(
                update(Invitation)
                .where(Invitation.id == invitation_id)
                .values(status=InvitationStatus.CANCELLED),
                execution_options={"synchronize_session": False},
            )
            assert invitation.status is InvitationStatus.PENDING

            with pytest.raises(InvalidStateError):
                conditional_transition(invitation, InvitationStatus.ACCEPTED, "accept")

            assert get_membership(team, users["invitee"]) is None


class TestAcceptanceAtomicity:
    """Test that acceptance commits both rows or neither."""

    def test_failed_status_write_leaves_no_membership(self, app, users, team):
        """Should discard the flushed membership when the transition fails"""
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            invitation_id = invitation.id

            with patch(
                "crewhub.acceptance.conditional_transition",
                side_effect=InvalidStateError("Invitation is declined, cannot accept"),
            ):
                with pytest.raises(InvalidStateError):
                    commit_acceptance(invitation, users["invitee"])

            assert get_membership(team, users["invitee"]) is None
            db.session.expire_all()
            assert (
                db.session.get(Invitation, invitation_id).status
                is InvitationStatus.PENDING
            )

    def test_unexpected_error_leaves_no_membership(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            with patch(
                "crewhub.acceptance.conditional_transition",
                side_effect=RuntimeError("connection dropped"),
            ):
                with pytest.raises(RuntimeError):
                    commit_acceptance(invitation, users["invitee"])
            assert get_membership(team, users["invitee"]) is None

    def test_concurrent_decline_wins(self, app, users, team):
        """Should fail acceptance cleanly when a decline commits first"""
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            invitation_id = invitation.id

            def decline_meanwhile(team_id, user_id):
                db.session.execute(
                    update(Invitation)
                    .where(Invitation.id == invitation_id)
                    .values(status=InvitationStatus.DECLINED),
                    execution_options={"synchronize_session": False},
                )
                db.session.commit()
                return None

            # The membership pre-check is the last read before the transaction
            with patch("crewhub.invitations.get_membership", side_effect=decline_meanwhile):
                with pytest.raises(InvalidStateError) as exc:
                    accept_invitation(invitation_id, users["invitee"])
            assert exc.value.message == "Invitation is declined, cannot accept"

            assert get_membership(team, users["invitee"]) is None
            db.session.expire_all()
            assert (
                db.session.get(Invitation, invitation_id).status
                is InvitationStatus.DECLINED
            )

    def test_concurrent_join_keeps_invitation_pending(self, app, users, team):
        """Should map the membership unique violation to a conflict and roll back"""
        with app.app_context():
            invitation = send_invitation(
                users["owner"], users["invitee"], team, role="admin"
            )
            invitation_id = invitation.id

            def join_meanwhile(team_id, user_id):
                db.session.add(
                    TeamMembership(team_id=team_id, user_id=user_id, role=TeamRole.MEMBER)
                )
                db.session.commit()
                return None

            with patch("crewhub.invitations.get_membership", side_effect=join_meanwhile):
                with pytest.raises(ConflictError) as exc:
                    accept_invitation(invitation_id, users["invitee"])
            assert exc.value.message == "You are already a member of this team"

            # The competing row survives at its own role
            assert get_membership(team, users["invitee"]).role is TeamRole.MEMBER
            db.session.expire_all()
            assert (
                db.session.get(Invitation, invitation_id).status
                is InvitationStatus.PENDING
            )
