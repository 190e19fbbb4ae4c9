"""
Tests for the invitation lifecycle service.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from crewhub.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from crewhub.invitations import (
    accept_invitation,
    cancel_invitation,
    decline_invitation,
    get_invitation_by_id,
    get_received_invitations,
    get_sent_invitations,
    get_team_invitations,
    is_expired,
    mark_expired_invitations,
    send_invitation,
)
from crewhub.models import (
    ActivityLog,
    ActivityType,
    Invitation,
    InvitationStatus,
    TeamMembership,
    TeamRole,
    db,
    utcnow,
)
from crewhub.team_permissions import get_member_role


def _invitation_count(team_id):
    return db.session.execute(
        select(func.count(Invitation.id)).where(Invitation.team_id == team_id)
    ).scalar()


def _membership(team_id, user_id):
    return db.session.execute(
        select(TeamMembership).where(
            TeamMembership.team_id == team_id, TeamMembership.user_id == user_id
        )
    ).scalar_one_or_none()


class TestSendInvitation:
    """Test sending invitations."""

    def test_owner_sends_invitation(self, app, users, team):
        """Should create a PENDING invitation expiring in seven days"""
        with app.app_context():
            before = utcnow()
            invitation = send_invitation(
                users["owner"], users["invitee"], team, message="Join us"
            )
            assert invitation.status is InvitationStatus.PENDING
            assert invitation.role is TeamRole.MEMBER
            assert invitation.message == "Join us"
            expected = before + timedelta(days=7)
            assert abs((invitation.expires_at - expected).total_seconds()) < 60

    def test_duplicate_pending_invitation(self, app, users, team):
        """Should reject a second invitation while the first is pending"""
        with app.app_context():
            send_invitation(users["owner"], users["invitee"], team)
            with pytest.raises(ConflictError) as exc:
                send_invitation(users["admin"], users["invitee"], team)
            assert exc.value.message == "Pending invitation already exists for this user"
            assert _invitation_count(team) == 1

    def test_concurrent_duplicate_send(self, app, users, team):
        """Should turn the unique index violation at commit into a conflict"""
        with app.app_context():
            default_expiry = Invitation.default_expiry

            def send_meanwhile(days, now=None):
                # A second sender commits between the pending check and our insert
                db.session.add(
                    Invitation(
                        team_id=team,
                        sender_id=users["admin"],
                        receiver_id=users["invitee"],
                        role=TeamRole.MEMBER,
                        expires_at=default_expiry(days),
                    )
                )
                db.session.commit()
                return default_expiry(days, now)

            with patch.object(Invitation, "default_expiry", side_effect=send_meanwhile):
                with pytest.raises(ConflictError) as exc:
                    send_invitation(users["owner"], users["invitee"], team)
            assert exc.value.message == "Pending invitation already exists for this user"

            pending = db.session.execute(
                select(Invitation).where(Invitation.team_id == team)
            ).scalars().all()
            assert [(i.sender_id, i.status) for i in pending] == [
                (users["admin"], InvitationStatus.PENDING)
            ]

    def test_member_cannot_invite(self, app, users, team):
        """Should forbid regular members and create nothing"""
        with app.app_context():
            with pytest.raises(ForbiddenError) as exc:
                send_invitation(users["member"], users["invitee"], team)
            assert exc.value.message == "Only team owners and admins can send invitations"
            assert _invitation_count(team) == 0

    def test_admin_invites_admin(self, app, users, team):
        """Should let an admin invite at the admin role"""
        with app.app_context():
            invitation = send_invitation(
                users["admin"], users["invitee"], team, role="admin"
            )
            assert invitation.role is TeamRole.ADMIN
            assert invitation.status is InvitationStatus.PENDING

    def test_admin_cannot_invite_as_owner(self, app, users, team):
        with app.app_context():
            with pytest.raises(ValidationError) as exc:
                send_invitation(users["admin"], users["invitee"], team, role="owner")
            assert exc.value.message == "Cannot invite as owner"
            assert _invitation_count(team) == 0

    def test_owner_invites_admin(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(
                users["owner"], users["invitee"], team, role="admin"
            )
            assert invitation.role is TeamRole.ADMIN

    def test_cannot_invite_as_owner(self, app, users, team):
        with app.app_context():
            with pytest.raises(ValidationError) as exc:
                send_invitation(users["owner"], users["invitee"], team, role="owner")
            assert exc.value.message == "Cannot invite as owner"

    def test_cannot_invite_existing_member(self, app, users, team):
        with app.app_context():
            with pytest.raises(ConflictError) as exc:
                send_invitation(users["owner"], users["member"], team)
            assert exc.value.message == "User is already a team member"

    def test_unknown_receiver_and_team(self, app, users, team):
        with app.app_context():
            with pytest.raises(NotFoundError) as exc:
                send_invitation(users["owner"], 9999, team)
            assert exc.value.message == "Recipient user not found"

            with pytest.raises(NotFoundError) as exc:
                send_invitation(users["owner"], users["invitee"], 9999)
            assert exc.value.message == "Team not found"

    def test_message_too_long(self, app, users, team):
        with app.app_context():
            with pytest.raises(ValidationError):
                send_invitation(
                    users["owner"], users["invitee"], team, message="x" * 1001
                )

    def test_stale_pending_does_not_block_new_invitation(
        self, app, users, stale_invitation
    ):
        """Should expire the stale invitation and allow a fresh one"""
        with app.app_context():
            stale = db.session.get(Invitation, stale_invitation)
            fresh = send_invitation(users["owner"], users["invitee"], stale.team_id)
            assert fresh.status is InvitationStatus.PENDING
            db.session.expire_all()
            assert (
                db.session.get(Invitation, stale_invitation).status
                is InvitationStatus.EXPIRED
            )

    def test_reinvite_after_decline(self, app, users, team):
        with app.app_context():
            first = send_invitation(users["owner"], users["invitee"], team)
            decline_invitation(first.id, users["invitee"])
            second = send_invitation(users["owner"], users["invitee"], team)
            assert second.id != first.id
            assert second.status is InvitationStatus.PENDING

    def test_sending_is_logged(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            activity = db.session.execute(
                select(ActivityLog).where(
                    ActivityLog.activity_type == ActivityType.INVITATION_SENT
                )
            ).scalar_one()
            assert activity.context["invitation_id"] == invitation.id
            assert activity.context["receiver_id"] == users["invitee"]


class TestAcceptInvitation:
    """Test accepting invitations."""

    def test_accept_creates_membership(self, app, users, team):
        """Should create the membership and mark the invitation ACCEPTED"""
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            result = accept_invitation(invitation.id, users["invitee"])

            assert result.invitation.status is InvitationStatus.ACCEPTED
            assert result.invitation.responded_at is not None
            assert result.membership.user_id == users["invitee"]
            assert result.membership.role is TeamRole.MEMBER
            assert get_member_role(team, users["invitee"]) is TeamRole.MEMBER

    def test_accept_grants_invited_role(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(
                users["owner"], users["invitee"], team, role="admin"
            )
            accept_invitation(invitation.id, users["invitee"])
            assert get_member_role(team, users["invitee"]) is TeamRole.ADMIN

    def test_only_receiver_accepts(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            with pytest.raises(ForbiddenError) as exc:
                accept_invitation(invitation.id, users["outsider"])
            assert exc.value.message == "Only the recipient can accept this invitation"
            assert _membership(team, users["outsider"]) is None

    def test_missing_invitation(self, app, users):
        with app.app_context():
            with pytest.raises(NotFoundError) as exc:
                accept_invitation(9999, users["invitee"])
            assert exc.value.message == "Invitation not found"

    def test_accept_expired_flips_then_reports_invalid_state(
        self, app, users, stale_invitation
    ):
        """Should flip to EXPIRED once, then treat it as a terminal state"""
        with app.app_context():
            with pytest.raises(ExpiredError) as exc:
                accept_invitation(stale_invitation, users["invitee"])
            assert exc.value.message == "Invitation has expired"

            db.session.expire_all()
            invitation = db.session.get(Invitation, stale_invitation)
            assert invitation.status is InvitationStatus.EXPIRED
            assert _membership(invitation.team_id, users["invitee"]) is None

            with pytest.raises(InvalidStateError) as exc:
                accept_invitation(stale_invitation, users["invitee"])
            assert not isinstance(exc.value, ExpiredError)
            assert exc.value.message == "Invitation is expired, cannot accept"

    def test_accept_twice(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            accept_invitation(invitation.id, users["invitee"])
            with pytest.raises(InvalidStateError) as exc:
                accept_invitation(invitation.id, users["invitee"])
            assert exc.value.message == "Invitation is accepted, cannot accept"

    def test_accept_when_already_member(self, app, users, team):
        """Should refuse without touching the invitation"""
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            invitation_id = invitation.id
            # Joined through another path in the meantime
            db.session.add(
                TeamMembership(
                    team_id=team, user_id=users["invitee"], role=TeamRole.MEMBER
                )
            )
            db.session.commit()

            with pytest.raises(ConflictError) as exc:
                accept_invitation(invitation_id, users["invitee"])
            assert exc.value.message == "You are already a member of this team"
            db.session.expire_all()
            assert (
                db.session.get(Invitation, invitation_id).status
                is InvitationStatus.PENDING
            )

    def test_acceptance_is_logged(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            accept_invitation(invitation.id, users["invitee"])
            added = db.session.execute(
                select(ActivityLog).where(
                    ActivityLog.activity_type == ActivityType.MEMBER_ADDED,
                    ActivityLog.user_id == users["invitee"],
                )
            ).scalar_one()
            assert added.context["invitation_id"] == invitation.id

    def test_activity_failure_does_not_undo_acceptance(self, app, users, team):
        """Should keep the committed membership when the audit write fails"""
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            invitation_id = invitation.id
            commit = db.session.commit

            def failing_activity_commit():
                if any(isinstance(obj, ActivityLog) for obj in db.session.new):
                    raise OperationalError("INSERT INTO activity_logs", {}, Exception("disk full"))
                return commit()

            with patch.object(db.session, "commit", side_effect=failing_activity_commit):
                result = accept_invitation(invitation_id, users["invitee"])

            assert result.membership.role is TeamRole.MEMBER
            db.session.expire_all()
            assert _membership(team, users["invitee"]) is not None
            assert (
                db.session.get(Invitation, invitation_id).status
                is InvitationStatus.ACCEPTED
            )
            accepted_logs = db.session.execute(
                select(func.count(ActivityLog.id)).where(
                    ActivityLog.activity_type == ActivityType.INVITATION_ACCEPTED
                )
            ).scalar()
            assert accepted_logs == 0


class TestDeclineAndCancel:
    """Test the other terminal transitions."""

    def test_decline(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            declined = decline_invitation(invitation.id, users["invitee"])
            assert declined.status is InvitationStatus.DECLINED
            assert declined.responded_at is not None
            assert _membership(team, users["invitee"]) is None

    def test_only_receiver_declines(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            with pytest.raises(ForbiddenError) as exc:
                decline_invitation(invitation.id, users["owner"])
            assert exc.value.message == "Only the recipient can decline this invitation"

    def test_cancel_keeps_record(self, app, users, team):
        """Should mark the invitation CANCELLED rather than delete it"""
        with app.app_context():
            invitation = send_invitation(users["admin"], users["invitee"], team)
            cancelled = cancel_invitation(invitation.id, users["admin"])
            assert cancelled.status is InvitationStatus.CANCELLED
            assert _invitation_count(team) == 1

    def test_only_sender_cancels(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["admin"], users["invitee"], team)
            with pytest.raises(ForbiddenError) as exc:
                cancel_invitation(invitation.id, users["owner"])
            assert exc.value.message == "Only the sender can cancel this invitation"

    def test_decline_expired(self, app, users, stale_invitation):
        with app.app_context():
            with pytest.raises(ExpiredError):
                decline_invitation(stale_invitation, users["invitee"])
            db.session.expire_all()
            assert (
                db.session.get(Invitation, stale_invitation).status
                is InvitationStatus.EXPIRED
            )

    def test_cancel_expired(self, app, users, stale_invitation):
        with app.app_context():
            with pytest.raises(ExpiredError):
                cancel_invitation(stale_invitation, users["owner"])

    @pytest.mark.parametrize("first", ["accept", "decline", "cancel"])
    def test_terminal_states_are_final(self, app, users, team, first):
        """Should never move an invitation out of a terminal state"""
        actions = {
            "accept": lambda inv_id: accept_invitation(inv_id, users["invitee"]),
            "decline": lambda inv_id: decline_invitation(inv_id, users["invitee"]),
            "cancel": lambda inv_id: cancel_invitation(inv_id, users["owner"]),
        }
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            invitation_id = invitation.id
            actions[first](invitation_id)
            db.session.expire_all()
            final_status = db.session.get(Invitation, invitation_id).status

            for name, action in actions.items():
                with pytest.raises(InvalidStateError):
                    action(invitation_id)
                db.session.expire_all()
                assert db.session.get(Invitation, invitation_id).status is final_status


class TestInvitationQueries:
    """Test listing and lookup with lazy expiry."""

    def test_received_and_sent(self, app, users, team):
        with app.app_context():
            first = send_invitation(users["owner"], users["invitee"], team)
            second = send_invitation(users["admin"], users["outsider"], team)

            received = get_received_invitations(users["invitee"])
            assert [inv.id for inv in received] == [first.id]
            assert [inv.id for inv in get_sent_invitations(users["admin"])] == [second.id]

    def test_listing_expires_stale_invitations(self, app, users, stale_invitation):
        """Should report stale PENDING invitations as EXPIRED on read"""
        with app.app_context():
            received = get_received_invitations(users["invitee"])
            assert [inv.status for inv in received] == [InvitationStatus.EXPIRED]
            assert get_received_invitations(users["invitee"], status="pending") == []

    def test_status_filter(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            decline_invitation(invitation.id, users["invitee"])
            send_invitation(users["owner"], users["outsider"], team)

            declined = get_sent_invitations(users["owner"], status="declined")
            assert [inv.id for inv in declined] == [invitation.id]

            with pytest.raises(ValidationError):
                get_sent_invitations(users["owner"], status="lost")

    def test_team_invitations_for_managers(self, app, users, team):
        with app.app_context():
            send_invitation(users["owner"], users["invitee"], team)
            assert len(get_team_invitations(team, users["admin"])) == 1
            with pytest.raises(ForbiddenError):
                get_team_invitations(team, users["member"])

    def test_get_invitation_visibility(self, app, users, team):
        """Should show an invitation only to its sender and receiver"""
        with app.app_context():
            invitation = send_invitation(users["admin"], users["invitee"], team)
            assert get_invitation_by_id(invitation.id, users["admin"]).id == invitation.id
            assert get_invitation_by_id(invitation.id, users["invitee"]).id == invitation.id
            with pytest.raises(ForbiddenError) as exc:
                get_invitation_by_id(invitation.id, users["owner"])
            assert exc.value.message == "Unauthorized to view this invitation"

    def test_get_invitation_lazily_expires(self, app, users, stale_invitation):
        with app.app_context():
            invitation = get_invitation_by_id(stale_invitation, users["invitee"])
            assert invitation.status is InvitationStatus.EXPIRED


class TestExpiry:
    """Test the expiry predicate and the sweep."""

    def test_is_expired(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            assert not is_expired(invitation)
            assert is_expired(invitation, now=utcnow() + timedelta(days=8))

    def test_sweep(self, app, users, team, stale_invitation):
        """Should flip only stale PENDING invitations"""
        with app.app_context():
            fresh = send_invitation(users["owner"], users["outsider"], team)
            fresh_id = fresh.id

            assert mark_expired_invitations() == 1
            assert mark_expired_invitations() == 0

            db.session.expire_all()
            assert (
                db.session.get(Invitation, stale_invitation).status
                is InvitationStatus.EXPIRED
            )
            assert db.session.get(Invitation, fresh_id).status is InvitationStatus.PENDING

    def test_sweep_leaves_terminal_states(self, app, users, team):
        with app.app_context():
            invitation = send_invitation(users["owner"], users["invitee"], team)
            decline_invitation(invitation.id, users["invitee"])
            assert mark_expired_invitations(now=utcnow() + timedelta(days=30)) == 0
            db.session.expire_all()
            assert (
                db.session.get(Invitation, invitation.id).status
                is InvitationStatus.DECLINED
            )
