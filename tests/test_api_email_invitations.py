"""
Tests for the email invitation REST endpoints.
"""
from crewhub.models import EmailInvitation, InvitationStatus, TeamRole, db
from crewhub.team_permissions import get_member_role


def _send(client, team_id, email, **extra):
    return client.post(
        f"/api/email-invitations/teams/{team_id}", json={"email": email, **extra}
    )


class TestEmailInvitationFlow:
    """Test inviting an address and joining with the token."""

    def test_invite_validate_and_accept(self, client, auth, app, users, team):
        """Should hand the token to the inviter and let a signed-in user redeem it"""
        auth.login("admin")
        resp = _send(client, team, "invitee@example.com", role="admin")
        assert resp.status_code == 201
        created = resp.get_json()
        assert created["status"] == "pending"
        assert created["role"] == "admin"
        assert created["team"]["slug"] == "acme"
        token = created["token"]

        # Anyone holding the token may look it up; the token is not echoed
        auth.logout()
        resp = client.get(f"/api/email-invitations/validate/{token}")
        assert resp.status_code == 200
        assert resp.get_json()["email"] == "invitee@example.com"
        assert "token" not in resp.get_json()

        resp = client.post(f"/api/email-invitations/accept/{token}")
        assert resp.status_code == 401

        auth.login("invitee")
        resp = client.post(f"/api/email-invitations/accept/{token}")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["invitation"]["status"] == "accepted"
        assert data["membership"]["role"] == "admin"
        with app.app_context():
            assert get_member_role(team, users["invitee"]) is TeamRole.ADMIN

        resp = client.get(f"/api/email-invitations/validate/{token}")
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "This invitation has already been accepted"

    def test_unknown_token(self, client):
        resp = client.get("/api/email-invitations/validate/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Invalid invitation token"

    def test_expired_token(self, client, auth, stale_email_invitation):
        auth.login("invitee")
        resp = client.post(f"/api/email-invitations/accept/{'f' * 64}")
        assert resp.status_code == 409
        assert resp.get_json()["kind"] == "expired"

    def test_member_cannot_send(self, client, auth, team):
        auth.login("member")
        resp = _send(client, team, "x@example.com")
        assert resp.status_code == 403

    def test_invalid_email(self, client, auth, team):
        auth.login("owner")
        resp = _send(client, team, "nope")
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "validation"

    def test_duplicate(self, client, auth, team):
        auth.login("owner")
        _send(client, team, "dup@example.com")
        resp = _send(client, team, "dup@example.com")
        assert resp.status_code == 409


class TestEmailInvitationManagement:
    """Test listing, checking and cancelling."""

    def test_list_check_and_cancel(self, client, auth, app, team):
        auth.login("owner")
        invitation_id = _send(client, team, "c@example.com").get_json()["id"]

        resp = client.get(f"/api/email-invitations/teams/{team}")
        assert resp.status_code == 200
        listed = resp.get_json()["invitations"]
        assert [inv["id"] for inv in listed] == [invitation_id]
        assert "token" not in listed[0]

        resp = client.get(
            f"/api/email-invitations/teams/{team}/check?email=c@example.com"
        )
        assert resp.get_json() == {"exists": True}

        auth.login("member")
        resp = client.delete(f"/api/email-invitations/{invitation_id}")
        assert resp.status_code == 403
        resp = client.get(f"/api/email-invitations/teams/{team}")
        assert resp.status_code == 403

        auth.login("admin")
        resp = client.delete(f"/api/email-invitations/{invitation_id}")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "cancelled"
        with app.app_context():
            invitation = db.session.get(EmailInvitation, invitation_id)
            assert invitation.status is InvitationStatus.CANCELLED

        resp = client.get(
            f"/api/email-invitations/teams/{team}/check?email=c@example.com"
        )
        assert resp.get_json() == {"exists": False}
