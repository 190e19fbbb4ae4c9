import tempfile
from datetime import timedelta

import pytest

from config.settings import TestingConfig
from crewhub import create_app
from crewhub.models import (
    EmailInvitation,
    Invitation,
    InvitationStatus,
    TeamRole,
    User,
    db,
    utcnow,
)
from crewhub.teams import add_member, create_team

PASSWORD = "password123"

# Users created for every test: owner/admin/member belong to the "Acme"
# team built by the ``team`` fixture; invitee and outsider do not.
USERNAMES = ("tester", "owner", "admin", "member", "invitee", "outsider")


@pytest.fixture()
def app():
    instance_path = tempfile.mkdtemp()
    flask_app = create_app(TestingConfig)
    flask_app.instance_path = instance_path
    with flask_app.app_context():
        # Ensure a clean schema per test
        db.drop_all()
        db.create_all()
        for username in USERNAMES:
            user = User(username=username, email=f"{username}@example.com")
            user.set_password(PASSWORD)
            db.session.add(user)
        db.session.commit()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def users(app):
    """Map of username -> user id for the seeded users."""
    with app.app_context():
        return {
            user.username: int(user.id)
            for user in db.session.execute(db.select(User)).scalars()
        }


@pytest.fixture()
def make_user(app):
    """Factory creating an extra user and returning its id."""

    def _make_user(username):
        with app.app_context():
            user = User(username=username, email=f"{username}@example.com")
            user.set_password(PASSWORD)
            db.session.add(user)
            db.session.commit()
            return int(user.id)

    return _make_user


@pytest.fixture()
def team(app, users):
    """
    Team "Acme" owned by ``owner``, with ``admin`` as ADMIN and ``member`` as
    MEMBER. Returns the team id.
    """
    with app.app_context():
        acme = create_team(users["owner"], {"name": "Acme", "type": "company"})
        add_member(acme.id, users["owner"], users["admin"], TeamRole.ADMIN)
        add_member(acme.id, users["owner"], users["member"], TeamRole.MEMBER)
        return int(acme.id)


@pytest.fixture()
def stale_invitation(app, users, team):
    """A PENDING invitation to ``invitee`` created eight days ago and never swept."""
    with app.app_context():
        created = utcnow() - timedelta(days=8)
        invitation = Invitation(
            team_id=team,
            sender_id=users["owner"],
            receiver_id=users["invitee"],
            role=TeamRole.MEMBER,
            status=InvitationStatus.PENDING,
            created_at=created,
            expires_at=Invitation.default_expiry(7, now=created),
        )
        db.session.add(invitation)
        db.session.commit()
        return int(invitation.id)


@pytest.fixture()
def stale_email_invitation(app, users, team):
    """A PENDING email invitation created eight days ago and never swept."""
    with app.app_context():
        created = utcnow() - timedelta(days=8)
        invitation = EmailInvitation(
            team_id=team,
            invited_by_id=users["owner"],
            email="late@example.com",
            role=TeamRole.MEMBER,
            token="f" * 64,
            status=InvitationStatus.PENDING,
            created_at=created,
            expires_at=EmailInvitation.default_expiry(7, now=created),
        )
        db.session.add(invitation)
        db.session.commit()
        return int(invitation.id)


@pytest.fixture()
def auth(client):
    class AuthActions:
        def login(self, username="tester", password=PASSWORD):
            return client.post(
                "/auth/login",
                json={"username_or_email": username, "password": password},
            )

        def logout(self):
            return client.post("/auth/logout")

    return AuthActions()
