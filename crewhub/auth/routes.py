"""
Authentication routes for registration, login, logout and the current user.

All endpoints speak JSON. Sessions are managed by Flask-Login; clients that
run with CSRF protection enabled fetch a token from ``/auth/csrf-token`` and
send it back in the ``X-CSRFToken`` header.
"""
import structlog
from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from sqlalchemy import or_, select

from crewhub.auth.forms import LoginForm, RegistrationForm, first_error
from crewhub.models import User, db, utcnow

logger = structlog.get_logger(__name__)

# Create authentication blueprint
auth_bp = Blueprint("auth", __name__)


def _user_payload(user: User) -> dict:
    data = user.to_summary()
    data["email"] = user.email
    data["created_at"] = user.created_at.isoformat() if user.created_at else None
    return data


def _form_error(form) -> tuple:
    return (
        jsonify({"error": first_error(form), "kind": "validation", "fields": form.errors}),
        400,
    )


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    """Issue a CSRF token bound to the caller's session."""
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/register", methods=["POST"])
def register():
    """
    Create a user account.

    Request body:
        {
            "username": "alice",
            "email": "alice@example.com",
            "password": "...",
            "password_confirm": "...",
            "first_name": "Alice",   (optional)
            "last_name": "Smith"     (optional)
        }

    Returns:
        201 with the new user
    """
    form = RegistrationForm()
    if not form.validate_on_submit():
        return _form_error(form)

    user = User(
        username=form.username.data.strip(),
        email=form.email.data.strip().lower(),
        first_name=form.first_name.data or None,
        last_name=form.last_name.data or None,
    )
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.commit()

    logger.info("user_registered", user_id=user.id, username=user.username)
    return jsonify(_user_payload(user)), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Start a session using username or email plus password.

    Returns:
        200 with the user, 401 on bad credentials or a disabled account
    """
    form = LoginForm()
    if not form.validate_on_submit():
        return _form_error(form)

    identifier = form.username_or_email.data.strip()
    user = db.session.execute(
        select(User).where(
            or_(User.username == identifier, User.email == identifier.lower())
        )
    ).scalar_one_or_none()

    if user is None or not user.check_password(form.password.data):
        logger.info("login_failed", identifier=identifier)
        return (
            jsonify({"error": "Invalid username or password", "kind": "unauthenticated"}),
            401,
        )
    if not user.is_active:
        return jsonify({"error": "Account is disabled", "kind": "unauthenticated"}), 401

    login_user(user, remember=bool(form.remember_me.data))
    user.last_login = utcnow()
    db.session.commit()

    logger.info("login_succeeded", user_id=user.id)
    return jsonify(_user_payload(user))


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """End the current session."""
    user_id = current_user.id
    logout_user()
    logger.info("logout", user_id=user_id)
    return jsonify({"message": "Logged out"})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    """Return the authenticated user."""
    return jsonify(_user_payload(current_user))
