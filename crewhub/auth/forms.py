"""
Authentication forms for user registration and login.

The API accepts JSON bodies; Flask-WTF feeds ``request.get_json()`` into
these forms, so the same validators apply to JSON and form posts.
"""
from flask_wtf import FlaskForm
from sqlalchemy import select
from wtforms import BooleanField, PasswordField, StringField
from wtforms.validators import (
    DataRequired,
    Email,
    EqualTo,
    Length,
    Optional,
    ValidationError,
)

from crewhub.models import User, db


class LoginForm(FlaskForm):
    """Authenticate with either username or email plus password."""

    username_or_email = StringField(
        "Username or Email", validators=[DataRequired(), Length(min=3, max=120)]
    )
    password = PasswordField("Password", validators=[DataRequired()])
    remember_me = BooleanField("Remember Me")


class RegistrationForm(FlaskForm):
    """
    Create an account.

    Usernames and emails must be unique; the checks below give a friendly
    message before the database constraint would.
    """

    username = StringField("Username", validators=[DataRequired(), Length(min=3, max=80)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=120)])
    first_name = StringField("First Name", validators=[Optional(), Length(max=100)])
    last_name = StringField("Last Name", validators=[Optional(), Length(max=100)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8)])
    password_confirm = PasswordField(
        "Confirm Password",
        validators=[DataRequired(), EqualTo("password", message="Passwords must match")],
    )

    def validate_username(self, username):
        exists = db.session.execute(
            select(User.id).where(User.username == username.data)
        ).first()
        if exists:
            raise ValidationError("Username already exists. Please choose a different one.")

    def validate_email(self, email):
        exists = db.session.execute(
            select(User.id).where(User.email == email.data.lower())
        ).first()
        if exists:
            raise ValidationError("Email already registered. Please use a different email.")


def first_error(form: FlaskForm) -> str:
    """The first validation message of a form, for the JSON ``error`` field."""
    for messages in form.errors.values():
        if messages:
            return messages[0]
    return "Invalid request"
