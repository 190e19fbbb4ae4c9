"""
JSON API blueprint.

Route modules (``health``, ``teams``, ``invitations``) register their views
on the shared ``api_bp``; the app factory imports them and mounts the
blueprint at ``/api``.
"""
from flask import Blueprint

api_bp = Blueprint("api", __name__)
