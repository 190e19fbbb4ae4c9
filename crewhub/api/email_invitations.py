"""
API endpoints for email invitations.

Invitations addressed to people without an account. The token check is
public so a sign-up page can show who is inviting; accepting needs a
session. Lifecycle rules live in ``crewhub.email_invitations``.
"""
from flask import jsonify, request
from flask_login import current_user, login_required

from crewhub import email_invitations as email_invitation_service
from crewhub.api import api_bp
from crewhub.api._helpers import json_body


@api_bp.route("/email-invitations/teams/<int:team_id>", methods=["POST"])
@login_required
def send_email_invitation(team_id):
    """
    Invite an email address to a team (owner or admin).

    Request body:
        {
            "email": "new.hire@example.com",
            "role": "member",        (optional, "member" or "admin")
            "message": "Join us!"    (optional)
        }

    Returns:
        201 with the PENDING invitation, including its token
    """
    data = json_body()
    invitation = email_invitation_service.send_email_invitation(
        sender_id=current_user.id,
        team_id=team_id,
        email=data.get("email"),
        role=data.get("role") or "member",
        message=data.get("message"),
    )
    return jsonify(invitation.to_dict(include_token=True)), 201


@api_bp.route("/email-invitations/teams/<int:team_id>", methods=["GET"])
@login_required
def team_email_invitations(team_id):
    """Pending email invitations of a team (owner or admin)."""
    invitations = email_invitation_service.get_team_email_invitations(
        team_id, current_user.id
    )
    return jsonify({"invitations": [inv.to_dict() for inv in invitations]})


@api_bp.route("/email-invitations/teams/<int:team_id>/check", methods=["GET"])
@login_required
def check_email_invitation(team_id):
    """Whether ``?email=`` already has a pending invitation to the team."""
    exists = email_invitation_service.has_pending_email_invitation(
        team_id, current_user.id, request.args.get("email")
    )
    return jsonify({"exists": exists})


@api_bp.route("/email-invitations/validate/<token>", methods=["GET"])
def validate_email_invitation(token):
    """Describe a live invitation by token. No session required."""
    invitation = email_invitation_service.validate_invitation_token(token)
    return jsonify(invitation.to_dict())


@api_bp.route("/email-invitations/accept/<token>", methods=["POST"])
@login_required
def accept_email_invitation(token):
    """
    Accept an email invitation and join the team as the current user.

    Returns:
        JSON object with the accepted invitation and the new membership
    """
    result = email_invitation_service.accept_email_invitation(token, current_user.id)
    return jsonify(
        {
            "invitation": result.invitation.to_dict(),
            "membership": result.membership.to_dict(),
        }
    )


@api_bp.route("/email-invitations/<int:invitation_id>", methods=["DELETE"])
@login_required
def cancel_email_invitation(invitation_id):
    """Cancel an email invitation (inviter, owner or admin). The record is kept."""
    invitation = email_invitation_service.cancel_email_invitation(
        invitation_id, current_user.id
    )
    return jsonify(invitation.to_dict())
