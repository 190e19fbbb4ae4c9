"""
API endpoints for team invitations.

Sending, listing and responding to invitations. The lifecycle rules,
including lazy expiration, live in ``crewhub.invitations``.
"""
from flask import jsonify, request
from flask_login import current_user, login_required

from crewhub import invitations as invitation_service
from crewhub.api import api_bp
from crewhub.api._helpers import json_body, require_int


def _invitation_list(invitations) -> dict:
    return {"invitations": [inv.to_dict() for inv in invitations]}


@api_bp.route("/invitations", methods=["POST"])
@login_required
def send_invitation():
    """
    Invite a registered user to a team.

    Request body:
        {
            "team_id": 3,
            "receiver_id": 9,
            "role": "member",        (optional, "member" or "admin")
            "message": "Join us!"    (optional)
        }

    Returns:
        201 with the PENDING invitation
    """
    data = json_body()
    invitation = invitation_service.send_invitation(
        sender_id=current_user.id,
        receiver_id=require_int(data, "receiver_id"),
        team_id=require_int(data, "team_id"),
        role=data.get("role") or "member",
        message=data.get("message"),
    )
    return jsonify(invitation.to_dict()), 201


@api_bp.route("/invitations/received", methods=["GET"])
@login_required
def received_invitations():
    """Invitations addressed to the current user. Optional ``status`` filter."""
    invitations = invitation_service.get_received_invitations(
        current_user.id, status=request.args.get("status") or None
    )
    return jsonify(_invitation_list(invitations))


@api_bp.route("/invitations/sent", methods=["GET"])
@login_required
def sent_invitations():
    """Invitations the current user has sent. Optional ``status`` filter."""
    invitations = invitation_service.get_sent_invitations(
        current_user.id, status=request.args.get("status") or None
    )
    return jsonify(_invitation_list(invitations))


@api_bp.route("/invitations/teams/<int:team_id>", methods=["GET"])
@login_required
def team_invitations(team_id):
    """All invitations of a team (owner or admin). Optional ``status`` filter."""
    invitations = invitation_service.get_team_invitations(
        team_id, current_user.id, status=request.args.get("status") or None
    )
    return jsonify(_invitation_list(invitations))


@api_bp.route("/invitations/<int:invitation_id>", methods=["GET"])
@login_required
def get_invitation(invitation_id):
    """One invitation, visible to its sender and receiver."""
    invitation = invitation_service.get_invitation_by_id(invitation_id, current_user.id)
    return jsonify(invitation.to_dict())


@api_bp.route("/invitations/<int:invitation_id>/accept", methods=["PUT"])
@login_required
def accept_invitation(invitation_id):
    """
    Accept an invitation and join the team.

    Returns:
        JSON object with the accepted invitation and the new membership
    """
    result = invitation_service.accept_invitation(invitation_id, current_user.id)
    return jsonify(
        {
            "invitation": result.invitation.to_dict(),
            "membership": result.membership.to_dict(),
        }
    )


@api_bp.route("/invitations/<int:invitation_id>/decline", methods=["PUT"])
@login_required
def decline_invitation(invitation_id):
    """Decline an invitation addressed to the current user."""
    invitation = invitation_service.decline_invitation(invitation_id, current_user.id)
    return jsonify(invitation.to_dict())


@api_bp.route("/invitations/<int:invitation_id>", methods=["DELETE"])
@login_required
def cancel_invitation(invitation_id):
    """Cancel an invitation the current user sent. The record is kept as CANCELLED."""
    invitation = invitation_service.cancel_invitation(invitation_id, current_user.id)
    return jsonify(invitation.to_dict())
