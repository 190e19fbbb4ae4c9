"""
API endpoints for team management.

This module provides REST API endpoints for creating, browsing and managing
teams, sub-teams and team memberships. Business rules live in
``crewhub.teams``; views only parse requests and serialize results. Domain
errors propagate to the app-level handler, which maps them to JSON.
"""
from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from crewhub import teams as team_service
from crewhub.activity import count_team_activities, get_team_activities
from crewhub.api import api_bp
from crewhub.api._helpers import int_arg, json_body, require_int
from crewhub.errors import ForbiddenError, NotFoundError, ValidationError


def _team_detail(team) -> dict:
    data = team.to_dict(include_members=True)
    data["sub_teams"] = [t.to_summary() for t in team_service.get_sub_teams(team.id)]
    return data


@api_bp.route("/teams", methods=["POST"])
@login_required
def create_team():
    """
    Create a new team owned by the current user.

    Request body:
        {
            "name": "Team Name",
            "type": "company",            (optional, default "team")
            "description": "...",         (optional)
            "city": "Berlin",             (optional)
            "avatar": "https://..."       (optional)
        }

    Returns:
        201 with the created team
    """
    team = team_service.create_team(current_user.id, json_body())
    return jsonify(_team_detail(team)), 201


@api_bp.route("/teams", methods=["GET"])
def search_teams():
    """
    Browse main teams, newest first.

    Query parameters:
        type, city, search, page, limit

    Returns:
        JSON object with teams array and pagination
    """
    config = current_app.config
    result = team_service.search_teams(
        type=request.args.get("type") or None,
        city=request.args.get("city") or None,
        search=request.args.get("search") or None,
        page=int_arg("page", 1),
        limit=int_arg(
            "limit",
            config.get("TEAMS_PER_PAGE", 20),
            maximum=config.get("TEAMS_MAX_PER_PAGE", 100),
        ),
    )
    return jsonify(
        {
            "teams": [t.to_dict() for t in result["teams"]],
            "pagination": result["pagination"],
        }
    )


@api_bp.route("/teams/mine", methods=["GET"])
@login_required
def my_teams():
    """List the main teams the current user belongs to, with their role."""
    teams = []
    for membership in team_service.get_user_teams(current_user.id):
        data = membership.team.to_dict()
        data["role"] = membership.role.value
        data["joined_at"] = membership.joined_at.isoformat()
        teams.append(data)
    return jsonify({"teams": teams})


@api_bp.route("/teams/<int:team_id>", methods=["GET"])
def get_team(team_id):
    """
    Get a team by id.

    Returns:
        JSON object with team details, members and sub-teams
    """
    team = team_service.get_team_by_id(team_id)
    if team is None:
        raise NotFoundError("Team not found")
    return jsonify(_team_detail(team))


@api_bp.route("/teams/slug/<slug>", methods=["GET"])
def get_team_by_slug(slug):
    """Get a team by its slug. Numeric slugs such as "2024" resolve here."""
    team = team_service.get_team_by_slug(slug)
    if team is None:
        raise NotFoundError("Team not found")
    return jsonify(_team_detail(team))


@api_bp.route("/teams/<int:team_id>", methods=["PUT"])
@login_required
def update_team(team_id):
    """
    Update team details (owner only).

    Request body may contain: name, description, type, city, avatar,
    sub_team_category.
    """
    team = team_service.update_team(team_id, current_user.id, json_body())
    return jsonify(_team_detail(team))


@api_bp.route("/teams/<int:team_id>/parent", methods=["PUT"])
@login_required
def set_parent_team(team_id):
    """
    Move a team under a main team, or detach it with ``null``.

    Request body:
        {"parent_team_id": 12}
    """
    data = json_body()
    parent_team_id = (
        require_int(data, "parent_team_id")
        if data.get("parent_team_id") is not None
        else None
    )
    team = team_service.set_parent_team(team_id, current_user.id, parent_team_id)
    return jsonify(_team_detail(team))


@api_bp.route("/teams/<int:team_id>", methods=["DELETE"])
@login_required
def delete_team(team_id):
    """Delete a team (owner only)."""
    team_service.delete_team(team_id, current_user.id)
    return jsonify({"message": "Team deleted successfully"})


@api_bp.route("/teams/<int:team_id>/members", methods=["GET"])
@login_required
def list_members(team_id):
    """List members ordered owner, admins, members, then by join time."""
    team_service.get_team_or_error(team_id)
    members = team_service.get_team_members(team_id)
    return jsonify({"members": [m.to_dict() for m in members]})


@api_bp.route("/teams/<int:team_id>/members", methods=["POST"])
@login_required
def add_member(team_id):
    """
    Add a registered user to the team directly.

    Request body:
        {"user_id": 42, "role": "member"}
    """
    data = json_body()
    membership = team_service.add_member(
        team_id,
        current_user.id,
        require_int(data, "user_id"),
        data.get("role") or "member",
    )
    return jsonify(membership.to_dict()), 201


@api_bp.route("/teams/<int:team_id>/members/<int:user_id>/role", methods=["PUT"])
@login_required
def update_member_role(team_id, user_id):
    """
    Change a member's role (owner only).

    Request body:
        {"role": "admin"}
    """
    role = json_body().get("role")
    if not role:
        raise ValidationError("role is required")
    membership = team_service.update_member_role(team_id, current_user.id, user_id, role)
    return jsonify(membership.to_dict())


@api_bp.route("/teams/<int:team_id>/members/<int:user_id>", methods=["DELETE"])
@login_required
def remove_member(team_id, user_id):
    """Remove a member from the team."""
    team_service.remove_member(team_id, current_user.id, user_id)
    return jsonify({"message": "Member removed successfully"})


@api_bp.route("/teams/<int:team_id>/leave", methods=["POST"])
@login_required
def leave_team(team_id):
    """Leave a team as the current user."""
    team_service.leave_team(team_id, current_user.id)
    return jsonify({"message": "Left team successfully"})


@api_bp.route("/teams/<int:team_id>/transfer-ownership", methods=["POST"])
@login_required
def transfer_ownership(team_id):
    """
    Hand the team to another member (owner only).

    Request body:
        {"user_id": 42}
    """
    new_owner_id = require_int(json_body(), "user_id")
    team = team_service.transfer_ownership(team_id, current_user.id, new_owner_id)
    return jsonify(_team_detail(team))


@api_bp.route("/teams/<int:team_id>/sub-teams", methods=["GET"])
def list_sub_teams(team_id):
    """List the sub-teams of a team, newest first."""
    team_service.get_team_or_error(team_id)
    return jsonify(
        {"sub_teams": [t.to_dict() for t in team_service.get_sub_teams(team_id)]}
    )


@api_bp.route("/teams/<int:team_id>/sub-teams", methods=["POST"])
@login_required
def create_sub_team(team_id):
    """
    Create a sub-team (parent owner or admin). The creator owns the sub-team.

    Request body:
        {"name": "Backend", "sub_team_category": "engineering"}
    """
    team = team_service.create_sub_team(team_id, current_user.id, json_body())
    return jsonify(_team_detail(team)), 201


@api_bp.route("/teams/<int:team_id>/activity", methods=["GET"])
@login_required
def team_activity(team_id):
    """
    Activity feed for a team (members only).

    Query parameters:
        limit, offset
    """
    team_service.get_team_or_error(team_id)
    if not team_service.is_team_member(team_id, current_user.id):
        raise ForbiddenError("You are not a member of this team")

    config = current_app.config
    limit = int_arg(
        "limit",
        config.get("ACTIVITY_PER_PAGE", 50),
        maximum=config.get("ACTIVITY_MAX_PER_PAGE", 100),
    )
    offset = int_arg("offset", 0, minimum=0)
    activities = get_team_activities(team_id, limit=limit, offset=offset)
    return jsonify(
        {
            "activities": [a.to_dict() for a in activities],
            "total": count_team_activities(team_id),
            "limit": limit,
            "offset": offset,
        }
    )
