"""
Member profile endpoints.

Members register their own display name and push device token; admins
list members and grant or revoke the admin role.
"""

from flask import Blueprint, jsonify, request

from api.state import get_services
from api.utils import current_user_id, json_body, require_api_key, require_user, validate_json_schema
from models import User
from users import MAX_DISPLAY_NAME_LENGTH

users_bp = Blueprint("users", __name__)

MAX_TOKEN_LENGTH = 4096


def _public(user: User) -> dict:
    """Profile as shown over the API; device tokens never leave the server."""
    return {
        "id": user.id,
        "display_name": user.display_name,
        "role": user.role.value,
        "push_enabled": bool(user.fcm_token),
    }


@users_bp.route("/users/me", methods=["GET"])
@require_user
def get_me():
    """The caller's profile."""
    services = get_services()
    user = services.protests.resolve_user(current_user_id())
    if user is None:
        return jsonify({"error": "No profile yet", "hint": "PUT /users/me to register"}), 404
    return jsonify(_public(user))


@users_bp.route("/users/me", methods=["PUT"])
@require_api_key
@require_user
def update_me():
    """
    Create or update the caller's profile.

    Request body (all fields optional):
    {
        "display_name": "Alice Racer",
        "fcm_token": "device token"  ("" unregisters push)
    }
    """
    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={},
        optional_fields={"display_name": str, "fcm_token": str},
        max_lengths={"display_name": MAX_DISPLAY_NAME_LENGTH, "fcm_token": MAX_TOKEN_LENGTH},
    )
    if not is_valid:
        return jsonify({"error": error}), 400

    user = get_services().users.update_profile(
        current_user_id(),
        display_name=data.get("display_name"),
        fcm_token=data.get("fcm_token"),
    )
    return jsonify(_public(user))


@users_bp.route("/users", methods=["GET"])
@require_user
def list_users():
    """
    List league members (admins only).

    Query params:
        role: Only members with this role (driver, admin, super-admin)
    """
    members = get_services().users.list_members(current_user_id(), role=request.args.get("role"))
    return jsonify({"count": len(members), "users": [_public(u) for u in members]})


@users_bp.route("/users/<user_id>/role", methods=["POST"])
@require_api_key
@require_user
def set_role(user_id: str):
    """
    Grant or revoke the admin role (admins; demotion needs the super admin).

    Request body:
    {
        "role": "admin" | "driver"
    }
    """
    data = json_body()
    is_valid, error = validate_json_schema(data, required_fields={"role": str})
    if not is_valid:
        return jsonify({"error": error}), 400

    user = get_services().users.set_role(current_user_id(), user_id, data["role"])
    return jsonify(_public(user))
