"""
In-app notification endpoints (the notification bell).
"""

from flask import Blueprint, jsonify, request

from api.state import get_services
from api.utils import bounded_limit, current_user_id, require_user
from models import NotFoundError

notifications_bp = Blueprint("notifications", __name__)


@notifications_bp.route("/notifications", methods=["GET"])
@require_user
def list_notifications():
    """
    List the caller's notifications, newest first.

    Query params:
        limit: Maximum number of notifications (default 10, max 100)
        unread: "true" to list unread notifications only
    """
    limit = bounded_limit(request.args.get("limit"))
    unread_only = request.args.get("unread", "false").lower() == "true"
    notifications = get_services().store.list_notifications(
        current_user_id(), limit=limit, unread_only=unread_only
    )
    return jsonify({
        "count": len(notifications),
        "unread": sum(1 for n in notifications if not n.read),
        "notifications": [n.to_dict() for n in notifications],
    })


@notifications_bp.route("/notifications/<notification_id>/read", methods=["POST"])
@require_user
def mark_read(notification_id: str):
    """Mark one of the caller's notifications as read."""
    if not get_services().store.mark_notification_read(current_user_id(), notification_id):
        raise NotFoundError(f"Notification not found: {notification_id}")
    return jsonify({"id": notification_id, "read": True})
