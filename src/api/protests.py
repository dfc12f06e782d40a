"""
Protest API endpoints.

Drivers file protests, admins vote on them. Viewing a protest also
advances its lifecycle when a deadline has passed since the last sweep,
so a page never shows a stale status.
"""

from flask import Blueprint, jsonify, request

from api.state import get_services
from api.utils import (
    current_user_id,
    json_body,
    require_admin_caller,
    require_api_key,
    require_user,
    validate_json_schema,
)
from permissions import same_driver

protests_bp = Blueprint("protests", __name__)

# Maximum lengths for free-text protest fields
MAX_DESCRIPTION_LENGTH = 2000
MAX_REASON_LENGTH = 1000
MAX_URL_LENGTH = 500


@protests_bp.route("/protests", methods=["POST"])
@require_api_key
@require_user
def file_protest():
    """
    File a protest against another driver of a race.

    Request body:
    {
        "event_id": "race id",
        "accused_id": "steam id of the accused driver",
        "video_url": "link to the incident footage",
        "lap": 3,                        (optional)
        "description": "what happened",  (optional)
        "incident_type": "collision",    (optional)
        "video_minute": "12:30"          (optional)
    }

    Returns:
        The created protest (status ``pending``)
    """
    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"event_id": str, "accused_id": str, "video_url": str},
        optional_fields={
            "lap": int,
            "description": str,
            "incident_type": str,
            "video_minute": str,
        },
        max_lengths={
            "description": MAX_DESCRIPTION_LENGTH,
            "video_url": MAX_URL_LENGTH,
        },
    )
    if not is_valid:
        return jsonify({"error": error}), 400

    protest = get_services().protests.file_protest(
        accuser_id=current_user_id(),
        event_id=data["event_id"],
        accused_id=data["accused_id"],
        video_url=data["video_url"],
        lap=data.get("lap"),
        description=data.get("description") or "",
        incident_type=data.get("incident_type") or "other",
        video_minute=data.get("video_minute") or "",
    )
    return jsonify(protest.to_dict()), 201


@protests_bp.route("/protests/<protest_id>", methods=["GET"])
def get_protest(protest_id: str):
    """
    Get a protest with its current phase.

    Admins (``X-User-Id`` of an admin) also see the votes cast so far.
    """
    services = get_services()
    services.sweeper.check_protest(protest_id)
    return jsonify(services.protests.get_detail(protest_id, viewer_id=current_user_id()))


@protests_bp.route("/protests/<protest_id>/votes", methods=["POST"])
@require_api_key
@require_user
def cast_vote(protest_id: str):
    """
    Vote on a protest during the voting window (admins only).

    Request body:
    {
        "verdict": "punish" | "acquit",
        "reason": "why"
    }

    Returns:
        The stored vote; 409 if this admin already voted
    """
    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"verdict": str, "reason": str},
        max_lengths={"reason": MAX_REASON_LENGTH},
    )
    if not is_valid:
        return jsonify({"error": error}), 400

    vote = get_services().protests.cast_vote(
        protest_id, current_user_id(), data["verdict"], data["reason"]
    )
    return jsonify(vote.to_dict()), 201


@protests_bp.route("/protests/<protest_id>/votes", methods=["GET"])
@require_user
def list_votes(protest_id: str):
    """List the votes on a protest (admins only)."""
    votes = get_services().protests.list_votes(protest_id, current_user_id())
    return jsonify({
        "protest_id": protest_id,
        "count": len(votes),
        "votes": [vote.to_dict() for vote in votes],
    })


@protests_bp.route("/protests/<protest_id>/override", methods=["POST"])
@require_api_key
@require_user
def override_protest(protest_id: str):
    """
    Force a protest's status (admins only).

    Request body:
    {
        "status": "pending" | "under_review" | "concluded" | "inconclusive",
        "verdict": "free text"  (optional)
    }
    """
    data = json_body()
    is_valid, error = validate_json_schema(
        data,
        required_fields={"status": str},
        optional_fields={"verdict": str},
        max_lengths={"verdict": MAX_REASON_LENGTH},
    )
    if not is_valid:
        return jsonify({"error": error}), 400

    protest = get_services().protests.override_status(
        protest_id, current_user_id(), data["status"], verdict=data.get("verdict")
    )
    return jsonify(protest.to_dict())


@protests_bp.route("/sweep", methods=["POST"])
@require_api_key
def run_sweep():
    """
    Run one sweep pass now (admins only).

    Returns:
        The sweep report: transitions, notifications sent and errors
    """
    require_admin_caller()
    report = get_services().sweeper.run_once()
    return jsonify(report.to_dict())


@protests_bp.route("/sweep/last", methods=["GET"])
def last_sweep():
    """Report of the most recent sweep run by this process."""
    report = get_services().sweeper.last_report
    if report is None:
        return jsonify({"error": "No sweep has run yet"}), 404
    return jsonify(report.to_dict())


@protests_bp.route("/protests", methods=["GET"])
def list_protests():
    """
    List protests across all events.

    Query params:
        accused_id: Only protests against this driver
        accuser_id: Only protests filed by this driver
    """
    accused = request.args.get("accused_id")
    accuser = request.args.get("accuser_id")
    protests = get_services().store.list_protests()
    if accused:
        protests = [p for p in protests if same_driver(p.accused_id, accused)]
    if accuser:
        protests = [p for p in protests if same_driver(p.accuser_id, accuser)]
    return jsonify({
        "count": len(protests),
        "protests": [protest.to_dict() for protest in protests],
    })
