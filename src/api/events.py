"""
Event (race) API endpoints.

Races enter the system through ``/events/import``; their reference
timestamp drives the protest lifecycle of every protest filed on them.
"""

from flask import Blueprint, jsonify, request

from api.state import get_services
from api.utils import (
    bounded_limit,
    json_body,
    require_admin_caller,
    require_api_key,
)
from event_clock import phase_of
from models import NotFoundError, ProtestStatus, parse_enum, utcnow
from race_import import import_race

events_bp = Blueprint("events", __name__)


def _event_or_404(event_id: str):
    event = get_services().store.get_event(event_id)
    if event is None:
        raise NotFoundError(f"Event not found: {event_id}")
    return event


@events_bp.route("/events/import", methods=["POST"])
@require_api_key
def import_event():
    """
    Import a race results file (admins only).

    Request body: the server's results JSON (``TrackName``, ``Date``,
    ``Result``, ``Cars``...)

    Returns:
        The stored event; 409 if the race was already imported
    """
    require_admin_caller()
    data = json_body()
    if data is None:
        return jsonify({"error": "Request body must be a JSON object"}), 400

    event = import_race(get_services().store, data)
    return jsonify(event.to_dict()), 201


@events_bp.route("/events", methods=["GET"])
def list_events():
    """
    List events, newest race first.

    Query params:
        limit: Maximum number of events (default 10, max 100)
    """
    limit = bounded_limit(request.args.get("limit"))
    now = utcnow()
    events = get_services().store.list_events()
    events.sort(
        key=lambda e: e.reference_timestamp or e.created_at,
        reverse=True,
    )
    return jsonify({
        "count": len(events),
        "events": [
            {**event.to_dict(), "phase": phase_of(now, event.reference_timestamp).to_dict()}
            for event in events[:limit]
        ],
    })


@events_bp.route("/events/<event_id>", methods=["GET"])
def get_event(event_id: str):
    """
    Get an event and its current protest phase.

    Returns:
        Event fields plus ``phase`` (name, time remaining, deadlines)
    """
    event = _event_or_404(event_id)
    detail = event.to_dict()
    detail["phase"] = phase_of(utcnow(), event.reference_timestamp).to_dict()
    return jsonify(detail)


@events_bp.route("/events/<event_id>/protests", methods=["GET"])
def list_event_protests(event_id: str):
    """
    List the protests filed on an event.

    Query params:
        status: Only protests with this status
    """
    _event_or_404(event_id)
    status = request.args.get("status")
    statuses = (parse_enum(ProtestStatus, status, "status"),) if status else None
    protests = get_services().store.list_protests(event_id=event_id, statuses=statuses)
    return jsonify({
        "event_id": event_id,
        "count": len(protests),
        "protests": [protest.to_dict() for protest in protests],
    })
