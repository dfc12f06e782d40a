"""
Race result import.

Parses the results JSON written by an Assetto Corsa server and stores
it as an Event. Drivers come from ``Result`` (final classification) and
``Cars`` (entry list); when both name a driver, ``Result`` wins since
it carries the name used at the end of the race.
"""

import json
import logging
from typing import Any

from event_clock import parse_reference_timestamp
from models import Driver, Event, ValidationError, new_id, utcnow
from storage.base import DocumentStore

logger = logging.getLogger(__name__)

UNKNOWN_TRACK = "Unknown track"


class DuplicateEventError(ValidationError):
    """Raised when the same race (track and time) is imported twice."""
    pass


def parse_race_json(data: dict[str, Any] | str | bytes) -> Event:
    """
    Build an Event from a race results document.

    Args:
        data: Parsed JSON object, or its raw text

    Raises:
        ValidationError: If the document is not a JSON object or has no
            usable race time
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Race file is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Race file must contain a JSON object")

    drivers: dict[str, Driver] = {}
    for entry in data.get("Result") or []:
        if not isinstance(entry, dict):
            continue
        guid, name = entry.get("DriverGuid"), entry.get("DriverName")
        if guid and name:
            drivers[str(guid)] = Driver(name=str(name), steam_id=str(guid))

    for car in data.get("Cars") or []:
        driver = car.get("Driver") if isinstance(car, dict) else None
        if not isinstance(driver, dict) or not driver.get("Guid"):
            continue
        guid = str(driver["Guid"])
        if guid not in drivers:
            drivers[guid] = Driver(name=str(driver.get("Name") or ""), steam_id=guid)

    raw_date = data.get("Date")
    reference = parse_reference_timestamp(raw_date) if raw_date else utcnow()
    if reference is None:
        raise ValidationError(f"Invalid race date: {raw_date!r}")

    return Event(
        id=new_id(),
        reference_timestamp=reference,
        track_name=str(data.get("TrackName") or UNKNOWN_TRACK),
        event_name=str(data.get("EventName") or ""),
        server_name=str(data.get("ServerName") or ""),
        session_type=str(data.get("Type") or "RACE"),
        drivers=list(drivers.values()),
    )


def import_race(store: DocumentStore, data: dict[str, Any] | str | bytes) -> Event:
    """
    Parse and store a race.

    Raises:
        DuplicateEventError: If a race on the same track at the same time exists
    """
    event = parse_race_json(data)
    existing = store.find_event(event.track_name, event.reference_timestamp)
    if existing is not None:
        raise DuplicateEventError(
            f"Race at {event.track_name} on {event.reference_timestamp.isoformat()} "
            f"was already imported ({existing.id})"
        )

    store.save_event(event)
    logger.info(
        f"Imported race {event.id} at {event.track_name}",
        extra={"drivers": len(event.drivers), "session_type": event.session_type},
    )
    return event
