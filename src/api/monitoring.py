"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness probe
- /health/ready: Kubernetes readiness probe
"""

import logging
import time

from flask import Blueprint, Response, jsonify

from api.state import get_services
from config import __version__
from models import NON_TERMINAL_STATUSES
from monitoring import metrics
from storage.base import StorageError

logger = logging.getLogger(__name__)

# Create the blueprint
monitoring_bp = Blueprint("monitoring", __name__)

# Track startup time
_startup_time = time.time()


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    """
    Prometheus-compatible metrics endpoint.

    Returns metrics in Prometheus text exposition format.
    """
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    """
    JSON format metrics endpoint.

    Returns all collected metrics as JSON.
    """
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route("/health", methods=["GET"])
def health():
    """
    Basic health check endpoint.

    Returns service status, storage status and the last sweep.
    """
    services = get_services()
    last = services.sweeper.last_report
    return jsonify({
        "status": "healthy",
        "service": "RaceSteward API",
        "version": _get_version(),
        "uptime_seconds": time.time() - _startup_time,
        "checks": {
            "storage": _check_storage(),
            "push": {
                "backend": services.gateway.__class__.__name__,
            },
            "sweeper": {
                "scheduled": services.sweeper.is_running,
                "interval_seconds": services.sweeper.interval_seconds,
                "last_sweep": last.now.isoformat() if last else None,
                "last_errors": len(last.errors) if last else 0,
            },
        },
    })


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the application is running.
    """
    return jsonify({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    """
    Kubernetes readiness probe.

    Returns 200 if storage is reachable, 503 otherwise.
    """
    storage = _check_storage()
    if not storage["available"]:
        return jsonify({
            "status": "not_ready",
            "issues": [f"storage: {storage.get('error', 'not available')}"],
        }), 503
    return jsonify({"status": "ready"})


def _get_version() -> str:
    """Get application version."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("racesteward")
    except PackageNotFoundError:
        return __version__


def _check_storage() -> dict:
    """Check storage backend status."""
    store = get_services().store
    try:
        available = store.is_available()
    except StorageError as e:
        return {"status": "error", "available": False, "error": str(e)}
    return {
        "status": "ok" if available else "degraded",
        "available": available,
        "backend": store.__class__.__name__,
    }


def _update_dynamic_metrics() -> None:
    """Update dynamic gauges before export."""
    store = get_services().store
    try:
        available = store.is_available()
        metrics.set_gauge("storage_available", 1 if available else 0)
        if not available:
            return
        protests = store.list_protests(statuses=NON_TERMINAL_STATUSES)
    except StorageError as e:
        logger.warning(f"Could not refresh protest gauges: {e}")
        metrics.set_gauge("storage_available", 0)
        return

    for status in NON_TERMINAL_STATUSES:
        metrics.set_gauge(
            "protests_open",
            sum(1 for p in protests if p.status is status),
            labels={"status": status.value},
        )
