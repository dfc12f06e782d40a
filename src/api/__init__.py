"""
RaceSteward API Package.

This package contains the modular Flask blueprints for the RaceSteward API.

Blueprints:
- events: Race import, event listing and protest phase
- protests: Filing, voting, overrides and on-demand sweeps
- notifications: In-app notification bell
- users: Member profiles, device tokens and admin roles
- monitoring: Health checks and metrics
"""

import logging

from flask import Flask, jsonify

from api.events import events_bp
from api.monitoring import monitoring_bp
from api.notifications import notifications_bp
from api.protests import protests_bp
from api.state import init_state
from api.users import users_bp
from api.utils import register_error_handlers
from config import Settings
from monitoring import setup_request_logging
from push_gateway import PushGateway
from storage.base import DocumentStore

logger = logging.getLogger(__name__)

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (events_bp, ""),
    (protests_bp, ""),
    (notifications_bp, ""),
    (users_bp, ""),
    (monitoring_bp, ""),
]


def register_blueprints(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def create_app(
    settings: Settings | None = None,
    store: DocumentStore | None = None,
    gateway: PushGateway | None = None,
    start_scheduler: bool = False,
) -> Flask:
    """
    Build the Flask app and its services.

    Args:
        settings: Configuration (defaults to ``Settings.from_env()``)
        store: Storage override, mainly for tests
        gateway: Push gateway override, mainly for tests
        start_scheduler: Start the background sweeper in this process

    Raises:
        ConfigError: If the settings are invalid
    """
    settings = (settings or Settings.from_env()).ensure_valid()
    services = init_state(settings, store=store, gateway=gateway)

    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions["racesteward"] = services

    register_blueprints(app)
    register_error_handlers(app)
    setup_request_logging(app)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Endpoint not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500

    if start_scheduler:
        services.sweeper.start()

    logger.info(
        "RaceSteward app created",
        extra={
            "storage_backend": settings.storage_backend,
            "push_backend": settings.push_backend,
        },
    )
    return app


def run_server(settings: Settings | None = None) -> None:
    """Run the Flask development server with the sweeper in-process."""
    settings = settings or Settings.from_env()
    app = create_app(settings, start_scheduler=True)

    print(f"\n{'='*60}")
    print("RaceSteward API Server")
    print(f"{'='*60}")
    print(f"Listening on: http://{settings.host}:{settings.port}")
    print(f"Storage: {settings.storage_backend}")
    print(f"Push: {settings.push_backend}")
    print(f"Sweep interval: {settings.sweep_interval_seconds}s")
    print(f"{'='*60}\n")

    # The reloader would start a second sweeper
    app.run(host=settings.host, port=settings.port, debug=True, use_reloader=False)
