"""
Shared utilities for the RaceSteward API.

Common decorators, payload validation and error mapping used across
all blueprints.
"""

import logging
import secrets
from functools import wraps
from typing import Any

from flask import Flask, jsonify, request

from models import NotFoundError, PermissionDeniedError, User, ValidationError
from permissions import require_admin
from protests import DuplicateVoteError, WindowClosedError
from race_import import DuplicateEventError
from storage.base import StorageError

from api import state

logger = logging.getLogger(__name__)

# Bounded parameters
MAX_RESULTS = 100
DEFAULT_PAGE_LIMIT = 10

USER_HEADER = "X-User-Id"


# ============================================================
# Validation Utilities
# ============================================================

def bounded_limit(value: Any, default: int = DEFAULT_PAGE_LIMIT, max_limit: int = MAX_RESULTS) -> int:
    """Parse a ``limit`` query parameter into 1..max_limit."""
    try:
        limit = int(value) if value is not None else default
    except (TypeError, ValueError):
        limit = default
    return max(1, min(limit, max_limit))


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple[type, ...]],
    optional_fields: dict[str, type | tuple[type, ...]] | None = None,
    max_lengths: dict[str, int] | None = None,
) -> tuple[bool, str | None]:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    def type_name(expected) -> str:
        if isinstance(expected, tuple):
            return " or ".join(t.__name__ for t in expected)
        return expected.__name__

    for field_name, expected_type in required_fields.items():
        if field_name not in data:
            return False, f"Missing required field: {field_name}"
        if not isinstance(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {type_name(expected_type)}"

    for field_name, expected_type in (optional_fields or {}).items():
        value = data.get(field_name)
        if value is not None and not isinstance(value, expected_type):
            return False, f"Field '{field_name}' must be of type {type_name(expected_type)}"

    for field_name, max_len in (max_lengths or {}).items():
        value = data.get(field_name)
        if isinstance(value, str) and len(value) > max_len:
            return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def json_body() -> dict[str, Any] | None:
    """The request's JSON object, or None when absent or malformed."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


# ============================================================
# Identity and Authentication
# ============================================================

def current_user_id() -> str | None:
    """Caller identity, set by the auth proxy in ``X-User-Id``."""
    user_id = request.headers.get(USER_HEADER, "").strip()
    return user_id or None


def require_admin_caller() -> User:
    """
    The calling admin.

    Raises:
        PermissionDeniedError: If the caller is unknown or not an admin
    """
    services = state.get_services()
    user_id = current_user_id()
    user = services.protests.resolve_user(user_id) if user_id else None
    return require_admin(user, services.settings.super_admin_id)


def require_user(f):
    """Decorator rejecting requests without a caller identity."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_user_id() is None:
            return jsonify({
                "error": "User identity required",
                "hint": f"Provide the caller's id in the {USER_HEADER} header",
            }), 401
        return f(*args, **kwargs)
    return decorated_function


def require_api_key(f):
    """Decorator to require API key authentication when enabled."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        settings = state.get_services().settings
        if not settings.require_auth:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")
        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header",
            }), 401

        if not settings.api_key:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set RACESTEWARD_API_KEY environment variable",
            }), 503

        if not secrets.compare_digest(provided_key, settings.api_key):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function


# ============================================================
# Error Mapping
# ============================================================

def register_error_handlers(app: Flask) -> None:
    """Map domain exceptions to JSON error responses."""

    @app.errorhandler(DuplicateVoteError)
    @app.errorhandler(DuplicateEventError)
    @app.errorhandler(WindowClosedError)
    def conflict(error):
        return jsonify({"error": str(error)}), 409

    @app.errorhandler(ValidationError)
    def bad_request(error):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(NotFoundError)
    def not_found(error):
        return jsonify({"error": str(error)}), 404

    @app.errorhandler(PermissionDeniedError)
    def forbidden(error):
        return jsonify({"error": str(error)}), 403

    @app.errorhandler(StorageError)
    def storage_unavailable(error):
        logger.error(f"Storage error: {error}", exc_info=error)
        return jsonify({"error": "Storage temporarily unavailable"}), 503
