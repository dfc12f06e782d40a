"""
Role checks.

User ids are Steam ids, stored either bare ("7656...") or with a
``steam:`` prefix depending on where they came from. Comparisons always
use the bare form.
"""

from models import PermissionDeniedError, User

STEAM_PREFIX = "steam:"


def clean_steam_id(user_id: str | None) -> str:
    """Strip the ``steam:`` prefix, if any."""
    if not user_id:
        return ""
    user_id = user_id.strip()
    if user_id.startswith(STEAM_PREFIX):
        return user_id[len(STEAM_PREFIX):]
    return user_id


def same_driver(a: str | None, b: str | None) -> bool:
    """True if two ids refer to the same Steam account."""
    return bool(a) and clean_steam_id(a) == clean_steam_id(b)


def is_super_admin(user_id: str | None, super_admin_id: str | None) -> bool:
    if not user_id or not super_admin_id:
        return False
    return clean_steam_id(user_id) == clean_steam_id(super_admin_id)


def is_admin(user: User | None, super_admin_id: str | None = None) -> bool:
    """Admins and super-admins may vote and override."""
    if user is None:
        return False
    return is_super_admin(user.id, super_admin_id) or user.is_admin


def require_admin(user: User | None, super_admin_id: str | None = None) -> User:
    """
    Return the user if they are an admin.

    Raises:
        PermissionDeniedError: If the user is missing or not an admin
    """
    if not is_admin(user, super_admin_id):
        raise PermissionDeniedError("Admin role required")
    return user
