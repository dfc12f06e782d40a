"""
League member profiles.

A member registers their display name and push device token themselves;
admins promote drivers to admin. Only the super admin may demote an
admin, and nobody can change the super admin's role.
"""

import logging

from display_names import DisplayNameCache
from models import NotFoundError, PermissionDeniedError, Role, User, ValidationError, parse_enum
from permissions import clean_steam_id, is_super_admin, require_admin
from storage.base import DocumentStore

logger = logging.getLogger(__name__)

# Roles that can be granted through the API
ASSIGNABLE_ROLES = (Role.DRIVER, Role.ADMIN)

MAX_DISPLAY_NAME_LENGTH = 80


class UserService:
    """Profile updates and role management."""

    def __init__(
        self,
        store: DocumentStore,
        names: DisplayNameCache | None = None,
        super_admin_id: str | None = None,
    ):
        self.store = store
        self.names = names
        self.super_admin_id = super_admin_id

    def _get(self, user_id: str) -> User | None:
        return self.store.get_user(user_id) or self.store.get_user(clean_steam_id(user_id))

    def _admin(self, actor_id: str) -> User:
        actor = self._get(actor_id)
        if actor is None and is_super_admin(actor_id, self.super_admin_id):
            actor = User(id=clean_steam_id(actor_id), role=Role.SUPER_ADMIN)
        return require_admin(actor, self.super_admin_id)

    def update_profile(
        self,
        user_id: str,
        display_name: str | None = None,
        fcm_token: str | None = None,
    ) -> User:
        """
        Create or update the caller's own profile.

        Only the fields given are changed. An empty ``fcm_token`` unregisters
        the device. New profiles start as drivers.
        """
        key = clean_steam_id(user_id)
        if not key:
            raise ValidationError("user_id is required")

        user = self._get(user_id)
        if user is None:
            user = User(id=key)
            logger.info(f"New member profile: {key}")

        if display_name is not None:
            display_name = display_name.strip()
            if not display_name or len(display_name) > MAX_DISPLAY_NAME_LENGTH:
                raise ValidationError(
                    f"display_name must be 1-{MAX_DISPLAY_NAME_LENGTH} characters"
                )
            user.display_name = display_name
        if fcm_token is not None:
            user.fcm_token = fcm_token.strip() or None

        self.store.save_user(user)
        if self.names is not None:
            self.names.invalidate(user.id)
        return user

    def set_role(self, actor_id: str, target_id: str, role: str | Role) -> User:
        """
        Change a member's role.

        Raises:
            PermissionDeniedError: If the actor is not an admin, or is demoting
                an admin without being the super admin
            NotFoundError: If the target has no profile
            ValidationError: If the role cannot be granted
        """
        actor = self._admin(actor_id)

        role = parse_enum(Role, role, "role")
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(f"Role cannot be assigned: {role.value}")
        if is_super_admin(target_id, self.super_admin_id):
            raise PermissionDeniedError("The super admin's role cannot be changed")

        target = self._get(target_id)
        if target is None:
            raise NotFoundError(f"User not found: {target_id}")

        if target.is_admin and role is Role.DRIVER and not is_super_admin(actor_id, self.super_admin_id):
            raise PermissionDeniedError("Only the super admin can demote an admin")

        if target.role is not role:
            logger.info(f"Role change: {target.id} {target.role.value} -> {role.value} by {actor.id}")
            target.role = role
            self.store.save_user(target)
        return target

    def list_members(self, actor_id: str, role: str | None = None) -> list[User]:
        """All members, optionally of one role (admins only)."""
        self._admin(actor_id)
        roles =(parse_enum(Role, role, "role"),) if role else None
        return sorted(self.store.list_users(roles), key=lambda u: (u.display_name.lower(), u.id))
