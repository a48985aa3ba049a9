"""
Role-Based Access Control (RBAC) for crudguard.

This module provides:
- Permission definitions for each domain entity
- Predefined roles and the default role -> permission seed
- AuthorizationStore: role memberships, role grants and guard queries
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Set, Union

from loguru import logger

from ..errors import PermissionDeniedError
from .database import UserDatabase


class Permission(str, Enum):
    """
    Enum of all permissions, as ``<verb>:<object>``.
    """
    # Users
    CREATE_USER = "create:user"
    READ_USER = "read:user"
    UPDATE_USER = "update:user"
    DELETE_USER = "delete:user"

    # Posts
    CREATE_POST = "create:post"
    READ_POST = "read:post"
    UPDATE_POST = "update:post"
    DELETE_POST = "delete:post"

    # Comments
    CREATE_COMMENT = "create:comment"
    READ_COMMENT = "read:comment"
    UPDATE_COMMENT = "update:comment"
    DELETE_COMMENT = "delete:comment"

    # Admin
    MANAGE_SYSTEM = "manage:system"


class Role(str, Enum):
    """
    Predefined roles. Other role names may be granted; these are seeded.
    """
    ADMIN = "admin"     # Full access including system management
    USER = "user"       # CRUD on posts and comments
    GUEST = "guest"     # Read-only posts and comments


POST_AND_COMMENT_CRUD: FrozenSet[Permission] = frozenset({
    Permission.CREATE_POST,
    Permission.READ_POST,
    Permission.UPDATE_POST,
    Permission.DELETE_POST,
    Permission.CREATE_COMMENT,
    Permission.READ_COMMENT,
    Permission.UPDATE_COMMENT,
    Permission.DELETE_COMMENT,
})

# Map each role to its default permissions
DEFAULT_ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.USER: POST_AND_COMMENT_CRUD,
    Role.GUEST: frozenset({Permission.READ_POST, Permission.READ_COMMENT}),
}

RoleLike = Union[Role, str]
PermissionLike = Union[Permission, str]


def role_name(role: RoleLike) -> str:
    """Normalize a role to its stored name."""
    name = role.value if isinstance(role, Role) else str(role).strip()
    if not name:
        raise ValueError("role name must not be empty")
    return name


def permission_name(permission: PermissionLike) -> str:
    """
    Normalize a permission to its stored name.

    Raises:
        ValueError: If the permission is not one of Permission
    """
    return Permission(permission).value


class AuthorizationStore:
    """
    Role memberships and role permissions, backed by UserDatabase.

    Queries are read-only. Writes go straight to the backing store, which
    serializes them; a query observes whatever was committed when it ran.
    """

    def __init__(self, db: UserDatabase):
        """
        Initialize store.

        Args:
            db: Backing user database
        """
        self.db = db

    # Memberships

    def assign_role(self, principal_id: int, role: RoleLike) -> None:
        name = role_name(role)
        if self.db.insert_role_grant(principal_id, name):
            logger.info(f"Role '{name}' assigned to user {principal_id}")

    def remove_role(self, principal_id: int, role: RoleLike) -> None:
        name = role_name(role)
        if self.db.delete_role_grant(principal_id, name):
            logger.info(f"Role '{name}' removed from user {principal_id}")

    def roles_of(self, principal_id: int) -> Set[str]:
        return self.db.select_roles(principal_id)

    def has_role(self, principal_id: int, role: RoleLike) -> bool:
        return self.db.role_grant_exists(principal_id, role_name(role))

    # Role grants

    def grant_permission(self, role: RoleLike, permission: PermissionLike) -> None:
        """Grant a permission to a role. Granting twice is a no-op."""
        name, perm = role_name(role), permission_name(permission)
        if self.db.insert_role_permission(name, perm):
            logger.info(f"Permission '{perm}' granted to role '{name}'")

    def revoke_permission(self, role: RoleLike, permission: PermissionLike) -> None:
        name, perm = role_name(role), permission_name(permission)
        if self.db.delete_role_permission(name, perm):
            logger.info(f"Permission '{perm}' revoked from role '{name}'")

    def permissions_of(self, role: RoleLike) -> Set[str]:
        return self.db.select_permissions(role_name(role))

    def has_permission(self, principal_id: int, permission: PermissionLike) -> bool:
        """
        Check if any role of the principal grants a permission.

        Args:
            principal_id: Principal to check
            permission: Permission to check

        Returns:
            True if some role of the principal grants the permission
        """
        return self.db.principal_has_permission(principal_id, permission_name(permission))

    # Guard queries

    def require_role(self, principal_id: int, role: RoleLike) -> None:
        """
        Require a role, raising PermissionDeniedError if missing.

        Raises:
            PermissionDeniedError: If the principal lacks the role
        """
        if not self.has_role(principal_id, role):
            raise PermissionDeniedError(principal_id, f"role '{role_name(role)}' required")

    def require_any_role(self, principal_id: int, *roles: RoleLike) -> None:
        """
        Require at least one of several roles.

        Raises:
            PermissionDeniedError: If the principal holds none of them
        """
        names = [role_name(role) for role in roles]
        held = self.roles_of(principal_id)
        if not held.intersection(names):
            raise PermissionDeniedError(principal_id, f"one of roles {names} required")

    def require_permission(self, principal_id: int, permission: PermissionLike) -> None:
        """
        Require a permission, raising PermissionDeniedError if not authorized.

        Raises:
            PermissionDeniedError: If no role of the principal grants it
        """
        if not self.has_permission(principal_id, permission):
            raise PermissionDeniedError(
                principal_id, f"permission '{permission_name(permission)}' required"
            )

    def require_ownership_or_role(
        self,
        principal_id: int,
        resource_owner_id: int,
        role: RoleLike,
    ) -> None:
        """
        Allow the resource owner, otherwise fall through to require_role.

        Raises:
            PermissionDeniedError: If not the owner and lacking the role
        """
        if principal_id == resource_owner_id:
            return
        self.require_role(principal_id, role)

    # Seeding

    def initialize_defaults(
        self,
        table: Optional[Dict[RoleLike, Iterable[PermissionLike]]] = None,
    ) -> int:
        """
        Install the default role -> permission seed. Idempotent.

        Args:
            table: Seed to install (default: DEFAULT_ROLE_PERMISSIONS)

        Returns:
            Number of grants that were newly inserted
        """
        table = DEFAULT_ROLE_PERMISSIONS if table is None else table
        added = 0
        for role, permissions in table.items():
            name = role_name(role)
            for permission in sorted(permission_name(p) for p in permissions):
                if self.db.insert_role_permission(name, permission):
                    added += 1

        if added:
            logger.info(f"Seeded {added} default role permissions")
        return added
