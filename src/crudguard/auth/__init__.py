"""
Authentication module for crudguard.

Provides bcrypt password hashing, HS256 bearer tokens and SQLite-backed RBAC.
"""

from .models import Principal, RoleGrant, RolePermission, TokenClaims
from .database import UserDatabase
from .passwords import PasswordHasher
from .jwt_handler import TokenService, parse_bearer
from .permissions import (
    AuthorizationStore,
    DEFAULT_ROLE_PERMISSIONS,
    Permission,
    Role,
)
from .user_manager import UserManager

__all__ = [
    # Models and database
    "Principal",
    "RoleGrant",
    "RolePermission",
    "TokenClaims",
    "UserDatabase",
    # Credentials and tokens
    "PasswordHasher",
    "TokenService",
    "parse_bearer",
    "UserManager",
    # RBAC
    "AuthorizationStore",
    "DEFAULT_ROLE_PERMISSIONS",
    "Permission",
    "Role",
]
