"""
Authentication data models.

Data classes for principals, role grants, role permissions and token claims.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class Principal:
    """
    User account.

    Attributes:
        principal_id: Unique numeric identifier (0 until persisted)
        username: Display name, unique among active principals
        email: Contact address, unique among active principals
        password_hash: bcrypt verifier
        first_name: Optional given name
        last_name: Optional family name
        is_active: False once the account is deactivated
        created_at: Account creation timestamp
        updated_at: Last profile change
    """
    principal_id: int
    username: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_public(self) -> Dict[str, Any]:
        """Representation safe to return to a client (no password hash)."""
        return {
            "id": self.principal_id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class RoleGrant:
    """A (principal, role) membership."""
    principal_id: int
    role: str


@dataclass(frozen=True)
class RolePermission:
    """A (role, permission) grant; the set of these is unique."""
    role: str
    permission: str


@dataclass(frozen=True)
class TokenClaims:
    """
    Decoded bearer token payload.

    Attributes:
        user_id: Principal id
        username: Principal display name
        email: Principal contact address
        issued_at: iat claim
        not_before: nbf claim
        expires_at: exp claim
    """
    user_id: int
    username: str
    email: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
