"""
User authentication manager.

Combines the user database, password hasher, token service and
authorization store into the authenticate / register / validate / refresh
flows.
"""

import secrets
from typing import Optional, Tuple

from loguru import logger

from ..errors import (
    AuthInputError,
    InvalidCredentialsError,
    InvalidTokenError,
    PasswordMismatchError,
    TokenFailure,
)
from ..log import log_auth_event
from .database import UserDatabase
from .jwt_handler import TokenService, parse_bearer
from .models import Principal, TokenClaims
from .passwords import PasswordHasher
from .permissions import AuthorizationStore


class UserManager:
    """
    User authentication manager.

    Provides:
    - Login with contact address and secret
    - Registration
    - Bearer header validation and sliding refresh
    """

    def __init__(
        self,
        db: UserDatabase,
        hasher: PasswordHasher,
        tokens: TokenService,
        authz: AuthorizationStore,
        default_role: Optional[str] = "user",
    ):
        """
        Initialize manager.

        Args:
            db: User database
            hasher: Password hasher
            tokens: Token service
            authz: Authorization store
            default_role: Role granted on registration (None grants nothing)
        """
        self.db = db
        self.hasher = hasher
        self.tokens = tokens
        self.authz = authz
        self.default_role = default_role
        # Checked against when the contact address is unknown, so a miss costs
        # the same bcrypt work as a wrong password
        self._dummy_verifier = hasher.hash(secrets.token_urlsafe(16))

    def authenticate(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
    ) -> Tuple[Principal, str]:
        """
        Authenticate a principal and mint a token.

        Args:
            email: Contact address
            password: Plain text secret
            ip: Client address, for the audit log

        Returns:
            (principal, token)

        Raises:
            InvalidCredentialsError: Unknown address, inactive account or
                wrong secret (indistinguishable to the caller)
        """
        principal = self.db.find_principal_by_contact(email)
        if principal is None:
            self.hasher.matches(self._dummy_verifier, password)
            log_auth_event("login", None, None, False, ip)
            logger.warning("Login failed: unknown contact address")
            raise InvalidCredentialsError("unknown contact address")

        if not principal.is_active:
            # Same bcrypt work as an active account, whatever the secret
            self.hasher.matches(principal.password_hash, password)
            log_auth_event("login", principal.username, principal.principal_id, False, ip)
            logger.warning(f"Login failed: account is deactivated ({principal.principal_id})")
            raise InvalidCredentialsError("Account is deactivated")

        try:
            self.hasher.verify(principal.password_hash, password)
        except PasswordMismatchError:
            log_auth_event("login", principal.username, principal.principal_id, False, ip)
            logger.warning(f"Login failed: invalid password for user {principal.principal_id}")
            raise

        token = self.tokens.mint(principal)
        log_auth_event("login", principal.username, principal.principal_id, True, ip)
        return principal, token

    def register(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        ip: Optional[str] = None,
    ) -> Tuple[Principal, str]:
        """
        Create an active principal and mint its first token.

        Args:
            username: Unique display name
            email: Unique contact address
            password: Plain text secret (hashed before storage)
            first_name: Optional given name
            last_name: Optional family name
            ip: Client address, for the audit log

        Returns:
            (principal, token)

        Raises:
            ConflictError: If the username or email is taken
            HashFailedError: If hashing fails
        """
        principal = Principal(
            principal_id=0,
            username=username,
            email=email,
            password_hash=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            is_active=True,
        )
        self.db.create_principal(principal)

        if self.default_role:
            self.authz.assign_role(principal.principal_id, self.default_role)

        token = self.tokens.mint(principal)
        log_auth_event("register", principal.username, principal.principal_id, True, ip)
        return principal, token

    def validate_bearer(self, header_value: Optional[str]) -> TokenClaims:
        """
        Validate an ``Authorization`` header value.

        Args:
            header_value: Raw header value, possibly None

        Returns:
            TokenClaims of the bearer token

        Raises:
            InvalidTokenError: Missing header, wrong scheme or bad token
        """
        token = parse_bearer(header_value)
        if token is None:
            raise InvalidTokenError(
                TokenFailure.MALFORMED,
                "missing authorization header" if not header_value
                else "invalid authorization header format",
            )
        return self.tokens.validate(token)

    def refresh(self, header_value: Optional[str], ip: Optional[str] = None) -> str:
        """
        Refresh the bearer token from an ``Authorization`` header.

        Raises:
            AuthInputError: If no bearer token was supplied
            InvalidTokenError: If the token does not validate
            NotRefreshableError: If the token is not yet close to expiry
        """
        token = parse_bearer(header_value)
        if token is None:
            raise AuthInputError("refresh without bearer token", "Authorization header required")

        new_token = self.tokens.refresh(token)
        claims = self.tokens.validate(new_token)
        log_auth_event("refresh", claims.username, claims.user_id, True, ip)
        return new_token
