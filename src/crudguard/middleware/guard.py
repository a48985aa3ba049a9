"""
Per-request guard pipeline.

Stages run in order and stop at the first failure:

    identity extraction -> authorization -> rate limiting -> dispatch

Routes declare what they need with ``Guard.protect``; failures are raised
as GuardError subclasses and rendered by the error middleware.
"""

import asyncio
import functools
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from aiohttp import web
from loguru import logger

from ..auth.models import TokenClaims
from ..auth.permissions import AuthorizationStore, PermissionLike, RoleLike, permission_name, role_name
from ..auth.user_manager import UserManager
from ..errors import InternalError, RateLimitedError, UnauthenticatedError
from .rate_limit import RateLimitDecision, RateLimiter

IDENTITY_KEY = "identity"
RATE_LIMIT_KEY = "rate_limit"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
OwnerLookup = Callable[[web.Request], Awaitable[int]]


@dataclass(frozen=True)
class RequestIdentity:
    """
    Principal attached to a request after a bearer token validated.

    Attributes:
        principal_id: Principal id from the token
        username: Display name from the token
        email: Contact address from the token
    """
    principal_id: int
    username: str
    email: str

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "RequestIdentity":
        return cls(principal_id=claims.user_id, username=claims.username, email=claims.email)

    @property
    def rate_limit_key(self) -> str:
        return f"user:{self.principal_id}"


class IdentityMode(str, Enum):
    REQUIRED = "required"   # 401 unless a valid bearer token is present
    OPTIONAL = "optional"   # attach identity when valid, else continue anonymous
    NONE = "none"           # do not look at the Authorization header


# ============================================================================
# Authorization requirements
# ============================================================================

@dataclass(frozen=True)
class RequirePermission:
    permission: PermissionLike

    def check(self, authz: AuthorizationStore, principal_id: int, owner_id: Optional[int]) -> None:
        authz.require_permission(principal_id, self.permission)

    def describe(self) -> str:
        return f"permission {permission_name(self.permission)}"


@dataclass(frozen=True)
class RequireRole:
    role: RoleLike

    def check(self, authz: AuthorizationStore, principal_id: int, owner_id: Optional[int]) -> None:
        authz.require_role(principal_id, self.role)

    def describe(self) -> str:
        return f"role {role_name(self.role)}"


@dataclass(frozen=True)
class RequireAnyRole:
    roles: Tuple[RoleLike, ...]

    def check(self, authz: AuthorizationStore, principal_id: int, owner_id: Optional[int]) -> None:
        authz.require_any_role(principal_id, *self.roles)

    def describe(self) -> str:
        return f"any of roles {[role_name(r) for r in self.roles]}"


@dataclass(frozen=True)
class RequireOwnershipOrRole:
    """
    Owner of the resource, or holder of ``role``.

    Attributes:
        owner: Async lookup of the resource owner's principal id
        role: Role that overrides ownership
    """
    owner: OwnerLookup
    role: RoleLike = "admin"

    def check(self, authz: AuthorizationStore, principal_id: int, owner_id: Optional[int]) -> None:
        authz.require_ownership_or_role(principal_id, owner_id, self.role)

    def describe(self) -> str:
        return f"ownership or role {role_name(self.role)}"


REQUIREMENT_TYPES = (RequirePermission, RequireRole, RequireAnyRole, RequireOwnershipOrRole)


# ============================================================================
# Pipeline
# ============================================================================

class Guard:
    """
    Composes token validation, authorization and rate limiting in front of
    aiohttp handlers.
    """

    def __init__(self, users: UserManager, authz: AuthorizationStore, timeout: float = 5.0):
        """
        Initialize guard.

        Args:
            users: UserManager for bearer validation
            authz: AuthorizationStore for requirement checks
            timeout: Deadline in seconds for authorization storage reads
        """
        self.users = users
        self.authz = authz
        self.timeout = timeout

    def identify(self, request: web.Request, mode: IdentityMode) -> Optional[RequestIdentity]:
        """
        Stage 1: validate the bearer token and attach the identity.

        Raises:
            InvalidTokenError: In REQUIRED mode when the header is missing,
                uses another scheme, or carries a bad token
        """
        request[IDENTITY_KEY] = None
        if mode is IdentityMode.NONE:
            return None

        header = request.headers.get("Authorization")
        if mode is IdentityMode.OPTIONAL:
            if not header:
                return None
            try:
                claims = self.users.validate_bearer(header)
            except UnauthenticatedError as e:
                logger.debug(f"Optional auth ignored: {e.detail}")
                return None
        else:
            claims = self.users.validate_bearer(header)

        identity = RequestIdentity.from_claims(claims)
        request[IDENTITY_KEY] = identity
        return identity

    async def authorize(self, principal_id: int, requirement, owner_id: Optional[int] = None) -> None:
        """
        Stage 2: check a requirement against the principal.

        The storage read runs on a worker thread under the guard deadline; a
        timeout is an internal error, never a grant.

        Raises:
            PermissionDeniedError: If the requirement is not met
            InternalError: If the check does not finish within the deadline
        """
        try:
            await asyncio.wait_for(
                asyncio.to_thread(requirement.check, self.authz, principal_id, owner_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise InternalError(
                f"authorization check timed out after {self.timeout}s ({requirement.describe()})"
            ) from None

    async def lookup_owner(self, request: web.Request, requirement: RequireOwnershipOrRole) -> int:
        """
        Resolve the owner of the addressed resource under the guard deadline.

        Raises:
            NotFoundError: If the lookup finds no resource
            InternalError: If the lookup does not finish within the deadline
        """
        try:
            return await asyncio.wait_for(requirement.owner(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise InternalError(
                f"owner lookup timed out after {self.timeout}s ({requirement.describe()})"
            ) from None

    def meter(self, request: web.Request, limiter: RateLimiter) -> RateLimitDecision:
        """
        Stage 3: consult the limiter for this request's identity key.

        Raises:
            RateLimitedError: If the key is over its limit
        """
        identity = request.get(IDENTITY_KEY)
        key = identity.rate_limit_key if identity else client_address(request)
        decision = limiter.meter(key)
        request[RATE_LIMIT_KEY] = decision
        if not decision.allowed:
            raise RateLimitedError(key, decision.retry_after)
        return decision

    async def run(
        self,
        request: web.Request,
        identity: IdentityMode = IdentityMode.REQUIRED,
        requirement=None,
        limiter: Optional[RateLimiter] = None,
    ) -> Optional[RequestIdentity]:
        """Run stages 1-3 for a request; returns the attached identity."""
        attached = self.identify(request, identity)

        if requirement is not None:
            if attached is None:
                raise UnauthenticatedError(
                    f"anonymous request needs {requirement.describe()}",
                    "Authorization header required",
                )
            owner_id = None
            if isinstance(requirement, RequireOwnershipOrRole):
                owner_id = await self.lookup_owner(request, requirement)
            await self.authorize(attached.principal_id, requirement, owner_id)

        if limiter is not None:
            self.meter(request, limiter)

        return attached

    def protect(
        self,
        identity: IdentityMode = IdentityMode.REQUIRED,
        requirement=None,
        limiter: Optional[RateLimiter] = None,
    ) -> Callable[[Handler], Handler]:
        """
        Decorate an aiohttp handler with the guard pipeline.

        Args:
            identity: How to treat the Authorization header
            requirement: One of the Require* requirements, or None
            limiter: Rate limiter for this route, or None

        Returns:
            Decorator for ``async def handler(request)``
        """
        if requirement is not None and not isinstance(requirement, REQUIREMENT_TYPES):
            raise TypeError(f"unsupported requirement: {requirement!r}")

        def decorator(handler: Handler) -> Handler:
            @functools.wraps(handler)
            async def guarded(request: web.Request) -> web.StreamResponse:
                await self.run(request, identity, requirement, limiter)
                return await handler(request)

            return guarded

        return decorator


def client_address(request: web.Request) -> str:
    """Network address used as the rate-limit key for anonymous requests."""
    return request.remote or "unknown"


def current_identity(request: web.Request) -> RequestIdentity:
    """
    Identity attached by a REQUIRED guard.

    Raises:
        UnauthenticatedError: If the handler is reached without one
    """
    identity = request.get(IDENTITY_KEY)
    if identity is None:
        raise UnauthenticatedError("handler reached without identity")
    return identity


async def emit_rate_limit_headers(request: web.Request, response: web.StreamResponse) -> None:
    """on_response_prepare hook: X-RateLimit-* on every metered response."""
    decision: Optional[RateLimitDecision] = request.get(RATE_LIMIT_KEY)
    if decision is not None:
        response.headers.update(decision.headers())


__all__ = [
    "Guard",
    "IdentityMode",
    "RequestIdentity",
    "RequireAnyRole",
    "RequireOwnershipOrRole",
    "RequirePermission",
    "RequireRole",
    "client_address",
    "current_identity",
    "emit_rate_limit_headers",
]
