"""
Unit tests for the guard pipeline, driven with mocked aiohttp requests.
"""

import asyncio
import time
from datetime import timedelta

import pytest
from aiohttp.test_utils import make_mocked_request

from crudguard.auth.permissions import Permission, Role
from crudguard.errors import (
    InternalError,
    InvalidTokenError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    UnauthenticatedError,
)
from crudguard.middleware.guard import (
    IDENTITY_KEY,
    RATE_LIMIT_KEY,
    Guard,
    IdentityMode,
    RequireAnyRole,
    RequireOwnershipOrRole,
    RequirePermission,
    RequireRole,
    current_identity,
)
from crudguard.middleware.rate_limit import RateLimiter

from conftest import PASSWORD


@pytest.fixture
def guard(users, authz):
    return Guard(users, authz, timeout=1.0)


@pytest.fixture
def alice(users):
    principal, token = users.register("alice", "alice@example.com", PASSWORD)
    return principal, token


def request_with(token=None, header=None):
    headers = {}
    if token is not None:
        headers["Authorization"] = f"Bearer {token}"
    elif header is not None:
        headers["Authorization"] = header
    return make_mocked_request("GET", "/", headers=headers)


def fixed_owner(owner_id):
    async def lookup(request):
        return owner_id
    return lookup


class TestIdentify:
    """Test stage 1."""

    def test_required_attaches_identity(self, guard, alice):
        principal, token = alice
        request = request_with(token)

        identity = guard.identify(request, IdentityMode.REQUIRED)

        assert identity.principal_id == principal.principal_id
        assert request[IDENTITY_KEY] is identity
        assert current_identity(request).username == "alice"

    def test_required_without_header(self, guard):
        with pytest.raises(InvalidTokenError):
            guard.identify(request_with(), IdentityMode.REQUIRED)

    def test_required_wrong_scheme(self, guard):
        with pytest.raises(UnauthenticatedError):
            guard.identify(request_with(header="Basic dXNlcjpwYXNz"), IdentityMode.REQUIRED)

    def test_optional_tolerates_bad_token(self, guard):
        request = request_with("garbage")

        assert guard.identify(request, IdentityMode.OPTIONAL) is None
        assert request[IDENTITY_KEY] is None

    def test_optional_with_good_token(self, guard, alice):
        _, token = alice

        assert guard.identify(request_with(token), IdentityMode.OPTIONAL) is not None

    def test_none_ignores_header(self, guard, alice):
        _, token = alice

        assert guard.identify(request_with(token), IdentityMode.NONE) is None

    def test_current_identity_without_one(self):
        with pytest.raises(UnauthenticatedError):
            current_identity(request_with())


class TestAuthorize:
    """Test stage 2."""

    @pytest.mark.asyncio
    async def test_permission_granted(self, guard, alice):
        principal, _ = alice

        await guard.authorize(principal.principal_id, RequirePermission(Permission.CREATE_POST))

    @pytest.mark.asyncio
    async def test_permission_denied(self, guard, alice):
        principal, _ = alice

        with pytest.raises(PermissionDeniedError):
            await guard.authorize(principal.principal_id, RequirePermission(Permission.READ_USER))

    @pytest.mark.asyncio
    async def test_roles(self, guard, alice):
        principal, _ = alice

        await guard.authorize(principal.principal_id, RequireRole(Role.USER))
        await guard.authorize(principal.principal_id, RequireAnyRole((Role.ADMIN, Role.USER)))
        with pytest.raises(PermissionDeniedError):
            await guard.authorize(principal.principal_id, RequireRole(Role.ADMIN))

    @pytest.mark.asyncio
    async def test_timeout_is_internal_error(self, users):
        class SlowStore:
            def require_permission(self, principal_id, permission):
                time.sleep(0.5)

        guard = Guard(users, SlowStore(), timeout=0.05)

        with pytest.raises(InternalError):
            await guard.authorize(1, RequirePermission(Permission.READ_POST))


class TestRun:
    """Test the composed pipeline."""

    @pytest.mark.asyncio
    async def test_anonymous_with_requirement(self, guard):
        request = request_with()

        with pytest.raises(UnauthenticatedError):
            await guard.run(request, IdentityMode.OPTIONAL, RequireRole(Role.ADMIN))

    @pytest.mark.asyncio
    async def test_owner_lookup(self, guard, alice, users):
        principal, token = alice
        bob, _ = users.register("bob", "bob@example.com", PASSWORD)

        await guard.run(request_with(token), requirement=RequireOwnershipOrRole(fixed_owner(principal.principal_id)))
        with pytest.raises(PermissionDeniedError):
            await guard.run(request_with(token), requirement=RequireOwnershipOrRole(fixed_owner(bob.principal_id)))

    @pytest.mark.asyncio
    async def test_rate_limit_after_authorization(self, guard, alice, clock):
        principal, token = alice
        limiter = RateLimiter(1, timedelta(minutes=1), clock=clock)

        # A denied request is never metered
        with pytest.raises(PermissionDeniedError):
            await guard.run(request_with(token), requirement=RequireRole(Role.ADMIN), limiter=limiter)
        assert limiter.remaining(f"user:{principal.principal_id}") == 1

        request = request_with(token)
        await guard.run(request, limiter=limiter)
        assert request[RATE_LIMIT_KEY].remaining == 0

        with pytest.raises(RateLimitedError) as exc:
            await guard.run(request_with(token), limiter=limiter)
        assert exc.value.retry_after == 60
        assert exc.value.status == 429

    @pytest.mark.asyncio
    async def test_anonymous_keyed_by_address(self, guard, clock):
        limiter = RateLimiter(1, timedelta(minutes=1), clock=clock)

        await guard.run(request_with(), IdentityMode.NONE, limiter=limiter)

        assert limiter.tracked_keys() == 1

    @pytest.mark.asyncio
    async def test_slow_owner_lookup_is_internal_error(self, users, authz, alice):
        _, token = alice

        async def slow_owner(request):
            await asyncio.sleep(1)
            return 1

        guard = Guard(users, authz, timeout=0.05)

        with pytest.raises(InternalError):
            await guard.run(request_with(token), requirement=RequireOwnershipOrRole(slow_owner))

    @pytest.mark.asyncio
    async def test_missing_resource_propagates(self, guard, alice):
        _, token = alice

        async def missing(request):
            raise NotFoundError("post 7 not found", "Post not found")

        with pytest.raises(NotFoundError):
            await guard.run(request_with(token), requirement=RequireOwnershipOrRole(missing))

    def test_protect_rejects_unknown_requirement(self, guard):
        with pytest.raises(TypeError):
            guard.protect(requirement="admin")
