"""
Unit tests for role memberships, role permissions and guard queries.
"""

import pytest

from crudguard.auth.models import Principal, RolePermission
from crudguard.auth.permissions import (
    DEFAULT_ROLE_PERMISSIONS,
    Permission,
    Role,
    permission_name,
)
from crudguard.errors import NotFoundError, PermissionDeniedError


def add_principal(db, username="alice"):
    principal = Principal(
        principal_id=0,
        username=username,
        email=f"{username}@example.com",
        password_hash="unused",
    )
    return db.create_principal(principal)


class TestDefaults:
    """Test the default role -> permission seed."""

    def test_seed_matches_table(self, authz, db):
        expected = {
            RolePermission(role.value, permission.value)
            for role, permissions in DEFAULT_ROLE_PERMISSIONS.items()
            for permission in permissions
        }
        assert db.select_all_role_permissions() == expected

    def test_admin_has_everything(self, authz):
        assert authz.permissions_of(Role.ADMIN) == {p.value for p in Permission}

    def test_guest_is_read_only(self, authz):
        assert authz.permissions_of("guest") == {"read:post", "read:comment"}

    def test_seed_is_idempotent(self, authz):
        assert authz.initialize_defaults() == 0


class TestMemberships:
    """Test role assignment."""

    def test_assign_and_query(self, authz, db):
        user_id = add_principal(db)

        authz.assign_role(user_id, Role.USER)

        assert authz.roles_of(user_id) == {"user"}
        assert authz.has_role(user_id, "user")
        assert not authz.has_role(user_id, Role.ADMIN)

    def test_assign_is_idempotent(self, authz, db):
        user_id = add_principal(db)

        authz.assign_role(user_id, "user")
        authz.assign_role(user_id, "user")

        assert authz.roles_of(user_id) == {"user"}

    def test_remove(self, authz, db):
        user_id = add_principal(db)
        authz.assign_role(user_id, "user")

        authz.remove_role(user_id, "user")

        assert authz.roles_of(user_id) == set()

    def test_unknown_principal(self, authz):
        with pytest.raises(NotFoundError):
            authz.assign_role(999, "user")

    def test_free_form_role(self, authz, db):
        user_id = add_principal(db)

        authz.assign_role(user_id, "moderator")

        assert authz.has_role(user_id, "moderator")

    def test_grants_cascade_on_purge(self, authz, db):
        user_id = add_principal(db)
        authz.assign_role(user_id, "user")

        db.purge_principal(user_id)

        assert authz.roles_of(user_id) == set()


class TestPermissions:
    """Test permission checks through roles."""

    def test_permission_through_role(self, authz, db):
        user_id = add_principal(db)
        authz.assign_role(user_id, Role.USER)

        assert authz.has_permission(user_id, Permission.CREATE_POST)
        assert not authz.has_permission(user_id, Permission.READ_USER)

    def test_no_roles_no_permissions(self, authz, db):
        user_id = add_principal(db)

        assert not authz.has_permission(user_id, "read:post")

    def test_grant_and_revoke(self, authz, db):
        user_id = add_principal(db)
        authz.assign_role(user_id, "guest")

        authz.grant_permission("guest", Permission.CREATE_COMMENT)
        assert authz.has_permission(user_id, "create:comment")

        authz.revoke_permission("guest", Permission.CREATE_COMMENT)
        assert not authz.has_permission(user_id, "create:comment")

    def test_unknown_permission(self):
        with pytest.raises(ValueError):
            permission_name("fly:plane")


class TestRequire:
    """Test the raising guard queries."""

    def test_require_permission(self, authz, db):
        user_id = add_principal(db)
        authz.assign_role(user_id, "user")

        authz.require_permission(user_id, Permission.UPDATE_POST)
        with pytest.raises(PermissionDeniedError) as exc:
            authz.require_permission(user_id, Permission.MANAGE_SYSTEM)
        assert exc.value.principal_id == user_id
        assert exc.value.status == 403
        assert exc.value.to_body() == {"error": "Forbidden"}

    def test_require_role(self, authz, db):
        user_id = add_principal(db)

        with pytest.raises(PermissionDeniedError):
            authz.require_role(user_id, Role.ADMIN)

    def test_require_any_role(self, authz, db):
        user_id = add_principal(db)
        authz.assign_role(user_id, "guest")

        authz.require_any_role(user_id, Role.ADMIN, Role.GUEST)
        with pytest.raises(PermissionDeniedError):
            authz.require_any_role(user_id, Role.ADMIN, Role.USER)

    def test_owner_passes(self, authz, db):
        user_id = add_principal(db)

        authz.require_ownership_or_role(user_id, user_id, Role.ADMIN)

    def test_non_owner_needs_role(self, authz, db):
        owner = add_principal(db, "alice")
        other = add_principal(db, "bob")

        with pytest.raises(PermissionDeniedError):
            authz.require_ownership_or_role(other, owner, Role.ADMIN)

        authz.assign_role(other, Role.ADMIN)
        authz.require_ownership_or_role(other, owner, Role.ADMIN)
