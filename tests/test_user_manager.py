"""
Unit tests for registration, login, bearer validation and refresh.
"""

import pytest

from crudguard.errors import (
    AuthInputError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotRefreshableError,
    TokenFailure,
)

from conftest import PASSWORD

DAY = 24 * 3600


def register(users, username="alice"):
    return users.register(username, f"{username}@example.com", PASSWORD, "Alice", "Liddell")


class TestRegister:
    """Test account creation."""

    def test_creates_active_principal(self, users, db):
        principal, token = register(users)

        stored = db.get_principal(principal.principal_id)
        assert stored.username == "alice"
        assert stored.is_active
        assert stored.password_hash != PASSWORD
        assert users.tokens.validate(token).user_id == principal.principal_id

    def test_default_role(self, users, authz):
        principal, _ = register(users)

        assert authz.roles_of(principal.principal_id) == {"user"}

    def test_no_default_role(self, db, hasher, tokens, authz):
        from crudguard.auth.user_manager import UserManager

        manager = UserManager(db, hasher, tokens, authz, default_role=None)
        principal, _ = register(manager)

        assert authz.roles_of(principal.principal_id) == set()

    def test_duplicate_username(self, users):
        register(users)

        with pytest.raises(ConflictError):
            users.register("alice", "other@example.com", PASSWORD)

    def test_duplicate_email(self, users):
        register(users)

        with pytest.raises(ConflictError):
            users.register("other", "alice@example.com", PASSWORD)

    def test_names_reusable_after_deactivation(self, users, db):
        principal, _ = register(users)
        db.deactivate_principal(principal.principal_id)

        again, _ = register(users)

        assert again.principal_id != principal.principal_id

    def test_public_view_has_no_hash(self, users):
        principal, _ = register(users)

        public = principal.to_public()
        assert "password_hash" not in public
        assert public["first_name"] == "Alice"


class TestAuthenticate:
    """Test login."""

    def test_success(self, users):
        registered, _ = register(users)

        principal, token = users.authenticate("alice@example.com", PASSWORD)

        assert principal.principal_id == registered.principal_id
        assert users.validate_bearer(f"Bearer {token}").username == "alice"

    def test_wrong_password(self, users):
        register(users)

        with pytest.raises(InvalidCredentialsError) as exc:
            users.authenticate("alice@example.com", "Wrong123!")
        assert exc.value.to_body() == {"error": "Invalid credentials"}

    def test_unknown_address_same_error(self, users):
        with pytest.raises(InvalidCredentialsError) as exc:
            users.authenticate("nobody@example.com", PASSWORD)
        assert exc.value.to_body() == {"error": "Invalid credentials"}

    def test_deactivated_account(self, users, db):
        principal, _ = register(users)
        db.deactivate_principal(principal.principal_id)

        with pytest.raises(InvalidCredentialsError) as exc:
            users.authenticate("alice@example.com", PASSWORD)
        assert exc.value.to_body() == {"error": "Invalid credentials"}

    @pytest.mark.parametrize("password", [PASSWORD, "Wrong123!"])
    def test_deactivated_account_pays_for_hashing(self, users, db, monkeypatch, password):
        principal, _ = register(users)
        db.deactivate_principal(principal.principal_id)
        checked = []
        original = users.hasher.matches

        def spy(verifier, candidate):
            checked.append(verifier)
            return original(verifier, candidate)

        monkeypatch.setattr(users.hasher, "matches", spy)

        with pytest.raises(InvalidCredentialsError):
            users.authenticate("alice@example.com", password)
        assert checked == [principal.password_hash]


class TestBearer:
    """Test Authorization header handling."""

    def test_missing_header(self, users):
        with pytest.raises(InvalidTokenError) as exc:
            users.validate_bearer(None)
        assert exc.value.reason is TokenFailure.MALFORMED

    def test_wrong_scheme(self, users):
        _, token = register(users)

        with pytest.raises(InvalidTokenError):
            users.validate_bearer(f"Token {token}")

    def test_refresh_needs_header(self, users):
        with pytest.raises(AuthInputError):
            users.refresh(None)

    def test_refresh_window(self, users, clock):
        _, token = register(users)

        with pytest.raises(NotRefreshableError):
            users.refresh(f"Bearer {token}")

        clock.advance(DAY - 600)
        new_token = users.refresh(f"Bearer {token}")

        assert new_token != token
        clock.advance(3600)
        # The old token has expired; the refreshed one is still good
        with pytest.raises(InvalidTokenError):
            users.validate_bearer(f"Bearer {token}")
        assert users.validate_bearer(f"Bearer {new_token}").username == "alice"
