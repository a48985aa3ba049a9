"""
Shared fixtures: a temporary database, a cheap hasher and a controllable clock.
"""

import pytest

from crudguard.auth.database import UserDatabase
from crudguard.auth.jwt_handler import TokenService
from crudguard.auth.passwords import PasswordHasher
from crudguard.auth.permissions import AuthorizationStore
from crudguard.auth.user_manager import UserManager
from crudguard.config import Settings

SECRET = "test-signing-secret-0123456789abcdef-0123456789abcdef-0123456789"
PASSWORD = "Secret123!"
START = 1_700_000_000


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: int = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    return UserDatabase(tmp_path / "test.db")


@pytest.fixture
def hasher():
    # Minimum bcrypt cost keeps the suite fast
    return PasswordHasher(rounds=4)


@pytest.fixture
def tokens(clock):
    return TokenService(SECRET, clock=clock)


@pytest.fixture
def authz(db):
    store = AuthorizationStore(db)
    store.initialize_defaults()
    return store


@pytest.fixture
def users(db, hasher, tokens, authz):
    return UserManager(db, hasher, tokens, authz)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        secret_key=SECRET,
        db_path=tmp_path / "api.db",
        bcrypt_rounds=4,
        auth_limit=50,
        strict_limit=50,
    )
