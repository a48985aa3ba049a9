"""
JWT token generation and validation.

Mints, validates and refreshes HS256 bearer tokens carrying a principal
identity. The wire payload keys are ``user_id``, ``username``, ``email``,
``iat``, ``nbf`` and ``exp``.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt
from loguru import logger

from ..errors import InvalidTokenError, NotRefreshableError, SignFailedError, TokenFailure
from .models import Principal, TokenClaims

ALGORITHM = "HS256"
# Header algorithms the validator will consider at all (HMAC-SHA family only)
ACCEPTED_ALGORITHMS = ("HS256", "HS384", "HS512")
ACCESS_TOKEN_LIFETIME = timedelta(hours=24)
REFRESH_WINDOW = timedelta(hours=1)
REQUIRED_CLAIMS = ("user_id", "username", "email", "iat", "nbf", "exp")


class TokenService:
    """
    Bearer token handler.

    Owns a single symmetric signing secret for its lifetime. Stateless
    otherwise, so one instance is shared by every request.
    """

    def __init__(
        self,
        secret_key: str,
        lifetime: timedelta = ACCESS_TOKEN_LIFETIME,
        refresh_window: timedelta = REFRESH_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize handler.

        Args:
            secret_key: Secret key for signing tokens
            lifetime: Validity window of minted tokens
            refresh_window: Maximum remaining lifetime at which refresh is allowed
            clock: Wall-clock source in epoch seconds
        """
        if not secret_key:
            raise ValueError("secret_key must not be empty")

        self._secret_key = secret_key
        self.lifetime = lifetime
        self.refresh_window = refresh_window
        self._clock = clock

    def mint(self, principal: Principal) -> str:
        """
        Create a signed token for a principal.

        Args:
            principal: Authenticated principal

        Returns:
            Compact JWT string

        Raises:
            SignFailedError: If signing fails
        """
        return self._encode(principal.principal_id, principal.username, principal.email)

    def validate(self, token: str) -> TokenClaims:
        """
        Verify and decode a token.

        Args:
            token: Compact JWT string

        Returns:
            Decoded TokenClaims

        Raises:
            InvalidTokenError: With reason MALFORMED, WRONG_ALGORITHM,
                BAD_SIGNATURE, NOT_YET_VALID or EXPIRED
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise InvalidTokenError(TokenFailure.MALFORMED, f"undecodable header: {e}") from None

        algorithm = header.get("alg")
        if algorithm not in ACCEPTED_ALGORITHMS:
            raise InvalidTokenError(
                TokenFailure.WRONG_ALGORITHM, f"unexpected signing method: {algorithm!r}"
            )

        try:
            # Time claims are checked below against our own clock
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=list(ACCEPTED_ALGORITHMS),
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "require": list(REQUIRED_CLAIMS),
                },
            )
        except jwt.InvalidSignatureError:
            raise InvalidTokenError(TokenFailure.BAD_SIGNATURE) from None
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(TokenFailure.MALFORMED, f"invalid token: {e}") from None

        claims = self._claims_from_payload(payload)
        now = self._now()
        if now < claims.not_before:
            raise InvalidTokenError(TokenFailure.NOT_YET_VALID)
        if now > claims.expires_at:
            raise InvalidTokenError(TokenFailure.EXPIRED)

        return claims

    def refresh(self, token: str) -> str:
        """
        Issue a fresh token for a token that is close to expiry.

        Args:
            token: Currently valid token

        Returns:
            New token with a full lifetime and the same principal claims

        Raises:
            InvalidTokenError: If the token does not validate
            NotRefreshableError: If more than refresh_window remains
        """
        claims = self.validate(token)
        remaining = claims.expires_at - self._now()
        if remaining > self.refresh_window:
            raise NotRefreshableError(
                f"token for user {claims.user_id} has {int(remaining.total_seconds())}s remaining"
            )

        new_token = self._encode(claims.user_id, claims.username, claims.email)
        logger.debug(f"Token refreshed for user {claims.username}")
        return new_token

    def _encode(self, user_id: int, username: str, email: str) -> str:
        # iat, nbf and exp come from one clock sample
        now = int(self._clock())
        payload = {
            "user_id": user_id,
            "username": username,
            "email": email,
            "iat": now,
            "nbf": now,
            "exp": now + int(self.lifetime.total_seconds()),
        }
        try:
            token = jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)
        except (jwt.PyJWTError, TypeError, ValueError) as e:
            logger.error(f"Token signing failed for user {user_id}: {type(e).__name__}")
            raise SignFailedError("token signing failed") from None

        logger.debug(f"Token created for user {username}")
        return token

    def _claims_from_payload(self, payload: dict) -> TokenClaims:
        try:
            user_id = payload["user_id"]
            if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id < 0:
                raise TypeError("user_id must be an unsigned integer")
            return TokenClaims(
                user_id=user_id,
                username=str(payload["username"]),
                email=str(payload["email"]),
                issued_at=_from_timestamp(payload["iat"]),
                not_before=_from_timestamp(payload["nbf"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise InvalidTokenError(TokenFailure.MALFORMED, f"bad claims: {e}") from None

    def _now(self) -> datetime:
        return _from_timestamp(self._clock())


def _from_timestamp(value) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError("timestamp must be numeric")
    return datetime.fromtimestamp(value, tz=timezone.utc)


def parse_bearer(header_value: Optional[str]) -> Optional[str]:
    """
    Extract the token from an ``Authorization: Bearer <token>`` value.

    Returns:
        The token, or None if the header is missing or uses another scheme
    """
    if not header_value:
        return None
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]
