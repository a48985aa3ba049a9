"""
Error taxonomy for crudguard.

Every failure that can cross the HTTP boundary is a GuardError subclass
carrying a status code and a scrubbed public message. The granular detail
(the ``detail`` argument) goes to the logs and never into a response body.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class TokenFailure(str, Enum):
    """Why a bearer token was rejected (logged, never returned)."""
    MALFORMED = "malformed"
    WRONG_ALGORITHM = "wrong_algorithm"
    BAD_SIGNATURE = "bad_signature"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"


class GuardError(Exception):
    """
    Base class for errors coerced into an HTTP response.

    Attributes:
        status: HTTP status code
        public_message: Message safe to show to the caller
        detail: Internal detail for structured logs
    """

    status = 500
    public_message = "Internal server error"

    def __init__(self, detail: Optional[str] = None, public_message: Optional[str] = None):
        if public_message is not None:
            self.public_message = public_message
        self.detail = detail or self.public_message
        super().__init__(self.detail)

    def to_body(self) -> Dict[str, Any]:
        """Response body for this error."""
        return {"error": self.public_message}


class AuthInputError(GuardError):
    """Missing or malformed input (header, required field)."""

    status = 400
    public_message = "Invalid request"

    def __init__(
        self,
        detail: Optional[str] = None,
        public_message: Optional[str] = None,
        fields: Optional[List[Dict[str, str]]] = None,
    ):
        super().__init__(detail, public_message or detail)
        self.fields = fields or []

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.fields:
            body["details"] = self.fields
        return body


class NotRefreshableError(GuardError):
    status = 400
    public_message = "Token is not close to expiry"


class UnauthenticatedError(GuardError):
    status = 401
    public_message = "Unauthorized"


class InvalidCredentialsError(UnauthenticatedError):
    public_message = "Invalid credentials"


class PasswordMismatchError(InvalidCredentialsError):
    """Candidate secret does not match, or the stored verifier is unusable."""


class InvalidTokenError(UnauthenticatedError):
    """
    Bearer token rejected.

    Attributes:
        reason: Granular TokenFailure kept for the logs
    """

    public_message = "Invalid token"

    def __init__(self, reason: TokenFailure, detail: Optional[str] = None):
        self.reason = reason
        super().__init__(detail or f"token rejected: {reason.value}")


class PermissionDeniedError(GuardError):
    """
    Raised when a principal lacks a required role, permission or ownership.

    Attributes:
        principal_id: The principal who was denied
        action: What was being required (role, permission, ownership)
    """

    status = 403
    public_message = "Forbidden"

    def __init__(self, principal_id: Optional[int], action: str):
        self.principal_id = principal_id
        self.action = action
        super().__init__(f"Principal {principal_id} denied: {action}")


class NotFoundError(GuardError):
    status = 404
    public_message = "Not found"


class ConflictError(GuardError):
    status = 409
    public_message = "Conflict"


class RateLimitedError(GuardError):
    """
    Identity exceeded its rate-limit window.

    Attributes:
        retry_after: Whole seconds until the next slot frees
    """

    status = 429
    public_message = "Rate limit exceeded"

    def __init__(self, key: str, retry_after: int):
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"rate limit exceeded for {key}")

    def to_body(self) -> Dict[str, Any]:
        return {
            "error": self.public_message,
            "message": "Too many requests, please try again later",
            "retry_after": self.retry_after,
        }


class InternalError(GuardError):
    status = 500
    public_message = "Internal server error"


class HashFailedError(InternalError):
    pass


class SignFailedError(InternalError):
    pass
