"""
Request-guard middleware: rate limiting, the guard pipeline and request logging.
"""

from .rate_limit import RateLimitDecision, RateLimiter, RateLimiters
from .guard import (
    Guard,
    IdentityMode,
    RequestIdentity,
    RequireAnyRole,
    RequireOwnershipOrRole,
    RequirePermission,
    RequireRole,
    current_identity,
    emit_rate_limit_headers,
)
from .request_log import error_middleware, request_logging_middleware

__all__ = [
    # Rate limiting
    "RateLimitDecision",
    "RateLimiter",
    "RateLimiters",
    # Guard pipeline
    "Guard",
    "IdentityMode",
    "RequestIdentity",
    "RequireAnyRole",
    "RequireOwnershipOrRole",
    "RequirePermission",
    "RequireRole",
    "current_identity",
    "emit_rate_limit_headers",
    # Logging and errors
    "error_middleware",
    "request_logging_middleware",
]
