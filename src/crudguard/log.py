"""
Structured logging on top of loguru.

Every record carries a ``service`` field; request-scoped fields
(request_id, user_id) are bound per request by the request-log middleware.
"""

import sys
from typing import Optional

from loguru import logger

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DDTHH:mm:ss.SSSZ}</green> | <level>{level: <8}</level> | "
    "{extra[service]} | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", json_logs: bool = True, service: str = "crudguard") -> None:
    """
    Install the stdout sink.

    Args:
        level: Minimum loguru level name
        json_logs: Serialize each record as a JSON object
        service: Service name bound to every record
    """
    logger.remove()
    logger.configure(extra={"service": service})
    if json_logs:
        logger.add(sys.stdout, level=level, serialize=True, enqueue=False)
    else:
        logger.add(sys.stdout, level=level, format=TEXT_FORMAT, colorize=False)


def log_auth_event(
    event: str,
    username: Optional[str],
    user_id: Optional[int],
    success: bool,
    ip: Optional[str],
) -> None:
    """Record a login/registration/refresh outcome. Never pass secrets here."""
    bound = logger.bind(event=event, username=username, user_id=user_id, success=success, ip=ip)
    if success:
        bound.info("Authentication event")
    else:
        bound.warning("Authentication failed")


def log_http_request(
    method: str,
    path: str,
    user_agent: str,
    status: int,
    duration_ms: float,
    request_id: str,
) -> None:
    logger.bind(
        request_id=request_id,
        method=method,
        path=path,
        user_agent=user_agent,
        status_code=status,
        duration_ms=round(duration_ms, 2),
    ).info("HTTP Request")


def log_database_operation(
    operation: str,
    table: str,
    duration_ms: float,
    error: Optional[BaseException] = None,
) -> None:
    bound = logger.bind(operation=operation, table=table, duration_ms=round(duration_ms, 2))
    if error is not None:
        bound.error(f"Database operation failed: {error}")
    else:
        bound.debug("Database operation completed")
