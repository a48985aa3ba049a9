"""
Health reporting.

Named checks are aggregated into healthy / degraded / unhealthy; any
unhealthy check makes the whole service unhealthy.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from .auth.database import UserDatabase

DATABASE_CHECK_TIMEOUT = 5.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class Check:
    status: HealthStatus
    message: str = ""
    duration_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status.value,
            "message": self.message,
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class HealthReport:
    status: HealthStatus
    timestamp: str
    version: str
    uptime_seconds: float
    checks: Dict[str, Check] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
        }


CheckFunc = Callable[[], Awaitable[Check]]


class HealthChecker:
    """
    Runs registered checks and aggregates their status.
    """

    def __init__(self, version: str):
        self.version = version
        self._started = time.monotonic()
        self._checks: Dict[str, CheckFunc] = {}

    def add_check(self, name: str, check: CheckFunc) -> None:
        self._checks[name] = check

    async def get_health(self) -> HealthReport:
        results: Dict[str, Check] = {}
        overall = HealthStatus.HEALTHY

        for name, check_func in self._checks.items():
            started = time.perf_counter()
            try:
                check = await check_func()
            except Exception as e:
                logger.error(f"Health check '{name}' raised: {e}")
                check = Check(HealthStatus.UNHEALTHY, "Check raised an exception", error=type(e).__name__)
            check.duration_ms = (time.perf_counter() - started) * 1000
            results[name] = check

            if check.status is HealthStatus.UNHEALTHY:
                overall = HealthStatus.UNHEALTHY
            elif check.status is HealthStatus.DEGRADED and overall is not HealthStatus.UNHEALTHY:
                overall = HealthStatus.DEGRADED

        return HealthReport(
            status=overall,
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=self.version,
            uptime_seconds=time.monotonic() - self._started,
            checks=results,
        )


def database_check(db: UserDatabase, timeout: float = DATABASE_CHECK_TIMEOUT) -> CheckFunc:
    """Check that pings the database under a deadline."""

    async def check() -> Check:
        try:
            await asyncio.wait_for(asyncio.to_thread(db.ping), timeout=timeout)
        except asyncio.TimeoutError:
            return Check(HealthStatus.UNHEALTHY, "Database ping timed out", error="timeout")
        except Exception as e:
            return Check(HealthStatus.UNHEALTHY, "Database ping failed", error=type(e).__name__)
        return Check(HealthStatus.HEALTHY, "Database connection is healthy")

    return check
