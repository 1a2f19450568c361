# app/infra/health_checks_async.py
"""
Checks behind the admin ``/health/detailed`` endpoint.

Each check returns ``{"status": ..., "details": ...}`` plus optional
``error`` / ``response_time``. A failing critical check makes the whole
report unhealthy; anything else only degrades it.
"""
from __future__ import annotations
import time
from enum import Enum
from typing import Any, Dict

from app.config import settings
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

DISPATCH_TABLES = ("dispatch_jobs", "dispatch_bids", "dispatch_notifications")
SLOW_SECONDS = 1.0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _timed_result(started: float, details: str) -> Dict[str, Any]:
    elapsed = time.perf_counter() - started
    if elapsed > SLOW_SECONDS:
        return {"status": HealthStatus.DEGRADED, "details": f"Slow response: {elapsed:.3f}s", "response_time": elapsed}
    return {"status": HealthStatus.HEALTHY, "details": details, "response_time": elapsed}


class AsyncHealthCheck:
    critical = True
    name = "check"

    async def check(self) -> Dict[str, Any]:
        raise NotImplementedError


class DatabaseTablesCheck(AsyncHealthCheck):
    """Postgres is reachable and the dispatch tables exist"""

    name = "database"

    async def check(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            async with safe_db_conn() as conn:
                missing = [
                    table for table in DISPATCH_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {"status": HealthStatus.UNHEALTHY, "details": "Database unreachable", "error": str(exc)[:200]}

        if missing:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Dispatch tables missing",
                "error": f"Missing: {', '.join(missing)}",
            }
        return _timed_result(started, "Dispatch tables present")


class JobStoreCheck(AsyncHealthCheck):
    """Round-trips the vendor backlog query through whichever job store is wired in"""

    name = "job_store"

    def __init__(self, job_store):
        self.job_store = job_store

    async def check(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            backlog = await self.job_store.count_backlog()
        except Exception as exc:
            logger.error("Job store health check failed", exc_info=True)
            return {"status": HealthStatus.UNHEALTHY, "details": "Job store query failed", "error": str(exc)[:200]}

        result = _timed_result(started, "Job store operational")
        result["active_assignments"] = sum(backlog.values())
        return result


class DeliveryChannelCheck(AsyncHealthCheck):
    """The configured delivery channel is the one actually in use"""

    name = "delivery_channel"
    critical = False

    def __init__(self, channel):
        self.channel = channel

    async def check(self) -> Dict[str, Any]:
        if self.channel is None:
            return {"status": HealthStatus.DEGRADED, "details": "No delivery channel"}

        wanted = settings.delivery_channel
        if wanted != "fanout" and self.channel.name != wanted:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"'{wanted}' not configured, using '{self.channel.name}'",
            }
        return {"status": HealthStatus.HEALTHY, "details": f"Delivering via '{self.channel.name}'"}


class AsyncHealthChecker:
    def __init__(self, checks: list[AsyncHealthCheck]):
        self.checks = checks

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        overall = HealthStatus.HEALTHY
        results: Dict[str, Any] = {}

        for check in self.checks:
            if not (check.critical or include_non_critical):
                continue
            result = await check.check()
            results[check.name] = result

            status = result["status"]
            if status == HealthStatus.UNHEALTHY and check.critical:
                overall = HealthStatus.UNHEALTHY
            elif status != HealthStatus.HEALTHY and overall == HealthStatus.HEALTHY:
                overall = HealthStatus.DEGRADED

        return {
            "status": overall.value,
            "checks": results,
            "storage_backend": settings.storage_backend,
            "timestamp": time.time(),
        }


def build_health_checker(channel=None, job_store=None) -> AsyncHealthChecker:
    checks: list[AsyncHealthCheck] = []
    if settings.storage_backend == "postgres":
        checks.append(DatabaseTablesCheck())
    if job_store is not None:
        checks.append(JobStoreCheck(job_store))
    checks.append(DeliveryChannelCheck(channel))
    return AsyncHealthChecker(checks)
