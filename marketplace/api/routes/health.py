"""Health check endpoints for monitoring and deployment verification."""

import time

from fastapi import APIRouter, Response, status

from marketplace.api.deps import Cache, DbSession
from marketplace.api.middleware.latency_logging import get_latency_stats
from marketplace.core.database import check_database_connection
from marketplace.schemas.common import CheckResult, HealthResponse, HealthStatus, ReadinessResponse

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Basic health check to verify the service is running. Used for liveness probes.",
)
async def health_check() -> HealthResponse:
    """Return basic health status.

    This endpoint should always return 200 if the service is running.
    It does not check external dependencies.
    """
    return HealthResponse(status=HealthStatus.HEALTHY)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "Relational store reachable"},
        503: {"description": "Relational store unreachable"},
    },
    summary="Readiness check",
    description="Check if dependencies are available. Used for readiness probes.",
)
def readiness_check(response: Response, db: DbSession, cache: Cache) -> ReadinessResponse:
    """Check readiness of the relational store and the cache.

    Only the relational store decides readiness. The cache is reported but
    an unreachable cache leaves the service ready, since every cache read
    falls back to the store.
    """
    start_time = time.perf_counter()
    db_result = check_database_connection(db.get_bind())
    db_latency_ms = (time.perf_counter() - start_time) * 1000

    start_time = time.perf_counter()
    cache_result = cache.check_connection()
    cache_latency_ms = (time.perf_counter() - start_time) * 1000

    checks = [
        CheckResult(
            name="database",
            healthy=db_result["healthy"],
            latency_ms=round(db_latency_ms, 2),
            error=db_result.get("error"),
        ),
        CheckResult(
            name="cache",
            healthy=cache_result["healthy"],
            latency_ms=round(cache_latency_ms, 2),
            error=cache_result.get("error"),
        ),
    ]

    if not db_result["healthy"]:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(status=HealthStatus.UNHEALTHY, checks=checks)
    return ReadinessResponse(status=HealthStatus.HEALTHY, checks=checks)


@router.get(
    "/health/stats",
    summary="Request latency stats",
    description="Rolling latency stats per endpoint, recorded by the latency middleware.",
)
async def latency_stats() -> dict:
    stats = get_latency_stats()
    return {"overall": stats.get_stats(), "endpoints": stats.get_stats_by_endpoint()}
