"""
Liveness and readiness endpoints.

GET /health answers as long as the process is up. GET /health/ready also
checks the warehouse connection and reports the analytics backlog; load
balancers should route traffic on that one.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from ... import __version__
from ...config.settings import Settings
from ..dependencies import Services, ServicesDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    details: dict[str, Any] = {}


class ReadinessCheck(BaseModel):
    name: str
    status: str  # "ok" or "error"
    error: Optional[str] = None


class ReadinessResponse(BaseModel):
    status: str  # "ready" or "not_ready"
    version: str
    checks: list[ReadinessCheck]


def _configuration_check(settings: Settings) -> ReadinessCheck:
    problems = settings.validate_required_fields()
    if problems:
        return ReadinessCheck(
            name="configuration",
            status="error",
            error=f"Missing or invalid: {', '.join(problems)}",
        )
    return ReadinessCheck(name="configuration", status="ok")


async def _warehouse_check(services: Services) -> ReadinessCheck:
    try:
        healthy = await services.event_sink.health_check()
    except Exception as e:
        logger.error("Warehouse health check failed", extra={"error": str(e)})
        return ReadinessCheck(name="database", status="error", error=str(e))

    if not healthy:
        return ReadinessCheck(name="database", status="error", error="SELECT 1 returned no row")
    return ReadinessCheck(name="database", status="ok")


def _queue_check(services: Services) -> ReadinessCheck:
    # Informational only; a failing warehouse already fails the database check
    queue = services.analytics_queue
    note = None
    if queue.consecutive_failures:
        note = f"{len(queue)} queued after {queue.consecutive_failures} failed sends"
    return ReadinessCheck(name="analytics_queue", status="ok", error=note)


@router.get(
    "",
    response_model=HealthResponse,
    summary="Liveness check",
)
async def health_check(settings: SettingsDep) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        details={
            "mock_mode": {
                "storage": settings.storage_mock_mode,
                "snowflake": settings.snowflake_mock_mode,
            }
        }
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    responses={503: {"description": "Service not ready", "model": ReadinessResponse}},
)
async def readiness_check(
    response: Response,
    settings: SettingsDep,
    services: ServicesDep,
) -> ReadinessResponse:
    """Returns 503 when configuration or the warehouse check fails."""
    checks = [
        _configuration_check(settings),
        await _warehouse_check(services),
        _queue_check(services),
    ]

    ready = all(check.status == "ok" for check in checks)
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(
            "Service not ready",
            extra={"failed_checks": [c.name for c in checks if c.status != "ok"]}
        )

    return ReadinessResponse(
        status="ready" if ready else "not_ready",
        version=__version__,
        checks=checks,
    )
