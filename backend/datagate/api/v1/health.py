"""
Health check endpoints for monitoring and readiness probes.

- Liveness probe: /health (the process is up and serving)
- Readiness probe: /health/ready (store reachable, every entity wired)
"""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Response, status

from datagate.api.dependencies import (
    DatabaseHandle,
    GatewaysHandle,
    RegistryHandle,
    SettingsHandle,
)
from datagate.core.config import APP_VERSION
from datagate.core.probes import check_database, check_gateways
from datagate.schemas.health import HealthCheckDetail, HealthResponse, ReadinessResponse


router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness probe",
)
async def health_check(config: SettingsHandle) -> HealthResponse:
    """
    Basic liveness probe. Always 200 while the application is running.

    Example response:
        {
            "status": "ok",
            "service": "Datagate",
            "version": "0.1.0",
            "timestamp": "2025-11-24T10:30:00.123456+00:00"
        }
    """
    return HealthResponse(
        status="ok",
        service=config.project_name,
        version=APP_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    response_model_exclude_none=True,
    summary="Readiness probe",
    responses={503: {"description": "A dependency check failed"}},
)
async def readiness_check(
    response: Response,
    database: DatabaseHandle,
    registry: RegistryHandle,
    gateways: GatewaysHandle,
) -> ReadinessResponse:
    """
    Readiness probe: 200 if every check passes, 503 otherwise.

    Example response (unhealthy):
        {
            "status": "not_ready",
            "checks": {
                "database": {"healthy": false, "latency_ms": 2000.4, "error": "Timed out after 2.0s"},
                "gateways": {"healthy": true, "latency_ms": 0.01, "entities": ["categories", "products"]}
            },
            "timestamp": "2025-11-24T10:30:00.123456+00:00"
        }
    """
    checks: Dict[str, HealthCheckDetail] = {
        "database": await check_database(database),
        "gateways": check_gateways((binding.name for binding in registry), gateways),
    }

    ready = all(check.healthy for check in checks.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status="ready" if ready else "not_ready",
        checks=checks,
        timestamp=datetime.now(timezone.utc),
    )
