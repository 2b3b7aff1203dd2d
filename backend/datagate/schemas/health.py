"""
Pydantic schemas for health check endpoints.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """
    Liveness payload.

    Attributes:
        status: Always "ok" while the process serves requests
        service: Configured project name
        version: Application version
        timestamp: Current UTC timestamp
    """
    status: Literal["ok"]
    service: str
    version: str
    timestamp: datetime


class HealthCheckDetail(BaseModel):
    """
    Result of one dependency probe.

    ``dialect`` is filled by the store probe, ``entities`` by the gateway
    probe; both stay unset otherwise.
    """
    healthy: bool
    latency_ms: Optional[float] = Field(default=None, description="Probe duration in milliseconds")
    error: Optional[str] = None
    dialect: Optional[str] = None
    entities: Optional[List[str]] = None


class ReadinessResponse(BaseModel):
    """Readiness payload: "ready" only when every check passed."""

    status: Literal["ready", "not_ready"]
    checks: Dict[str, HealthCheckDetail]
    timestamp: datetime
