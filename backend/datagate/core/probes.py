"""
Health probe functions for dependency checks.

Each probe returns a HealthCheckDetail: it never raises, measures its own
latency and reports failures (including timeouts) as ``healthy=False``.
"""

import asyncio
import time
from typing import Iterable, Mapping

from datagate.core.database import Database
from datagate.schemas.health import HealthCheckDetail


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


async def check_database(database: Database, timeout_seconds: float = 2.0) -> HealthCheckDetail:
    """
    Check database connectivity with ``SELECT 1``.

    Args:
        database: Store handle to probe
        timeout_seconds: Maximum time to wait for response (default: 2.0)

    Example:
        >>> detail = await check_database(app.state.database)
        >>> detail.healthy, detail.dialect
        (True, 'sqlite')
    """
    start = time.perf_counter()
    try:
        healthy = await asyncio.wait_for(database.ping(), timeout=timeout_seconds)
        error = None if healthy else "Database ping failed"
    except asyncio.TimeoutError:
        healthy, error = False, f"Timed out after {timeout_seconds}s"

    return HealthCheckDetail(
        healthy=healthy,
        latency_ms=_elapsed_ms(start),
        error=error,
        dialect=database.engine.dialect.name if healthy else None,
    )


def check_gateways(expected: Iterable[str], gateways: Mapping[str, object]) -> HealthCheckDetail:
    """Every registered entity must have a gateway wired at startup."""
    start = time.perf_counter()
    missing = sorted(set(expected) - set(gateways))
    return HealthCheckDetail(
        healthy=not missing,
        latency_ms=_elapsed_ms(start),
        error=f"No gateway for: {', '.join(missing)}" if missing else None,
        entities=sorted(gateways),
    )
