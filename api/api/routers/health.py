"""Health-check and readiness probe endpoints.

``/health`` (liveness) lives under the versioned prefix
(``/api/v1/health``) and always answers 200.  ``/ready`` is registered at
the application root and answers 503 when the ledger store is unreachable,
so orchestrators stop routing traffic that could not be billed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api import __version__
from api.dependencies import ComputeDep, get_db_session

logger = logging.getLogger(__name__)

HealthSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# Short timeout for the compute health check so probes respond quickly.
_COMPUTE_HEALTH_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


async def _db_ok(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


async def _compute_ok(compute: ComputeDep) -> bool:
    try:
        return await asyncio.wait_for(compute.health_check(), timeout=_COMPUTE_HEALTH_TIMEOUT)
    except TimeoutError:
        return False


@router.get("/health")
async def health(session: HealthSessionDep) -> dict[str, Any]:
    """Return service liveness and whether the ledger store answers."""
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session) else "degraded",
    }


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: HealthSessionDep, compute: ComputeDep) -> JSONResponse:
    """Readiness probe.

    The database gates readiness; an unreachable compute endpoint only
    degrades it, since own-key callers and read endpoints still work.
    """
    checks = {"db": "ok", "compute": "ok"}
    overall = "ready"

    if not await _db_ok(session):
        checks["db"] = "unavailable"
        overall = "not_ready"
    if not await _compute_ok(compute):
        checks["compute"] = "unavailable"
        if overall == "ready":
            overall = "degraded"

    return JSONResponse(
        status_code=200 if overall != "not_ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
