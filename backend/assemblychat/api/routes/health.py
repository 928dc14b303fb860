"""Health check endpoint with a database connectivity probe.

A disconnected database does not change the overall status ("ok"); the
endpoint always returns 200 so load balancers keep routing.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter
from sqlalchemy import text

from assemblychat.config import settings
from assemblychat.storage.database import get_engine

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds


async def _check_database() -> str:
    """Run SELECT 1 against the configured database."""

    async def _ping() -> None:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping(), timeout=_CHECK_TIMEOUT)
        return "connected"
    except Exception as exc:
        logger.debug("health_database_failed", error=str(exc))
        return "disconnected"


@router.get("/health")
async def health_check() -> dict:
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "database": await _check_database(),
        "gemini": "configured" if settings.gemini_api_key else "missing_api_key",
    }
