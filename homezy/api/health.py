"""Health and readiness checks for the lead engine"""

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from homezy import __version__
from homezy.api.deps import get_clock
from homezy.config import settings
from homezy.db.database import get_db
from homezy.db.models import (
    CreditReservation,
    DirectLeadStatus,
    Lead,
    LeadType,
    ReservationStatus,
)
from homezy.services.questionnaires import get_registry
from homezy.utils.time import Clock

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/")
async def health_check(clock: Clock = Depends(get_clock)) -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": clock().isoformat(),
        "service": "Homezy Lead Engine",
        "version": __version__,
    }


async def _backlog(db: AsyncSession, clock: Clock) -> dict[str, int]:
    """Work the sweeper should already have done; a growing number means it is not running"""
    now = clock()
    stale_reservations = (await db.execute(
        select(func.count()).select_from(CreditReservation).where(
            CreditReservation.status == ReservationStatus.PENDING,
            CreditReservation.expires_at <= now,
        )
    )).scalar_one()
    overdue_direct = (await db.execute(
        select(func.count()).select_from(Lead).where(
            Lead.lead_type == LeadType.DIRECT,
            Lead.direct_lead_status == DirectLeadStatus.PENDING,
            Lead.direct_lead_expires_at <= now,
        )
    )).scalar_one()
    return {
        "stale_reservations": int(stale_reservations),
        "overdue_direct_leads": int(overdue_direct),
    }


@router.get("/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> dict[str, Any]:
    """Database, questionnaire config and redis, plus the sweeper backlog"""
    checks = {
        "database": "unknown",
        "questionnaires": "unknown",
        "redis": "disabled",
    }
    backlog: dict[str, int] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
        backlog = await _backlog(db, clock)
    except Exception as e:
        logger.error(f"Database readiness check failed: {e}")
        checks["database"] = "unhealthy"

    try:
        services = get_registry().service_ids()
        checks["questionnaires"] = "healthy" if services else "unhealthy"
    except Exception as e:
        logger.error(f"Questionnaire config failed to load: {e}")
        checks["questionnaires"] = "unhealthy"

    if settings.redis_url and settings.app_env != "development":
        try:
            import redis.asyncio as redis
            client = redis.from_url(str(settings.redis_url))
            try:
                await client.ping()
            finally:
                await client.aclose()
            checks["redis"] = "healthy"
        except Exception as e:
            logger.warning(f"Redis unreachable, rate limiting falls back to memory: {e}")
            checks["redis"] = "unhealthy"

    # Claims cannot run without the database or the questionnaires; redis only backs rate limits
    if "unhealthy" in (checks["database"], checks["questionnaires"]):
        status = "unhealthy"
    elif checks["redis"] == "unhealthy" or any(backlog.values()):
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "timestamp": clock().isoformat(),
        "checks": checks,
        "backlog": backlog,
        "sweeper_enabled": settings.enable_sweeper,
    }


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
