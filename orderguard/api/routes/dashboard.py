"""
OrderGuard — Dashboard API
GET  /api/v1/dashboard/stats?period=week|month  → blocked attempts by type and by day
GET  /api/v1/dashboard/recent-blocked           → latest blocked attempts
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.models.models import BlockedAttempt
from orderguard.models.schemas import BlockedAttemptResponse, BlockedStats
from orderguard.services.db import get_db
from orderguard.services.security import get_current_user

logger = logging.getLogger("orderguard.api.dashboard")
router = APIRouter()

PERIOD_DAYS = {"week": 7, "month": 30}


# ===========================================================================
# GET  /api/v1/dashboard/stats
# ===========================================================================
@router.get(
    "/stats",
    response_model=BlockedStats,
    summary="Blocked-Attempt Statistics",
    description=(
        "Totals for the last 7 (week) or 30 (month) days, broken down by "
        "block type and by UTC day.  Days without blocks are reported as 0."
    ),
)
async def blocked_stats(
    period: Literal["week", "month"] = "week",
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    days = PERIOD_DAYS[period]
    today = datetime.now(timezone.utc).date()
    first_day = today - timedelta(days=days - 1)
    since = datetime.combine(first_day, datetime.min.time(), tzinfo=timezone.utc)

    # ── by type ────────────────────────────────────────────────────────────
    type_rows = await db.execute(
        select(BlockedAttempt.type, func.count(BlockedAttempt.id))
        .where(BlockedAttempt.created_at >= since)
        .group_by(BlockedAttempt.type)
    )
    by_type = {row[0]: row[1] for row in type_rows.all()}

    # ── by day (zero-filled) ───────────────────────────────────────────────
    by_day = {(first_day + timedelta(days=i)).isoformat(): 0 for i in range(days)}
    stamps = await db.execute(
        select(BlockedAttempt.created_at).where(BlockedAttempt.created_at >= since)
    )
    for (created_at,) in stamps.all():
        if created_at.tzinfo is not None:
            created_at = created_at.astimezone(timezone.utc)
        key = created_at.date().isoformat()
        if key in by_day:
            by_day[key] += 1

    return BlockedStats(
        period=period,
        days=days,
        total=sum(by_type.values()),
        by_type=by_type,
        by_day=by_day,
    )


# ===========================================================================
# GET  /api/v1/dashboard/recent-blocked
# ===========================================================================
@router.get(
    "/recent-blocked",
    response_model=List[BlockedAttemptResponse],
    summary="Recent Blocked Attempts",
)
async def recent_blocked(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    result = await db.execute(
        select(BlockedAttempt).order_by(BlockedAttempt.created_at.desc()).limit(limit)
    )
    return [BlockedAttemptResponse.model_validate(r) for r in result.scalars()]
