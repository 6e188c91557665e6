"""
OrderGuard — Phone tools

POST /api/v1/phones/normalize          → canonical form + variants, or why it is invalid
GET  /api/v1/phones/{phone}/history    → order history summary for one customer phone
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.core.phone import PhoneNumber, lookup_values, normalize
from orderguard.models.models import Order
from orderguard.models.schemas import (
    PhoneHistoryResponse,
    PhoneNormalizeRequest,
    PhoneNormalizeResponse,
)
from orderguard.services.blocklist import is_phone_blocked
from orderguard.services.db import get_db
from orderguard.services.security import get_current_user

logger = logging.getLogger("orderguard.api.phones")
router = APIRouter()

COMPLETED_STATUS = "completed"


@router.post(
    "/normalize",
    response_model=PhoneNormalizeResponse,
    summary="Normalise a Phone Number",
)
async def normalize_phone(
    payload: PhoneNormalizeRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    result = normalize(payload.phone)
    if isinstance(result, PhoneNumber):
        return PhoneNormalizeResponse(
            input=payload.phone,
            valid=True,
            canonical=result.canonical,
            operator_prefix=result.operator_prefix,
            variants=sorted(result.variants()),
        )
    return PhoneNormalizeResponse(input=payload.phone, valid=False, reason=result.reason)


@router.get(
    "/{phone}/history",
    response_model=PhoneHistoryResponse,
    summary="Phone Order History",
    description=(
        "Totals by status, success rate (completed / total, percent), the "
        "most recent order time and whether the phone is blocklisted.  The "
        "phone may be given in any accepted format."
    ),
)
async def phone_history(
    phone: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    result = normalize(phone)
    display = result.canonical if isinstance(result, PhoneNumber) else phone
    values = list(lookup_values(phone))

    by_status: Dict[str, int] = {}
    last_order_at = None
    if values:
        match = or_(Order.phone_key.in_(values), Order.billing_phone.in_(values))
        rows = await db.execute(
            select(Order.status, func.count(Order.id)).where(match).group_by(Order.status)
        )
        by_status = {row[0]: row[1] for row in rows.all()}

        last = await db.execute(select(func.max(Order.created_at)).where(match))
        last_order_at = last.scalar()

    total = sum(by_status.values())
    completed = by_status.get(COMPLETED_STATUS, 0)

    return PhoneHistoryResponse(
        phone=display,
        total_orders=total,
        by_status=by_status,
        completed=completed,
        success_rate=round(100.0 * completed / total, 2) if total else 0.0,
        last_order_at=last_order_at,
        blocked=await is_phone_blocked(db, phone),
    )
