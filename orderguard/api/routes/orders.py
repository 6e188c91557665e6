"""
OrderGuard — Orders API

POST  /api/v1/orders              → record an accepted order + duplicate score
GET   /api/v1/orders              → paginated list with filters
GET   /api/v1/orders/{order_id}   → single order + score breakdown
PATCH /api/v1/orders/{order_id}   → status change (cancelled / failed orders
                                    stop counting towards cooldowns)
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from orderguard.config import settings
from orderguard.core.matching import canonical_ip
from orderguard.core.phone import lookup_values
from orderguard.core.scoring import ScoringPolicy
from orderguard.models.models import Order
from orderguard.models.schemas import (
    OrderCreate,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderScoreResponse,
    OrderUpdate,
)
from orderguard.services.db import get_db
from orderguard.services.drafts import CONTACT_FIELDS, apply_contact, find_draft
from orderguard.services.errors import ScoringError
from orderguard.services.observability import Metrics, set_user_id
from orderguard.services.scorer import get_scoring_policy, score_order
from orderguard.services.security import get_current_user

logger = logging.getLogger("orderguard.api.orders")
router = APIRouter()


def _order_response(order: Order, percentage: Optional[int] = None) -> OrderResponse:
    if percentage is None and order.score is not None:
        percentage = order.score.percentage
    return OrderResponse.model_validate(order).model_copy(update={"duplicate_percentage": percentage})


async def _load_order(db: AsyncSession, order_id: str) -> Order:
    result = await db.execute(
        select(Order).options(selectinload(Order.score)).where(Order.id == order_id)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


# ===========================================================================
# POST  /api/v1/orders
# ===========================================================================
@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    response_model=OrderResponse,
    summary="Record & Score an Order",
    description=(
        "Persists an order the storefront has accepted, computes its "
        "duplicate percentage against the last 24 h of orders (same phone "
        "+40, same IP +30, same address +30, capped at 100) and stores the "
        "score with its signals."
    ),
)
async def create_order(
    payload: OrderCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    policy: ScoringPolicy = Depends(get_scoring_policy),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    set_user_id(current_user.get("sub", "unknown"))
    start_time = time.perf_counter()

    if payload.external_id:
        existing = await db.execute(select(Order.id).where(Order.external_id == payload.external_id))
        if existing.scalar_one_or_none() is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Order {payload.external_id} already recorded",
            )

    draft = None
    if settings.DRAFT_CAPTURE_ENABLED:
        draft = await find_draft(db, draft_id=payload.draft_id, phone=payload.billing_phone)

    # A captured draft becomes the real order, keeping its row and ID.
    order = draft if draft is not None else Order()
    apply_contact(order, payload.model_dump(include=set(CONTACT_FIELDS)))
    order.external_id = payload.external_id
    order.status = payload.status
    order.total = payload.total
    if payload.created_at is not None:
        created = payload.created_at
        order.created_at = (
            created.replace(tzinfo=timezone.utc) if created.tzinfo is None
            else created.astimezone(timezone.utc)
        )
    elif draft is not None:
        order.created_at = datetime.now(timezone.utc)
    if draft is None:
        db.add(order)
    await db.flush()
    if draft is not None:
        logger.info("Draft id=%s converted to order", order.id)

    # Scoring is advisory; a failure must not lose the order.
    order_score = None
    try:
        order_score = await score_order(db, order, policy)
    except ScoringError as exc:
        logger.error("%s", exc)

    producer = getattr(request.app.state, "kafka_producer", None)
    if producer:
        try:
            await producer.send(
                topic=settings.KAFKA_ORDER_TOPIC,
                value={
                    "order_id": order.id,
                    "external_id": order.external_id,
                    "phone": order.phone_key,
                    "ip": order.ip_address,
                    "status": order.status,
                    "duplicate_percentage": order_score.percentage if order_score else None,
                },
                key=order.id,
            )
            Metrics.kafka_messages_sent_total.labels(topic=settings.KAFKA_ORDER_TOPIC).inc()
        except Exception as exc:
            logger.warning("Kafka publish failed for order=%s: %s", order.id, exc)
            Metrics.kafka_messages_errors_total.labels(topic=settings.KAFKA_ORDER_TOPIC).inc()

    Metrics.orders_recorded_total.labels(status="success" if order_score else "unscored").inc()
    logger.info(
        "Order recorded id=%s in %.2f ms",
        order.id, (time.perf_counter() - start_time) * 1000,
    )
    return OrderResponse.model_validate(order, from_attributes=True).model_copy(
        update={"duplicate_percentage": order_score.percentage if order_score else None}
    )


# ===========================================================================
# GET  /api/v1/orders
# ===========================================================================
@router.get(
    "/",
    response_model=OrderListResponse,
    summary="List Orders",
    description="Paginated list, newest first, filterable by status, phone (any format) and IP.",
)
async def list_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    status_filter: Optional[str] = None,
    phone: Optional[str] = None,
    ip: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    conditions = []
    if status_filter:
        conditions.append(Order.status == status_filter.lower().removeprefix("wc-"))
    if phone:
        values = list(lookup_values(phone))
        conditions.append(or_(Order.phone_key.in_(values), Order.billing_phone.in_(values)))
    if ip:
        conditions.append(Order.ip_address == canonical_ip(ip))

    stmt = select(Order).order_by(Order.created_at.desc())
    if conditions:
        stmt = stmt.where(and_(*conditions))

    count_result = await db.execute(select(func.count()).select_from(stmt.subquery()))
    total: int = count_result.scalar() or 0

    stmt = stmt.options(selectinload(Order.score)).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(stmt)

    return OrderListResponse(
        total=total,
        page=page,
        page_size=page_size,
        items=[_order_response(o) for o in result.scalars()],
    )


# ===========================================================================
# GET  /api/v1/orders/{order_id}
# ===========================================================================
@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    summary="Get Order Details",
)
async def get_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    order = await _load_order(db, order_id)
    return OrderDetailResponse(
        order=_order_response(order),
        score=OrderScoreResponse.model_validate(order.score) if order.score else None,
    )


# ===========================================================================
# PATCH  /api/v1/orders/{order_id}
# ===========================================================================
@router.patch(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Update Order Status",
)
async def update_order(
    order_id: str,
    payload: OrderUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    order = await _load_order(db, order_id)
    previous = order.status
    order.status = payload.status
    await db.flush()
    logger.info(
        "Order status changed id=%s %s → %s by=%s",
        order.id, previous, order.status, current_user.get("sub"),
    )
    return _order_response(order)
