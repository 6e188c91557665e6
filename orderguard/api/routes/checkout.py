"""
OrderGuard — Checkout API

POST /api/v1/checkout/evaluate   → allow / block decision for one checkout attempt

The storefront calls this before accepting an order and shows ``message``
to the customer when ``allowed`` is false.
"""

import logging
import time
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.api.limiter import limiter
from orderguard.config import settings
from orderguard.models.schemas import CheckoutDecisionResponse, CheckoutRequest
from orderguard.services.alerting import dispatch_blocked_attempt
from orderguard.services.db import get_db
from orderguard.services.errors import DatabaseError
from orderguard.services.guard import (
    CheckoutAttempt, GuardPolicy, evaluate_checkout, get_guard_policy, record_blocked_attempt,
)
from orderguard.services.network import resolve_client_ip
from orderguard.services.observability import log_checkout_decision, set_user_id
from orderguard.services.security import get_current_user

logger = logging.getLogger("orderguard.api.checkout")
router = APIRouter()


@router.post(
    "/evaluate",
    response_model=CheckoutDecisionResponse,
    summary="Evaluate a Checkout Attempt",
    description=(
        "Runs blocklist, proxy, phone-format, cooldown, address-limit and "
        "similar-name checks and returns the first blocking finding.  Fails "
        "open: internal errors yield an allowed decision."
    ),
)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
async def evaluate(
    request: Request,
    payload: CheckoutRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    policy: GuardPolicy = Depends(get_guard_policy),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    set_user_id(current_user.get("sub", "unknown"))
    start_time = time.perf_counter()

    # Forwarded customer headers take precedence over this request's own.
    client_headers = payload.headers or dict(request.headers)
    peer = None if payload.headers else (request.client.host if request.client else None)
    ip = payload.ip_address or resolve_client_ip(client_headers, peer)

    attempt = CheckoutAttempt(
        billing_phone=payload.billing_phone,
        first_name=payload.first_name,
        last_name=payload.last_name,
        address_1=payload.address_1,
        city=payload.city,
        postcode=payload.postcode,
        ip_address=ip,
        device_id=payload.device_id,
        user_agent=payload.user_agent or client_headers.get("user-agent"),
        customer_order_count=payload.customer_order_count,
        headers=client_headers,
        draft_id=payload.draft_id,
    )

    decision = await evaluate_checkout(db, attempt, policy)

    if not decision.allowed:
        try:
            row = await record_blocked_attempt(db, attempt, decision)
        except DatabaseError as exc:
            logger.error("%s", exc)
        else:
            producer = getattr(request.app.state, "kafka_producer", None)
            background_tasks.add_task(dispatch_blocked_attempt, row, producer)

    log_checkout_decision(
        decision.allowed,
        decision.blocked_by,
        (time.perf_counter() - start_time) * 1000,
    )
    return CheckoutDecisionResponse(**decision.to_dict())
