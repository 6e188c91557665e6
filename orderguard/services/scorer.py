"""
OrderGuard — Duplicate Scoring Orchestrator

Gathers the recent-order facts the pure scorer needs from the order store,
runs it, and persists an OrderScore row for recorded orders.

Every store lookup fails open: an error is logged and counted as zero, so a
flaky database can lower a score but never inflate one.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import settings
from orderguard.core.matching import (
    EXCLUDED_STATUSES, MatchField, OrderRecordStore, canonical_ip, is_placeholder_ip,
)
from orderguard.core.phone import PhoneNumber, variants
from orderguard.core.scoring import (
    MIN_NAME_LENGTH, OrderFacts, RecentOrderFacts, ScoringPolicy, describe, score,
)
from orderguard.models.models import Order, OrderScore
from orderguard.services.errors import ScoringError
from orderguard.services.observability import Metrics, log_order_scored
from orderguard.services.order_store import SqlOrderStore

logger = logging.getLogger("orderguard.scorer")


def facts_from_order(order: Order) -> OrderFacts:
    return OrderFacts(
        order_id=order.id,
        billing_phone=order.billing_phone or "",
        ip_address=order.ip_address or "",
        first_name=order.first_name or "",
        last_name=order.last_name or "",
        address_1=order.address_1 or "",
        city=order.city or "",
        postcode=order.postcode or "",
    )


def get_scoring_policy() -> ScoringPolicy:
    return ScoringPolicy.from_settings(settings)


async def _safe_count(store: OrderRecordStore, check: str, field: MatchField, values, **kwargs) -> int:
    try:
        return await store.count_recent(field, set(values), **kwargs)
    except Exception as exc:
        logger.error("Order store lookup failed check=%s: %s", check, exc)
        Metrics.store_lookup_errors_total.labels(check=check).inc()
        return 0


# ===========================================================================
# Fact collection
# ===========================================================================
async def collect_recent_facts(
    store: OrderRecordStore,
    order: OrderFacts,
    policy: ScoringPolicy,
    exclude_ids: Iterable[str] = (),
    now: Optional[datetime] = None,
    include_percentage: bool = True,
) -> RecentOrderFacts:
    """
    Query *store* for everything :func:`score` reads.

    ``include_percentage=False`` skips the three lookback counts and fetches
    only what the blocking checks (address limit, similar name) need.
    """
    now = now or datetime.now(timezone.utc)
    exclude = {str(i) for i in exclude_ids if i}
    if order.order_id:
        exclude.add(str(order.order_id))
    statuses = set(EXCLUDED_STATUSES)

    phone = order.phone
    phone_values = variants(phone) if isinstance(phone, PhoneNumber) else frozenset()
    ip = canonical_ip(order.ip_address)
    address_key = order.address_key

    same_phone = same_ip = same_address = 0
    if include_percentage:
        lookback = dict(
            since=now - timedelta(hours=policy.lookback_hours),
            exclude_ids=exclude,
            excluded_statuses=statuses,
        )
        if phone_values:
            same_phone = await _safe_count(store, "same_phone", MatchField.PHONE, phone_values, **lookback)
        if not is_placeholder_ip(ip):
            same_ip = await _safe_count(store, "same_ip", MatchField.IP, {ip}, **lookback)
        if address_key:
            same_address = await _safe_count(store, "same_address", MatchField.ADDRESS, {address_key}, **lookback)

    address_window_count = 0
    if policy.address_detection and address_key:
        address_window_count = await _safe_count(
            store, "address_limit", MatchField.ADDRESS, {address_key},
            since=now - timedelta(hours=policy.address_window_hours),
            exclude_ids=exclude,
            excluded_statuses=statuses,
        )

    recent_names = ()
    if policy.name_similarity and len(order.full_name) >= MIN_NAME_LENGTH:
        try:
            rows = await store.recent_names(
                since=now - timedelta(hours=policy.name_check_window_hours),
                exclude_phone_values=set(phone_values),
                excluded_statuses=statuses,
                limit=policy.name_check_limit,
                exclude_ids=exclude,
            )
            recent_names = tuple(tuple(row) for row in rows)
        except Exception as exc:
            logger.error("Order store lookup failed check=similar_name: %s", exc)
            Metrics.store_lookup_errors_total.labels(check="similar_name").inc()

    return RecentOrderFacts(
        same_phone=same_phone,
        same_ip=same_ip,
        same_address=same_address,
        address_window_count=address_window_count,
        recent_names=recent_names,
    )


# ===========================================================================
# Recorded-order scoring
# ===========================================================================
async def score_order(
    db: AsyncSession,
    order: Order,
    policy: ScoringPolicy,
    now: Optional[datetime] = None,
) -> OrderScore:
    """
    Score a just-recorded *order* against its recent history and persist the
    result.  The lookback is anchored at the order's own timestamp, which
    matters for back-filled orders.

    Runs inside a SAVEPOINT: a failed statement rolls back the score alone
    and surfaces as :class:`ScoringError`, leaving the order itself intact.
    """
    facts = facts_from_order(order)
    anchor = now or order.created_at or datetime.now(timezone.utc)
    if anchor.tzinfo is None:
        anchor = anchor.replace(tzinfo=timezone.utc)

    try:
        async with db.begin_nested():
            recent = await collect_recent_facts(SqlOrderStore(db), facts, policy, now=anchor)
            percentage, signals = score(facts, recent, policy)

            row = OrderScore(
                order_id=order.id,
                percentage=percentage,
                signals=[s.to_dict() for s in signals],
                reason=describe(signals) or None,
            )
            db.add(row)
            await db.flush()
    except SQLAlchemyError as exc:
        raise ScoringError(f"Duplicate scoring failed for order {order.id}: {exc}") from exc

    log_order_scored(order.id, percentage, [s.kind.value for s in signals])
    return row
