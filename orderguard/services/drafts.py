"""
OrderGuard — Incomplete-checkout Drafts

The storefront posts checkout form contents as the customer types.  Each
customer gets exactly one ``incomplete`` order row, updated in place on every
capture and converted into the real order when it is recorded.

Drafts are ordinary rows in ``orders``: the cooldown and duplicate queries
count them like any other live order, except the customer's own draft, whose
ID the storefront passes back with the checkout.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import settings
from orderguard.core.matching import canonical_ip, is_placeholder_ip
from orderguard.core.phone import PhoneNumber, lookup_values, normalize
from orderguard.core.scoring import normalize_address
from orderguard.models.models import Order

logger = logging.getLogger("orderguard.drafts")

DRAFT_STATUS = "incomplete"

CONTACT_FIELDS = (
    "billing_phone", "first_name", "last_name",
    "address_1", "address_2", "city", "postcode",
    "ip_address", "device_id", "user_agent",
)


def apply_contact(order: Order, fields: Dict[str, Any]) -> None:
    """
    Copy the non-empty contact *fields* onto *order* and recompute its
    canonical phone and address keys.  Blank values never erase what an
    earlier capture already stored.
    """
    for name in CONTACT_FIELDS:
        value = fields.get(name)
        if value:
            setattr(order, name, value)

    phone = normalize(order.billing_phone or "")
    order.phone_key = phone.canonical if isinstance(phone, PhoneNumber) else None
    order.address_key = normalize_address(order.address_1 or "", order.city or "", order.postcode or "") or None


async def find_draft(
    db: AsyncSession,
    draft_id: Optional[str] = None,
    phone: str = "",
    ip: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Order]:
    """
    The customer's current draft, looked up by

        1. explicit ``draft_id`` (only while it is still incomplete)
        2. newest recent draft for the same phone identity
        3. newest recent draft from the same IP that carries no phone yet

    "Recent" is ``DRAFT_MATCH_WINDOW_HOURS``.  The IP fallback never merges
    two identified visitors who share a network.
    """
    if draft_id:
        order = await db.get(Order, draft_id)
        if order is not None and order.status == DRAFT_STATUS:
            return order

    now = now or datetime.now(timezone.utc)
    recent = and_(
        Order.status == DRAFT_STATUS,
        Order.created_at > now - timedelta(hours=settings.DRAFT_MATCH_WINDOW_HOURS),
    )

    values = list(lookup_values(phone))
    if values:
        result = await db.execute(
            select(Order)
            .where(and_(recent, or_(Order.phone_key.in_(values), Order.billing_phone.in_(values))))
            .order_by(Order.created_at.desc())
            .limit(1)
        )
        order = result.scalars().first()
        if order is not None:
            return order

    ip = canonical_ip(ip)
    if not is_placeholder_ip(ip):
        result = await db.execute(
            select(Order)
            .where(and_(recent, Order.ip_address == ip, func.coalesce(Order.billing_phone, "") == ""))
            .order_by(Order.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()
    return None


async def capture_checkout(
    db: AsyncSession,
    fields: Dict[str, Any],
    draft_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[Order], bool]:
    """
    Create or update the customer's draft from *fields*.

    Returns ``(draft, created)``.  Nothing is stored while the form holds
    neither a phone nor a name, so ``(None, False)`` comes back.
    """
    if not (fields.get("billing_phone") or fields.get("first_name") or fields.get("last_name")):
        return None, False

    draft = await find_draft(
        db,
        draft_id=draft_id,
        phone=fields.get("billing_phone") or "",
        ip=fields.get("ip_address"),
        now=now,
    )
    created = draft is None
    if created:
        draft = Order(status=DRAFT_STATUS)
        db.add(draft)

    apply_contact(draft, fields)
    if fields.get("total"):
        draft.total = fields["total"]
    await db.flush()

    logger.info("Draft %s id=%s phone=%s", "created" if created else "updated", draft.id, draft.phone_key)
    return draft, created


async def purge_stale_drafts(
    db: AsyncSession,
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[int, Optional[datetime]]:
    """
    Delete drafts older than *retention_days* (``DRAFT_RETENTION_DAYS`` by
    default; 0 keeps them forever).  Returns ``(deleted, cutoff)``.
    """
    days = settings.DRAFT_RETENTION_DAYS if retention_days is None else retention_days
    if days < 1:
        return 0, None

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    result = await db.execute(
        delete(Order).where(and_(Order.status == DRAFT_STATUS, Order.created_at < cutoff))
    )
    deleted = result.rowcount or 0
    logger.info("Purged %d drafts older than %s", deleted, cutoff.isoformat())
    return deleted, cutoff
