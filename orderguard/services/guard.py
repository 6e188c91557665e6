"""
OrderGuard — Checkout Guard

Runs every pre-order check for one checkout attempt and stops at the first
blocking finding:

    1. blocklist (phone / IP / device)            → blocklist_<type>
    2. proxy headers         (VPN_BLOCK_ENABLED)  → vpn_proxy
    3. BD phone format       (PHONE_VALIDATION)   → invalid_phone
    4. trusted customer / whitelisted phone or IP → allowed, nothing else runs
    5. phone cooldown, then IP cooldown           → phone_cooldown / ip_cooldown
    6. address limit, then similar name           → address_limit / similar_name

Any unexpected error produces an *allowed* decision.  A broken guard must
never stop a legitimate customer from ordering.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import settings
from orderguard.core.allowlist import AllowList
from orderguard.core.matching import (
    MatchOverrides, MatchWindow, OrderRecordStore, canonical_ip, has_recent_match,
)
from orderguard.core.phone import PhoneNumber, clean, is_valid_bd_phone
from orderguard.core.scoring import FraudSignal, OrderFacts, ScoringPolicy, SignalKind, score
from orderguard.models.models import BlockedAttempt
from orderguard.services.blocklist import find_block
from orderguard.services.errors import DatabaseError
from orderguard.services.network import has_proxy_headers
from orderguard.services.observability import Metrics, log_blocked_attempt
from orderguard.services.order_store import SqlOrderStore
from orderguard.services.scorer import collect_recent_facts

logger = logging.getLogger("orderguard.guard")


# ===========================================================================
# Policy
# ===========================================================================
@dataclass(frozen=True)
class GuardMessages:
    phone_cooldown: str = "You have already ordered from this number. Please try again in %d hours."
    ip_cooldown: str = "You have already placed an order. Please try again in %d hours."
    address_limit: str = "Too many orders to this address. Please contact us."
    similar_name: str = "Suspicious order pattern detected."
    invalid_phone: str = "Please enter a valid Bangladeshi mobile number (e.g. 01712345678)."
    blocked_phone: str = "Sorry, orders from this phone number cannot be accepted."
    blocked_network: str = "Sorry, orders from your network cannot be accepted."
    vpn: str = "Orders cannot be placed through a VPN or proxy."

    @classmethod
    def from_settings(cls, settings) -> "GuardMessages":
        return cls(
            phone_cooldown=settings.PHONE_COOLDOWN_MESSAGE,
            ip_cooldown=settings.IP_COOLDOWN_MESSAGE,
            address_limit=settings.ADDRESS_BLOCK_MESSAGE,
            similar_name=settings.SIMILAR_NAME_MESSAGE,
            invalid_phone=settings.PHONE_VALIDATION_MESSAGE,
            blocked_phone=settings.BLOCKED_PHONE_MESSAGE,
            blocked_network=settings.BLOCKED_NETWORK_MESSAGE,
            vpn=settings.VPN_BLOCK_MESSAGE,
        )


@dataclass(frozen=True)
class GuardPolicy:
    phone_cooldown_enabled: bool = True
    phone_cooldown: timedelta = timedelta(hours=24)
    ip_cooldown_enabled: bool = True
    ip_cooldown: timedelta = timedelta(hours=1)

    whitelist_enabled: bool = False
    allowlist: AllowList = field(default_factory=AllowList)
    trusted_min_orders: int = 3

    phone_validation: bool = True
    vpn_block: bool = False

    messages: GuardMessages = field(default_factory=GuardMessages)
    scoring: ScoringPolicy = field(default_factory=ScoringPolicy)

    @classmethod
    def from_settings(cls, settings) -> "GuardPolicy":
        return cls(
            phone_cooldown_enabled=settings.PHONE_COOLDOWN_ENABLED,
            phone_cooldown=timedelta(minutes=settings.PHONE_COOLDOWN_MINUTES),
            ip_cooldown_enabled=settings.IP_COOLDOWN_ENABLED,
            ip_cooldown=timedelta(minutes=settings.IP_COOLDOWN_MINUTES),
            whitelist_enabled=settings.WHITELIST_ENABLED,
            allowlist=AllowList.from_entries(
                phones=settings.WHITELISTED_PHONES,
                ips=settings.WHITELISTED_IPS,
            ),
            trusted_min_orders=settings.TRUSTED_CUSTOMER_MIN_ORDERS,
            phone_validation=settings.PHONE_VALIDATION_ENABLED,
            vpn_block=settings.VPN_BLOCK_ENABLED,
            messages=GuardMessages.from_settings(settings),
            scoring=ScoringPolicy.from_settings(settings),
        )


def get_guard_policy() -> GuardPolicy:
    """FastAPI dependency; override in tests to pin a policy."""
    return GuardPolicy.from_settings(settings)


def _hours(window: timedelta) -> int:
    return max(1, math.ceil(window.total_seconds() / 3600))


def _format(message: str, window: timedelta) -> str:
    return message % _hours(window) if "%d" in message else message


# ===========================================================================
# Attempt & decision
# ===========================================================================
@dataclass(frozen=True)
class CheckoutAttempt:
    billing_phone: str = ""
    first_name: str = ""
    last_name: str = ""
    address_1: str = ""
    city: str = ""
    postcode: str = ""
    ip_address: str = ""
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    customer_order_count: int = 0
    headers: Mapping[str, str] = field(default_factory=dict)
    draft_id: Optional[str] = None          # the customer's own captured draft

    @property
    def facts(self) -> OrderFacts:
        return OrderFacts(
            billing_phone=self.billing_phone,
            ip_address=self.ip_address,
            first_name=self.first_name,
            last_name=self.last_name,
            address_1=self.address_1,
            city=self.city,
            postcode=self.postcode,
        )


@dataclass(frozen=True)
class CheckoutDecision:
    allowed: bool = True
    blocked_by: Optional[str] = None
    message: Optional[str] = None
    signals: List[FraudSignal] = field(default_factory=list)

    @classmethod
    def block(cls, blocked_by: str, message: str, signal: FraudSignal) -> "CheckoutDecision":
        return cls(allowed=False, blocked_by=blocked_by, message=message, signals=[signal])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "blocked_by": self.blocked_by,
            "message": self.message,
            "signals": [s.to_dict() for s in self.signals],
        }


# ===========================================================================
# Evaluation
# ===========================================================================
async def evaluate_checkout(
    db: AsyncSession,
    attempt: CheckoutAttempt,
    policy: GuardPolicy,
    now: Optional[datetime] = None,
    store: Optional[OrderRecordStore] = None,
) -> CheckoutDecision:
    """
    Decide whether *attempt* may become an order.  Never raises.

    Lookups run inside a SAVEPOINT so a failed statement cannot poison the
    request transaction the blocked-attempt row is written in.
    """
    try:
        async with db.begin_nested():
            return await _evaluate(
                db, attempt, policy, now or datetime.now(timezone.utc), store or SqlOrderStore(db),
            )
    except Exception as exc:
        logger.error("Checkout evaluation failed, allowing checkout: %s", exc, exc_info=True)
        Metrics.checkout_decisions_total.labels(outcome="error").inc()
        return CheckoutDecision()


async def _evaluate(
    db: AsyncSession,
    attempt: CheckoutAttempt,
    policy: GuardPolicy,
    now: datetime,
    store: OrderRecordStore,
) -> CheckoutDecision:
    messages = policy.messages
    facts = attempt.facts
    phone = facts.phone
    ip = canonical_ip(attempt.ip_address)

    # ── 1. Blocklist ───────────────────────────────────────────────────────
    entry = await find_block(db, phone=attempt.billing_phone, ip=ip, device_id=attempt.device_id)
    if entry is not None:
        return CheckoutDecision.block(
            f"blocklist_{entry.type}",
            messages.blocked_phone if entry.type == "phone" else messages.blocked_network,
            FraudSignal(SignalKind.BLOCKLISTED, detail=f"{entry.type} {entry.value} is blocklisted", blocking=True),
        )

    # ── 2. Proxy / VPN headers ─────────────────────────────────────────────
    if policy.vpn_block and has_proxy_headers(attempt.headers):
        return CheckoutDecision.block(
            "vpn_proxy",
            messages.vpn,
            FraudSignal(SignalKind.PROXY, detail="proxy headers present", blocking=True),
        )

    # ── 3. Phone format ────────────────────────────────────────────────────
    # An empty phone is the storefront's required-field problem, not ours.
    if policy.phone_validation and clean(attempt.billing_phone) and not is_valid_bd_phone(attempt.billing_phone):
        return CheckoutDecision.block(
            "invalid_phone",
            messages.invalid_phone,
            FraudSignal(SignalKind.INVALID_PHONE, detail=getattr(phone, "reason", ""), blocking=True),
        )

    # ── 4. Trusted / whitelisted ───────────────────────────────────────────
    if attempt.customer_order_count >= policy.trusted_min_orders:
        logger.debug("Trusted customer (%d orders), skipping checks", attempt.customer_order_count)
        return CheckoutDecision()

    allowlist = policy.allowlist if policy.whitelist_enabled else AllowList()
    if allowlist:
        if isinstance(phone, PhoneNumber) and allowlist.contains_phone(phone):
            return CheckoutDecision()
        if allowlist.contains_ip(ip):
            return CheckoutDecision()

    # ── 5. Cooldowns ───────────────────────────────────────────────────────
    overrides = MatchOverrides(allowlist=allowlist)
    own = [attempt.draft_id] if attempt.draft_id else []
    if policy.phone_cooldown_enabled:
        window = MatchWindow.lookback(policy.phone_cooldown, now=now, exclude=own)
        if await has_recent_match(phone, window, overrides, store):
            return CheckoutDecision.block(
                "phone_cooldown",
                _format(messages.phone_cooldown, policy.phone_cooldown),
                FraudSignal(SignalKind.PHONE_COOLDOWN, detail=f"order from {phone} within cooldown", blocking=True),
            )

    if policy.ip_cooldown_enabled:
        window = MatchWindow.lookback(policy.ip_cooldown, now=now, exclude=own)
        if await has_recent_match(ip, window, overrides, store):
            return CheckoutDecision.block(
                "ip_cooldown",
                _format(messages.ip_cooldown, policy.ip_cooldown),
                FraudSignal(SignalKind.IP_COOLDOWN, detail=f"order from {ip} within cooldown", blocking=True),
            )

    # ── 6. Address limit / similar name ────────────────────────────────────
    scoring = policy.scoring
    if scoring.address_detection or scoring.name_similarity:
        recent = await collect_recent_facts(
            store, facts, scoring, exclude_ids=own, now=now, include_percentage=False,
        )
        _, signals = score(facts, recent, scoring)
        for signal in signals:
            if not signal.blocking:
                continue
            if signal.kind is SignalKind.SAME_ADDRESS:
                return CheckoutDecision.block("address_limit", messages.address_limit, signal)
            if signal.kind is SignalKind.SIMILAR_NAME:
                return CheckoutDecision.block("similar_name", messages.similar_name, signal)

    return CheckoutDecision()


# ===========================================================================
# Blocked-attempt log
# ===========================================================================
async def record_blocked_attempt(
    db: AsyncSession,
    attempt: CheckoutAttempt,
    decision: CheckoutDecision,
) -> BlockedAttempt:
    """Persist the attempt; raises :class:`DatabaseError` when the write fails."""
    row = BlockedAttempt(
        type=decision.blocked_by,
        phone=attempt.billing_phone or None,
        name=f"{attempt.first_name} {attempt.last_name}".strip() or None,
        ip_address=attempt.ip_address or None,
        user_agent=attempt.user_agent,
        detail="; ".join(s.detail for s in decision.signals if s.detail) or None,
        extra={
            "device_id": attempt.device_id,
            "draft_id": attempt.draft_id,
            "address": ", ".join(p for p in (attempt.address_1, attempt.city, attempt.postcode) if p),
            "signals": [s.to_dict() for s in decision.signals],
        },
    )
    try:
        async with db.begin_nested():
            db.add(row)
            await db.flush()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Could not record blocked attempt type={decision.blocked_by}: {exc}") from exc
    log_blocked_attempt(decision.blocked_by, attempt.billing_phone, attempt.ip_address)
    return row
