"""
OrderGuard — Duplicate / Fraud Scorer

Pure function over facts gathered from the order store:

    same phone in lookback    → +WEIGHT_SAME_PHONE   (phone_cooldown)
    same client IP            → +WEIGHT_SAME_IP      (ip_cooldown)
    same normalised address   → +WEIGHT_SAME_ADDRESS (same_address)
    ─────────────────────────────────────────────
    percentage                = min(sum, 100)

Two further findings raise *blocking* signals without touching the
percentage:

    address used ≥ MAX_ORDERS_PER_ADDRESS times in its window → same_address
    full name ≥ NAME_SIMILARITY_THRESHOLD % similar to a recent
    order placed from a different phone                      → similar_name
"""

import enum
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from orderguard.core.phone import PhoneNumber, PhoneResult, normalize, same_identity
from orderguard.core.similarity import name_similarity, normalize_name

MAX_PERCENTAGE = 100
MIN_NAME_LENGTH = 3

_ADDRESS_PUNCTUATION = re.compile(r"""[!"#$%&'()*+,\-./:;<=>?@\[\\\]^_`{}~।]""")
_WHITESPACE = re.compile(r"\s+")


class SignalKind(str, enum.Enum):
    PHONE_COOLDOWN = "phone_cooldown"
    IP_COOLDOWN = "ip_cooldown"
    SAME_ADDRESS = "same_address"
    SIMILAR_NAME = "similar_name"
    BLOCKLISTED = "blocklisted"
    INVALID_PHONE = "invalid_phone"
    PROXY = "proxy"


@dataclass(frozen=True)
class FraudSignal:
    kind: SignalKind
    weight: int = 0
    detail: str = ""
    blocking: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass(frozen=True)
class ScoringPolicy:
    lookback_hours: int = 24
    weight_same_phone: int = 40
    weight_same_ip: int = 30
    weight_same_address: int = 30

    address_detection: bool = True
    max_orders_per_address: int = 5
    address_window_hours: int = 24

    name_similarity: bool = True
    name_similarity_threshold: int = 80
    name_check_window_hours: int = 24
    name_check_limit: int = 100

    @classmethod
    def from_settings(cls, settings) -> "ScoringPolicy":
        return cls(
            lookback_hours=settings.DUPLICATE_LOOKBACK_HOURS,
            weight_same_phone=settings.WEIGHT_SAME_PHONE,
            weight_same_ip=settings.WEIGHT_SAME_IP,
            weight_same_address=settings.WEIGHT_SAME_ADDRESS,
            address_detection=settings.ADDRESS_DETECTION_ENABLED,
            max_orders_per_address=settings.MAX_ORDERS_PER_ADDRESS,
            address_window_hours=settings.ADDRESS_WINDOW_HOURS,
            name_similarity=settings.NAME_SIMILARITY_ENABLED,
            name_similarity_threshold=settings.NAME_SIMILARITY_THRESHOLD,
            name_check_window_hours=settings.NAME_CHECK_WINDOW_HOURS,
            name_check_limit=settings.NAME_CHECK_LIMIT,
        )


def normalize_address(address_1: str = "", city: str = "", postcode: str = "") -> str:
    """
    Comparable address key: ``address_1|city|postcode``, lower-cased, with
    punctuation removed and whitespace collapsed.  Empty parts are skipped.
    """
    parts = []
    for part in (address_1, city, postcode):
        part = _ADDRESS_PUNCTUATION.sub("", (part or "").lower())
        part = _WHITESPACE.sub(" ", part).strip()
        if part:
            parts.append(part)
    return "|".join(parts)


@dataclass(frozen=True)
class OrderFacts:
    """The order under evaluation, as submitted."""
    order_id: Optional[str] = None
    billing_phone: str = ""
    ip_address: str = ""
    first_name: str = ""
    last_name: str = ""
    address_1: str = ""
    city: str = ""
    postcode: str = ""

    @property
    def phone(self) -> PhoneResult:
        return normalize(self.billing_phone)

    @property
    def full_name(self) -> str:
        return normalize_name(f"{self.first_name} {self.last_name}")

    @property
    def address_key(self) -> str:
        return normalize_address(self.address_1, self.city, self.postcode)


@dataclass(frozen=True)
class RecentOrderFacts:
    """Counts and rows pulled from the order store for one evaluation."""
    same_phone: int = 0
    same_ip: int = 0
    same_address: int = 0
    address_window_count: int = 0
    recent_names: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


def _similar_name_signal(
    order: OrderFacts,
    recent: RecentOrderFacts,
    threshold: int,
) -> Optional[FraudSignal]:
    name = order.full_name
    if len(name) < MIN_NAME_LENGTH:
        return None
    phone = order.phone

    for other_name, other_phone in recent.recent_names:
        other = normalize(other_phone)
        if isinstance(phone, PhoneNumber) and isinstance(other, PhoneNumber):
            if same_identity(phone, other):
                continue
        percent = name_similarity(name, other_name)
        if percent >= threshold:
            return FraudSignal(
                kind=SignalKind.SIMILAR_NAME,
                detail=f"'{name}' is {percent:.0f}% similar to '{normalize_name(other_name)}'",
                blocking=True,
            )
    return None


def score(
    order: OrderFacts,
    recent: RecentOrderFacts,
    policy: ScoringPolicy = ScoringPolicy(),
) -> Tuple[int, List[FraudSignal]]:
    """Return ``(percentage, signals)`` for *order* given *recent* store facts."""
    total = 0
    signals: List[FraudSignal] = []

    if recent.same_phone > 0:
        total += policy.weight_same_phone
        signals.append(FraudSignal(
            kind=SignalKind.PHONE_COOLDOWN,
            weight=policy.weight_same_phone,
            detail=f"{recent.same_phone} orders with same phone",
        ))

    if recent.same_ip > 0:
        total += policy.weight_same_ip
        signals.append(FraudSignal(
            kind=SignalKind.IP_COOLDOWN,
            weight=policy.weight_same_ip,
            detail=f"{recent.same_ip} orders with same IP",
        ))

    if recent.same_address > 0:
        total += policy.weight_same_address
        signals.append(FraudSignal(
            kind=SignalKind.SAME_ADDRESS,
            weight=policy.weight_same_address,
            detail=f"{recent.same_address} orders with same address",
        ))

    if (
        policy.address_detection
        and order.address_key
        and recent.address_window_count >= policy.max_orders_per_address
    ):
        signals.append(FraudSignal(
            kind=SignalKind.SAME_ADDRESS,
            detail=(
                f"{recent.address_window_count} orders to this address in "
                f"{policy.address_window_hours}h (max {policy.max_orders_per_address})"
            ),
            blocking=True,
        ))

    if policy.name_similarity:
        signal = _similar_name_signal(order, recent, policy.name_similarity_threshold)
        if signal is not None:
            signals.append(signal)

    return min(total, MAX_PERCENTAGE), signals


def describe(signals: List[FraudSignal]) -> str:
    """Human-readable one-liner, e.g. for an order-list tooltip."""
    return ", ".join(s.detail for s in signals if s.detail)
