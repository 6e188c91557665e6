"""
OrderGuard — Temporal Match Engine

Answers one question: *has this identity (phone or IP) placed a live order
since the cutoff?*  The order store is an injected collaborator; this module
only decides what to ask it and how to read the answer.

Failure policy is fail-open: a store error is logged and read as "no match",
so a broken lookup can never block a legitimate checkout.
"""

import enum
import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, List, Optional, Protocol, Set, Tuple, Union

from orderguard.core.allowlist import AllowList
from orderguard.core.phone import InvalidPhone, PhoneNumber, variants

logger = logging.getLogger("orderguard.matching")

# Orders in these states never count towards a match.
EXCLUDED_STATUSES: FrozenSet[str] = frozenset({"cancelled", "failed", "trash"})

Identity = Union[PhoneNumber, InvalidPhone, str, None]


class MatchField(str, enum.Enum):
    PHONE = "phone"
    IP = "ip"
    ADDRESS = "address"
    DEVICE = "device"


class OrderRecordStore(Protocol):
    """Read side of the order store used by matching and scoring."""

    async def count_recent(
        self,
        field: MatchField,
        values: Set[str],
        since: datetime,
        exclude_ids: Set[str],
        excluded_statuses: Set[str],
    ) -> int:
        ...

    async def recent_names(
        self,
        since: datetime,
        exclude_phone_values: Set[str],
        excluded_statuses: Set[str],
        limit: int,
        exclude_ids: Set[str] = frozenset(),
    ) -> List[Tuple[str, str]]:
        ...


@dataclass(frozen=True)
class MatchWindow:
    cutoff: datetime
    exclusion: FrozenSet[str] = frozenset()

    @classmethod
    def lookback(
        cls,
        duration: timedelta,
        now: Optional[datetime] = None,
        exclude: Iterable[str] = (),
    ) -> "MatchWindow":
        now = now or datetime.now(timezone.utc)
        return cls(cutoff=now - duration, exclusion=frozenset(str(i) for i in exclude if i))


@dataclass(frozen=True)
class MatchOverrides:
    whitelist: FrozenSet[str] = frozenset()
    trusted: bool = False
    allowlist: Optional[AllowList] = None   # pre-parsed form of *whitelist*

    def resolved_allowlist(self) -> AllowList:
        if self.allowlist is not None:
            return self.allowlist
        return AllowList.from_strings(self.whitelist)


def canonical_ip(ip: Optional[str]) -> str:
    """Compressed lower-case form of *ip*; unparsable input comes back stripped."""
    ip = (ip or "").strip()
    try:
        return str(ipaddress.ip_address(ip))
    except ValueError:
        return ip


def is_placeholder_ip(ip: Optional[str]) -> bool:
    """Empty, unspecified or loopback addresses mean "IP unknown"."""
    if not ip or not ip.strip():
        return True
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return addr.is_unspecified or addr.is_loopback


def is_placeholder_identity(identity: Identity) -> bool:
    if identity is None or isinstance(identity, InvalidPhone):
        return True
    if isinstance(identity, PhoneNumber):
        return False
    return is_placeholder_ip(identity)


async def has_recent_match(
    identity: Identity,
    window: MatchWindow,
    overrides: MatchOverrides,
    store: OrderRecordStore,
) -> bool:
    """
    True iff *store* holds a non-excluded order for *identity* newer than
    ``window.cutoff`` whose ID is not in ``window.exclusion``.

    Trusted callers, whitelisted identities and placeholder identities
    short-circuit to False without touching the store.
    """
    if overrides.trusted:
        return False
    if is_placeholder_identity(identity):
        return False

    allowlist = overrides.resolved_allowlist()
    if isinstance(identity, PhoneNumber):
        if allowlist.contains_phone(identity):
            return False
        field, values = MatchField.PHONE, set(variants(identity))
    else:
        identity = canonical_ip(identity)
        if allowlist.contains_ip(identity):
            return False
        field, values = MatchField.IP, {identity}

    try:
        count = await store.count_recent(
            field,
            values,
            since=window.cutoff,
            exclude_ids=set(window.exclusion),
            excluded_statuses=set(EXCLUDED_STATUSES),
        )
    except Exception as exc:
        logger.error(
            "Order store lookup failed field=%s, treating as no match: %s",
            field.value, exc,
        )
        return False

    if count > 0:
        logger.info("Recent %s match found (count=%d)", field.value, count)
    return count > 0
