"""
OrderGuard — Allow-list (whitelist)

Administrator-maintained exemptions.  Phones are matched by identity (any
shared variant), IPs by exact address or CIDR range.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Tuple, Union

from orderguard.core.phone import PhoneNumber, normalize, variants

logger = logging.getLogger("orderguard.allowlist")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class AllowList:
    phone_values: FrozenSet[str] = frozenset()
    ips: FrozenSet[str] = frozenset()
    networks: Tuple[IPNetwork, ...] = field(default_factory=tuple)

    @classmethod
    def from_entries(cls, phones: Iterable[str] = (), ips: Iterable[str] = ()) -> "AllowList":
        """
        Build from raw administrator input.  Blank lines are ignored; phones
        that do not normalise are kept verbatim so exact matches still work.
        """
        phone_values = set()
        for raw in phones:
            raw = (raw or "").strip()
            if not raw:
                continue
            result = normalize(raw)
            if isinstance(result, PhoneNumber):
                phone_values |= variants(result)
            else:
                phone_values.add(raw)

        exact = set()
        networks = []
        for raw in ips:
            raw = (raw or "").strip()
            if not raw:
                continue
            if "/" in raw:
                try:
                    networks.append(ipaddress.ip_network(raw, strict=False))
                except ValueError:
                    logger.warning("Ignoring malformed CIDR whitelist entry: %s", raw)
            else:
                exact.add(raw)

        return cls(
            phone_values=frozenset(phone_values),
            ips=frozenset(exact),
            networks=tuple(networks),
        )

    @classmethod
    def from_strings(cls, entries: Iterable[str]) -> "AllowList":
        """Split a mixed set of entries into phones and IPs."""
        phones, ips = [], []
        for entry in entries:
            entry = (entry or "").strip()
            if not entry:
                continue
            if _looks_like_ip(entry):
                ips.append(entry)
            else:
                phones.append(entry)
        return cls.from_entries(phones=phones, ips=ips)

    def contains_phone(self, phone: PhoneNumber) -> bool:
        return not variants(phone).isdisjoint(self.phone_values)

    def contains_ip(self, ip: str) -> bool:
        if not ip:
            return False
        if ip in self.ips:
            return True
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(addr.version == net.version and addr in net for net in self.networks)

    def __bool__(self) -> bool:
        return bool(self.phone_values or self.ips or self.networks)


def _looks_like_ip(value: str) -> bool:
    try:
        if "/" in value:
            ipaddress.ip_network(value, strict=False)
        else:
            ipaddress.ip_address(value)
        return True
    except ValueError:
        return False
