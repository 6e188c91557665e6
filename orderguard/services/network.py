"""
OrderGuard — Client network helpers

Client IP resolution behind CDNs / reverse proxies, and the header-based
proxy/VPN heuristic used by the checkout guard.
"""

import ipaddress
from typing import Mapping, Optional

UNKNOWN_IP = "0.0.0.0"

# Checked in order; the first header carrying a valid address wins.
CLIENT_IP_HEADERS = (
    "cf-connecting-ip",
    "x-real-ip",
    "x-forwarded-for",
    "x-forwarded",
    "x-cluster-client-ip",
    "forwarded-for",
    "forwarded",
)

PROXY_HEADERS = (
    "via",
    "proxy-connection",
    "xproxy-connection",
    "x-proxy-id",
    "proxy-authorization",
)

# Present when the request legitimately passed through a CDN or reverse
# proxy, which also sets Via and friends.
CDN_HEADERS = (
    "cf-connecting-ip",
    "cf-ray",
    "fastly-client-ip",
    "cloudfront-forwarded-proto",
    "true-client-ip",
    "x-real-ip",
    "x-sucuri-clientip",
)


def _lower(headers: Mapping[str, str]) -> dict:
    return {k.lower(): v for k, v in headers.items()}


def parse_ip(value: Optional[str]) -> Optional[str]:
    """Return *value* as a normalised IP string, or None when it is not one."""
    if not value:
        return None
    value = value.strip().strip('"')
    if value.startswith("["):                       # [v6]:port
        value = value[1:].split("]", 1)[0]
    elif value.count(":") == 1:                     # v4:port
        value = value.split(":", 1)[0]
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def _candidate(header: str, raw: str) -> Optional[str]:
    first = raw.split(",")[0].strip()
    if header == "forwarded":
        # RFC 7239: for=192.0.2.60;proto=http;by=203.0.113.43
        for part in first.split(";"):
            key, _, val = part.strip().partition("=")
            if key.lower() == "for":
                return parse_ip(val)
        return None
    return parse_ip(first)


def resolve_client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Best guess at the customer's address: forwarding headers first, then the
    socket peer, else ``0.0.0.0`` (which the match engine ignores).
    """
    lowered = _lower(headers)
    for header in CLIENT_IP_HEADERS:
        raw = lowered.get(header)
        if raw:
            ip = _candidate(header, raw)
            if ip:
                return ip
    return parse_ip(peer) or UNKNOWN_IP


def behind_known_cdn(headers: Mapping[str, str]) -> bool:
    lowered = _lower(headers)
    return any(lowered.get(h) for h in CDN_HEADERS)


def has_proxy_headers(headers: Mapping[str, str]) -> bool:
    lowered = _lower(headers)
    if behind_known_cdn(lowered):
        return False
    return any(lowered.get(h) for h in PROXY_HEADERS)
