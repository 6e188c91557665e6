"""
OrderGuard — Rate limiting

Shared slowapi limiter, keyed on the resolved client address so that calls
relayed through a CDN are not all counted against the CDN's IP.
"""

from fastapi import Request
from slowapi import Limiter

from orderguard.config import settings
from orderguard.services.network import resolve_client_ip


def client_ip_key(request: Request) -> str:
    peer = request.client.host if request.client else None
    return resolve_client_ip(request.headers, peer)


limiter = Limiter(key_func=client_ip_key, enabled=settings.RATE_LIMIT_ENABLED)
