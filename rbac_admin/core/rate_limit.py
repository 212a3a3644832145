"""
Request rate limiting (slowapi).

Write-heavy endpoints (bulk updates, staged applies) are limited per
actor; requests without an X-Actor header share a per-client bucket.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def get_actor_key(request: Request) -> str:
    """Rate-limit key: the X-Actor header, else the client address."""
    actor = request.headers.get("x-actor")
    return f"actor:{actor}" if actor else get_remote_address(request)


limiter = Limiter(key_func=get_actor_key)
