"""Shared rate limiter for the offline routes.

Terminals in one shop usually sit behind a single public IP, so limits are
keyed by device when the request names one, then by user, then by IP.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from possync.core.config import settings

DEVICE_HEADER = "X-Device-ID"


def get_rate_limit_key(request: Request) -> str:
    device_id = request.headers.get(DEVICE_HEADER) or request.query_params.get("device_id")
    if device_id:
        return f"device:{device_id}"

    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        from possync.core.security import decode_access_token

        payload = decode_access_token(auth.split(" ", 1)[1])
        if payload and payload.get("sub"):
            return f"user:{payload['sub']}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_rate_limit_key, enabled=settings.rate_limit_enabled)
