from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from order_export.core.config import get_settings


def client_address(request: Request) -> str:
    if get_settings().TRUSTED_PROXY:
        # First hop of X-Forwarded-For is the real client behind Nginx/F5
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return get_remote_address(request)


def export_rate_key(request: Request) -> str:
    """
    Bucket key for export limits.
    Authenticated callers are limited per user, everyone else per client address.
    """
    user_id = request.headers.get("X-User-ID", "").strip()
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_address(request)}"


def export_rate_limit() -> str:
    """Resolved per request so the limit follows the active settings."""
    return get_settings().EXPORT_RATE_LIMIT


limiter = Limiter(key_func=export_rate_key)
