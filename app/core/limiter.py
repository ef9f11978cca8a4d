from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.settings import settings

# Coarse per-IP ceiling across every route; recovery operations add their own tiers on top.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.general_rate_limit],
    storage_uri=settings.rate_limit_storage_uri,
    headers_enabled=False,
)

__all__ = ["limiter"]
