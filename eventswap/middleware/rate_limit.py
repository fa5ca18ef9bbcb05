"""
EventSwap Platform - Rate Limiting Configuration
Uses slowapi to enforce per-IP rate limits.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from eventswap.config import get_settings

# ── Global rate limiter (keyed by client IP) ──
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["60/minute"],
    storage_uri="memory://",  # production: use Redis
    enabled=get_settings().RATE_LIMIT_ENABLED,
)

# ── Rate limit strings for specific endpoint tiers ──
RATE_LIMIT_AUTH = "10/minute"       # Login: prevent brute force
RATE_LIMIT_WRITE = "30/minute"      # Offers and transactions
RATE_LIMIT_CHAT = "20/minute"       # Chat messages
