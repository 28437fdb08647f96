"""Shared rate limiter for the mutating reconciliation routes.

In-memory storage: limits are per worker process.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.rate_limit_enabled,
)
