"""Rate limiting configuration using slowapi.

Module-level Limiter imported by routers for per-endpoint limits and wired
into the FastAPI app in main.py.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from hrms.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)
