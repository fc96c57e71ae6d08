"""Atomic click counters and per-IP rate limiting."""
from .click_counter import ClickCounter, ConsumeResult, local_today
from .rate_limiter import MAX_WINDOW_MINUTES, RateLimiter, RateLimitResult, window_start_for

__all__ = [
    "ClickCounter",
    "ConsumeResult",
    "local_today",
    "MAX_WINDOW_MINUTES",
    "RateLimiter",
    "RateLimitResult",
    "window_start_for",
]
