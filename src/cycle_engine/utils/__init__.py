"""Shared helpers: clock and retry."""
from .clock import Clock, FrozenClock, ensure_utc, utc_now
from .retry import RetryBudgetExhausted, RetryPolicy, is_transient, retry_async

__all__ = [
    "Clock",
    "FrozenClock",
    "ensure_utc",
    "utc_now",
    "RetryBudgetExhausted",
    "RetryPolicy",
    "is_transient",
    "retry_async",
]
