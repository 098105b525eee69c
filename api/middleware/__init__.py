"""
Middleware package for the API.
"""
from middleware.logging_middleware import (
    ContextualLogger,
    RequestLoggingMiddleware,
    bind_user_id,
    get_logger,
    get_request_id,
    get_user_id,
)
from middleware.rate_limit_middleware import FixedWindowRateLimiter, RateLimitMiddleware

__all__ = [
    "RequestLoggingMiddleware",
    "RateLimitMiddleware",
    "FixedWindowRateLimiter",
    "ContextualLogger",
    "bind_user_id",
    "get_logger",
    "get_request_id",
    "get_user_id",
]
