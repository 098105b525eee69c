"""
Per-client request rate limiting.

The limiter is a plain object owned by the application (stored on app.state)
and handed to the middleware, so tests and workers can inspect or reset it.
"""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from middleware.logging_middleware import client_ip

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Try again in 1 minute."


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Fixed-window counter per client key, holding at most max_clients windows."""

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        max_clients: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_clients = max_clients
        self.clock = clock
        self._windows: "OrderedDict[str, _Window]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> bool:
        """Count one request for key. Returns False when the window is exhausted."""
        now = self.clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows.move_to_end(key)
                self._evict(now)
                return True

            if window.count >= self.max_requests:
                return False

            window.count += 1
            return True

    def _evict(self, now: float):
        # Expired windows go first, then the oldest ones until under the cap
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        while len(self._windows) > self.max_clients:
            self._windows.popitem(last=False)

    def reset(self):
        with self._lock:
            self._windows.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects requests over the per-client budget with 429."""

    def __init__(self, app, limiter: Optional[FixedWindowRateLimiter] = None, exempt_paths: Iterable[str] = ("/health",)):
        super().__init__(app)
        self.limiter = limiter
        self.exempt_paths = set(exempt_paths)

    def _limiter_for(self, request: Request) -> Optional[FixedWindowRateLimiter]:
        if self.limiter is not None:
            return self.limiter
        return getattr(request.app.state, "rate_limiter", None)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        limiter = self._limiter_for(request)
        if limiter is None or request.url.path in self.exempt_paths:
            return await call_next(request)

        key = client_ip(request)
        if not limiter.hit(key):
            logger.warning(f"Rate limit exceeded for {key} on {request.method} {request.url.path}")
            return JSONResponse(status_code=429, content={"error": RATE_LIMIT_MESSAGE})

        return await call_next(request)
