from __future__ import annotations

import logging
import math
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

GLOBAL_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
SMS_LIMIT_MESSAGE = "SMS rate limit exceeded. Please try again later."

# Same defaults helmet applies to an Express app.
SECURITY_HEADERS: dict[str, str] = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@dataclass
class _Window:
    hits: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window request counter per client address.

    A client's window opens on its first request and closes ``window_seconds``
    later; request ``max_requests + 1`` inside the window is rejected with 429.
    Used as a FastAPI dependency: ``Depends(limiter)``.
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        message: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.message = message
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._next_sweep = clock() + window_seconds
        # sync dependencies run on the threadpool
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> float | None:
        """
        Count one request for ``key``.

        Returns None if allowed, otherwise the seconds until the window resets.
        """
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(hits=0, reset_at=now + self.window_seconds)
                self._windows[key] = window
            window.hits += 1
            if window.hits > self.max_requests:
                return window.reset_at - now
        return None

    def _sweep(self, now: float) -> None:
        # drop closed windows of clients that never came back
        self._windows = {k: w for k, w in self._windows.items() if w.reset_at > now}
        self._next_sweep = now + self.window_seconds

    def __call__(self, request: Request) -> None:
        key = client_address(request)
        retry_after = self.hit(key)
        if retry_after is not None:
            logger.warning(
                "gate.rate_limited",
                extra={"client": key, "path": request.url.path, "limit": self.max_requests},
            )
            raise HTTPException(
                status_code=429,
                detail=self.message,
                headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
            )


def global_rate_limit(request: Request) -> None:
    request.app.state.global_limiter(request)


def sms_rate_limit(request: Request) -> None:
    request.app.state.sms_limiter(request)


def require_api_key(request: Request) -> None:
    """
    Check the X-API-Key header against the configured client key.

    - missing header -> 401
    - wrong key, or no key configured on the server -> 403
    """
    supplied = request.headers.get(API_KEY_HEADER)
    if not supplied:
        raise HTTPException(status_code=401, detail="API key required")

    expected = request.app.state.settings.client_api_key
    if not expected or not secrets.compare_digest(supplied.encode(), expected.encode()):
        logger.warning(
            "gate.invalid_api_key",
            extra={"client": client_address(request), "path": request.url.path},
        )
        raise HTTPException(status_code=403, detail="Invalid API key")
