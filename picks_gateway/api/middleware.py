"""Request tracing and per-client rate limiting for the gateway API.

Every tracked request draws from a general per-client token bucket. Routes
that check a credential (signed challenges, the admin PIN) also draw from a
much smaller one, since neither check has a lockout of its own and a short
PIN falls quickly to a client allowed several guesses a second.
"""

from __future__ import annotations

import math
import re
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Collection
from dataclasses import dataclass, field

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from picks_gateway.api.metrics import RATE_LIMIT_REJECTIONS, REQUEST_COUNT, REQUEST_LATENCY

log = structlog.get_logger()

UNTRACKED_PATHS = frozenset({"/health", "/health/ready", "/metrics"})

# Caller-supplied IDs end up in every log line of the request
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID, harden the response, record metrics.

    A well-formed ``X-Request-ID`` from the caller is reused; anything else
    is replaced with a fresh UUID4 hex. Paths under ``redact_prefix`` (the
    admin console) are reported as ``/mein/<admin>/...`` so the console's
    location never reaches logs or metric labels, and unrouted paths share
    one ``unmatched`` label.
    """

    def __init__(self, app: object, redact_prefix: str | None = None) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._redact_prefix = redact_prefix

    def endpoint_label(self, path: str, status: int) -> str:
        if status == 404:
            return "unmatched"
        prefix = self._redact_prefix
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            return "/mein/<admin>" + path[len(prefix):]
        return path

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("x-request-id", "")
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            for header, value in _SECURITY_HEADERS.items():
                response.headers.setdefault(header, value)
            if request.url.path in UNTRACKED_PATHS:
                return response

            duration_s = time.monotonic() - start
            endpoint = self.endpoint_label(request.url.path, response.status_code)
            REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
            REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration_s)
            log.info(
                "request",
                method=request.method,
                endpoint=endpoint,
                status=response.status_code,
                duration_ms=round(duration_s * 1000, 1),
                client=client_key(request),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


@dataclass
class TokenBucket:
    """Token bucket that can say how long until its next token."""

    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = field(init=False)
    updated: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.tokens = self.capacity

    def refill(self, now: float) -> None:
        self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.refill_rate)
        self.updated = now

    def take(self, now: float) -> float:
        """Spend one token. Returns 0.0, or the seconds until one is available."""
        self.refill(now)
        if self.tokens >= 1:
            self.tokens -= 1
            return 0.0
        return (1 - self.tokens) / self.refill_rate

    def full_at(self) -> float:
        return self.updated + (self.capacity - self.tokens) / self.refill_rate


class RateLimiter:
    """Token buckets keyed by client, least recently used evicted first.

    A bucket that would have refilled completely is indistinguishable from a
    new one, so those are dropped whenever the table is pruned.
    """

    def __init__(self, capacity: float = 30, rate: float = 5, max_clients: int = 10_000) -> None:
        if capacity < 1 or rate <= 0:
            raise ValueError("rate limiter needs capacity >= 1 and a positive rate")
        self.capacity = capacity
        self.rate = rate
        self.max_clients = max_clients
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def retry_after(self, key: str, now: float | None = None) -> float:
        """Charge ``key`` one request. Returns 0.0 when allowed, else the wait."""
        now = time.monotonic() if now is None else now
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self.max_clients:
                self.prune(now)
            bucket = self._buckets[key] = TokenBucket(self.capacity, self.rate, updated=now)
        else:
            self._buckets.move_to_end(key)
        return bucket.take(now)

    def prune(self, now: float) -> None:
        for key in [k for k, b in self._buckets.items() if b.full_at() <= now]:
            del self._buckets[key]
        while len(self._buckets) >= self.max_clients:
            self._buckets.popitem(last=False)


def _too_many_requests(wait: float) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests"},
        headers={"Retry-After": str(max(1, math.ceil(wait)))},
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply the general limiter, plus the credential limiter on login POSTs."""

    def __init__(
        self,
        app: object,
        limiter: RateLimiter,
        credential_limiter: RateLimiter | None = None,
        credential_paths: Collection[str] = (),
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._limiter = limiter
        self._credential_limiter = credential_limiter
        self._credential_paths = frozenset(credential_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in UNTRACKED_PATHS:
            return await call_next(request)

        client = client_key(request)
        if (
            self._credential_limiter is not None
            and request.method == "POST"
            and path in self._credential_paths
        ):
            wait = self._credential_limiter.retry_after(client)
            if wait:
                RATE_LIMIT_REJECTIONS.labels(scope="credential").inc()
                log.warning("credential_rate_limited", client=client, retry_after=round(wait, 1))
                return _too_many_requests(wait)

        wait = self._limiter.retry_after(client)
        if wait:
            RATE_LIMIT_REJECTIONS.labels(scope="general").inc()
            log.warning("rate_limited", client=client, retry_after=round(wait, 1))
            return _too_many_requests(wait)
        return await call_next(request)
