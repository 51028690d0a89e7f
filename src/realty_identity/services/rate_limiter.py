"""
realty_identity/services/rate_limiter.py — Per-route-class sliding windows.

Keys are ``(route_class, ip, subject)``. Each key keeps the timestamps of
its accepted hits inside the window; a hit is admitted while fewer than
``limit`` remain. Denied hits are not recorded and mutate nothing.

Routes count every request against the caller's IP. Routes that name an
account (login email, verified phone) also count it against that subject
on its own, whatever IP the request comes from.

The caller's IP is the socket peer. ``X-Forwarded-For`` is read only when
the peer is one of ``trusted_proxies``; the client is then the right-most
address that is not itself a trusted proxy.

The store is pluggable (``RateLimitStore``); the bundled one is per process.
Counters are best-effort: several workers each keep their own.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Callable, Iterable, Protocol

from fastapi import Request

from realty_identity.config import DEFAULT_RATE_LIMITS, RateLimitRule
from realty_identity.exceptions import RateLimitedError

logger = logging.getLogger(__name__)

ANY_IP = "*"


def client_ip(request: Request, trusted_proxies: frozenset[str] = frozenset()) -> str:
    """Client IP: the socket peer, or the forwarded address behind a trusted proxy."""
    peer = request.client.host if request.client else "unknown"
    if peer not in trusted_proxies:
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


class RateLimitStore(Protocol):
    def try_acquire(self, key: str, limit: int, window_seconds: int, now: float) -> float | None:
        """Records a hit and returns None, or returns seconds until a slot frees up."""
        ...


class MemoryRateLimitStore:
    """Sliding-window log kept in process memory."""

    def __init__(self, max_keys: int = 100_000):
        self._hits: dict[str, deque[float]] = {}
        self._max_keys = max_keys

    def try_acquire(self, key: str, limit: int, window_seconds: int, now: float) -> float | None:
        hits = self._hits.get(key)
        if hits is None:
            if len(self._hits) >= self._max_keys:
                self.cleanup(now, window_seconds)
            hits = self._hits.setdefault(key, deque())
        cutoff = now - window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= limit:
            return hits[0] + window_seconds - now
        hits.append(now)
        return None

    def cleanup(self, now: float, max_age_seconds: int) -> None:
        """Drops keys whose newest hit is older than ``max_age_seconds``."""
        stale = [k for k, h in self._hits.items() if not h or h[-1] <= now - max_age_seconds]
        for key in stale:
            self._hits.pop(key, None)

    def clear(self) -> None:
        self._hits.clear()


class RateLimiter:
    """Applies the route-class table to a ``RateLimitStore``."""

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        store: RateLimitStore | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        trusted_proxies: Iterable[str] = (),
    ):
        self.rules = dict(rules or DEFAULT_RATE_LIMITS)
        self.store = store or MemoryRateLimitStore()
        self.enabled = enabled
        self.trusted_proxies = frozenset(trusted_proxies)
        self._clock = clock

    def hit(self, route_class: str, ip: str, subject: str | None = None) -> None:
        """
        Counts one attempt.

        Raises ``RateLimitedError(retry_after)`` when the bucket is exhausted;
        the rejected attempt is not counted.
        """
        if not self.enabled:
            return
        rule = self.rules.get(route_class)
        if rule is None:
            raise KeyError(f"Unknown rate-limit class: {route_class}")
        key = f"{route_class}:{ip}:{subject or '-'}"
        wait = self.store.try_acquire(key, rule.limit, rule.window_seconds, self._clock())
        if wait is not None:
            retry_after = max(1, math.ceil(wait))
            logger.info(
                "Rate limit hit: class=%s ip=%s scope=%s retry_after=%ss",
                route_class, ip, "subject" if subject else "ip", retry_after,
            )
            raise RateLimitedError(route_class, retry_after)


def rate_limit(route_class: str):
    """FastAPI dependency: one attempt against ``route_class`` for the caller's IP."""

    async def _check(request: Request) -> None:
        limiter: RateLimiter = request.app.state.container.rate_limiter
        limiter.hit(route_class, client_ip(request, limiter.trusted_proxies))

    return _check


def limit_subject(request: Request, route_class: str, subject: str) -> None:
    """One attempt against ``route_class`` for ``subject`` across every IP."""
    limiter: RateLimiter = request.app.state.container.rate_limiter
    limiter.hit(route_class, ANY_IP, subject)


def humanize_seconds(seconds: int) -> str:
    """``900`` -> ``"15 minutes"``; used for the ``retryAfter`` envelope field."""
    if seconds >= 3600 and seconds % 3600 == 0:
        value, unit = seconds // 3600, "hour"
    elif seconds >= 60:
        value, unit = math.ceil(seconds / 60), "minute"
    else:
        value, unit = seconds, "second"
    return f"{value} {unit}{'s' if value != 1 else ''}"
