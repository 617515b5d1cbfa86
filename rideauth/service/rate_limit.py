from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from rideauth.config import EndpointClass, RateLimitPolicy, Settings
from rideauth.logging import get_logger
from rideauth.service.errors import RateLimited

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    permitted: bool
    retry_after_ms: int
    remaining: int


class RateLimitBackend(Protocol):
    """Counter storage for fixed windows keyed by (client, endpoint class).

    ``increment`` opens a fresh window with count 1 when none exists or the
    previous one has elapsed, otherwise adds one. It returns the new count
    and the window start in epoch milliseconds, atomically.
    """

    def increment(self, key: str, *, now_ms: int, window_ms: int) -> Tuple[int, int]: ...

    def decrement(self, key: str, *, now_ms: int) -> None: ...

    def purge_expired(self, *, now_ms: int) -> int: ...


class InMemoryRateLimitBackend:
    """Process-local counters guarded by a single lock."""

    def __init__(self) -> None:
        # key -> (window_start_ms, window_ms, count)
        self._counters: Dict[str, Tuple[int, int, int]] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, *, now_ms: int, window_ms: int) -> Tuple[int, int]:
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or now_ms - entry[0] >= entry[1]:
                self._counters[key] = (now_ms, window_ms, 1)
                return 1, now_ms
            start, window, count = entry
            count += 1
            self._counters[key] = (start, window, count)
            return count, start

    def decrement(self, key: str, *, now_ms: int) -> None:
        with self._lock:
            entry = self._counters.get(key)
            if entry is None:
                return
            start, window, count = entry
            if now_ms - start >= window:
                # Lazy purge of the elapsed window
                del self._counters[key]
                return
            if count > 0:
                self._counters[key] = (start, window, count - 1)

    def purge_expired(self, *, now_ms: int) -> int:
        with self._lock:
            stale = [
                key
                for key, (start, window, _) in self._counters.items()
                if now_ms - start >= window
            ]
            for key in stale:
                del self._counters[key]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class RateLimiter:
    """Fixed-window request limiter in front of sensitive endpoints.

    Two-phase: callers ``allow`` at request entry and may ``refund`` once
    the business outcome is known, for endpoint classes configured to skip
    successful requests.
    """

    def __init__(
        self,
        backend: Optional[RateLimitBackend] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.backend = backend or InMemoryRateLimitBackend()
        self.settings = settings
        self._clock = clock

    def _now_ms(self) -> int:
        now = self._clock() if self._clock is not None else datetime.now(timezone.utc)
        return int(now.timestamp() * 1000)

    def allow(self, key: str, window_ms: int, max_requests: int) -> RateLimitDecision:
        if max_requests <= 0:
            return RateLimitDecision(permitted=True, retry_after_ms=0, remaining=max_requests)
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_ms=window_ms,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_ms = 60_000
        now_ms = self._now_ms()
        count, window_start = self.backend.increment(key, now_ms=now_ms, window_ms=window_ms)
        if count <= max_requests:
            return RateLimitDecision(
                permitted=True, retry_after_ms=0, remaining=max_requests - count
            )
        retry_after_ms = max(1, window_ms - (now_ms - window_start))
        logger.info("rate_limit_exceeded", key=key, count=count, retry_after_ms=retry_after_ms)
        return RateLimitDecision(permitted=False, retry_after_ms=retry_after_ms, remaining=0)

    def refund(self, key: str) -> None:
        self.backend.decrement(key, now_ms=self._now_ms())

    @staticmethod
    def key_for(client_address: str, endpoint_class: EndpointClass | str) -> str:
        return f"{EndpointClass(endpoint_class).value}:{client_address}"

    def policy(self, endpoint_class: EndpointClass | str) -> RateLimitPolicy:
        if self.settings is None:
            raise RuntimeError("rate limiter has no settings for endpoint policies")
        return self.settings.rate_limit_policy(endpoint_class)

    def check(self, client_address: str, endpoint_class: EndpointClass | str) -> RateLimitDecision:
        policy = self.policy(endpoint_class)
        return self.allow(
            self.key_for(client_address, endpoint_class),
            policy.window_ms,
            policy.max_requests,
        )

    def enforce(self, client_address: str, endpoint_class: EndpointClass | str) -> RateLimitDecision:
        decision = self.check(client_address, endpoint_class)
        if not decision.permitted:
            raise RateLimited(
                "too many requests; try again later",
                retry_after_ms=decision.retry_after_ms,
            )
        return decision

    def refund_if_skippable(self, client_address: str, endpoint_class: EndpointClass | str) -> bool:
        """Give back a successful request's slot when its policy allows it."""
        policy = self.policy(endpoint_class)
        if not policy.skip_successful_requests:
            return False
        self.refund(self.key_for(client_address, endpoint_class))
        return True

    def purge_expired(self) -> int:
        return self.backend.purge_expired(now_ms=self._now_ms())
