"""Retry/backoff policy and the shared outbound-call gate for AI services.

Every call to an external AI service goes through :func:`call_with_retry`:
transient failures (timeouts, rate limits, 5xx, malformed payloads) are retried
with exponential backoff; rate limits back off for at least
``rate_limit_backoff_seconds``.  Non-transient :class:`ServiceError` propagates
immediately.  The :class:`CallGate` caps concurrent outbound calls across all
workers of one run.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from clipgrade.core.errors import MalformedResponseError, TransientServiceError

LOG = logging.getLogger("clipgrade.retry")

T = TypeVar("T")


class CallGate:
    """Bounded semaphore held around each outbound service call."""

    def __init__(self, limit: int = 5) -> None:
        self.limit = max(1, int(limit))
        self._sem = threading.BoundedSemaphore(self.limit)

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._sem.acquire()
        try:
            yield
        finally:
            self._sem.release()


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 2
    backoff_seconds: float = 2.0
    rate_limit_backoff_seconds: float = 30.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "RetryPolicy":
        retry = cfg.get("retry") or {}
        return cls(
            attempts=max(1, int(retry.get("attempts", 2))),
            backoff_seconds=float(retry.get("backoff_seconds", 2.0)),
            rate_limit_backoff_seconds=float(retry.get("rate_limit_backoff_seconds", 30.0)),
        )

    def delay(self, attempt: int, rate_limited: bool = False) -> float:
        """Seconds to wait after failed *attempt* (1-based)."""
        backoff = self.backoff_seconds * (2 ** (attempt - 1))
        if rate_limited:
            backoff = max(backoff, self.rate_limit_backoff_seconds)
        return backoff


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    gate: Optional[CallGate] = None,
    *,
    label: str = "service call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke *fn* under *gate*, retrying transient and malformed failures.

    The last failure is re-raised once ``policy.attempts`` is spent.
    """

    for attempt in range(1, policy.attempts + 1):
        try:
            if gate is None:
                return fn()
            with gate.slot():
                return fn()
        except (TransientServiceError, MalformedResponseError) as exc:
            if attempt >= policy.attempts:
                LOG.warning("%s failed after %d attempts: %s", label, attempt, exc)
                raise
            rate_limited = bool(getattr(exc, "rate_limited", False))
            backoff = policy.delay(attempt, rate_limited)
            LOG.info("%s attempt %d/%d failed (%s); backing off %.1fs",
                     label, attempt, policy.attempts, exc, backoff)
            sleep(backoff)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["CallGate", "RetryPolicy", "call_with_retry"]
