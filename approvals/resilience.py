"""
approvals/resilience.py

Shared retry-with-backoff and deadline helpers.

Every component (DB units of work, ERP calls) goes through one RetryPolicy instead of
per-module copies. The policy is constructed once in create_app() from config and injected
where needed; tests build their own with zero delay.

Rules:
- Only transient failures are retried (connection drops, pool/statement timeouts, HTTP
  connection errors). Validation errors and state conflicts propagate immediately.
- Retries stop early when the Deadline has no time left for another attempt.
- A deadline bounds how long we keep trying. It does not interrupt a statement already
  running in the database (statement_timeout / HTTP timeouts do that).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

import requests
from sqlalchemy import exc as sa_exc

from .errors import OperationTimeout, TransientInfrastructureError, WorkflowError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Return True for failures worth retrying."""
    if isinstance(error, TransientInfrastructureError):
        return True
    if isinstance(error, WorkflowError):
        return False
    if isinstance(error, (sa_exc.OperationalError, sa_exc.TimeoutError)):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True
    return False


class Deadline:
    """A point in time after which no new attempt is started."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, what: str = "operation") -> None:
        if self.expired:
            raise OperationTimeout(f"{what} timed out after {self.seconds:g}s")


@dataclass
class RetryPolicy:
    """Bounded exponential backoff: delay, delay*2, delay*4, ..."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delays(self) -> list[float]:
        """Sleep durations between attempts (max_attempts - 1 entries)."""
        return [self.base_delay * (self.factor ** i) for i in range(max(0, self.max_attempts - 1))]

    def run(
        self,
        fn: Callable[[], T],
        *,
        deadline: Optional[Deadline] = None,
        on_retry: Optional[Callable[[BaseException], None]] = None,
        what: str = "operation",
    ) -> T:
        """
        Call fn() until it succeeds, a non-transient error occurs, attempts run out,
        or the deadline expires.

        on_retry is called with the failure before sleeping (e.g. to roll back the session).
        """
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            if deadline is not None:
                deadline.check(what)
            try:
                return fn()
            except Exception as error:  # noqa: BLE001 - classified below
                if not is_transient(error):
                    raise

                if on_retry is not None:
                    on_retry(error)

                if attempt >= self.max_attempts:
                    logger.error("%s failed after %d attempts: %s", what, attempt, error)
                    if isinstance(error, TransientInfrastructureError):
                        raise
                    raise TransientInfrastructureError(f"{what} failed: {error}") from error

                delay = delays[attempt - 1]
                if deadline is not None and deadline.remaining() < delay:
                    raise OperationTimeout(f"{what} timed out after {deadline.seconds:g}s") from error

                logger.warning("%s attempt %d failed (%s); retrying in %.2fs", what, attempt, error, delay)
                if delay > 0:
                    self.sleep(delay)
