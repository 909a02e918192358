"""Retry-with-backoff policy shared by every adapter call."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

from .models import ExtractionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_MODES = ("linear", "exponential")
MIN_ATTEMPT_TIMEOUT = 0.05


@dataclass
class RetryPolicy:
    """Bounded retry budget with linear or exponential backoff.

    ``attempts`` counts the first call; ``timeout`` is the per-attempt budget
    handed to the adapter.
    """

    attempts: int = 3
    timeout: float = 90.0
    backoff: float = 1.5
    mode: str = "linear"
    retry_on: Tuple[Type[BaseException], ...] = (ExtractionError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.mode not in BACKOFF_MODES:
            raise ValueError(f"Unknown backoff mode: {self.mode!r}")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        if self.mode == "exponential":
            return self.backoff * (2 ** (attempt - 1))
        return self.backoff * attempt

    def remaining(self, deadline: Optional[float]) -> Optional[float]:
        """Seconds left before ``deadline`` on the policy clock, if one is set."""
        if deadline is None:
            return None
        return deadline - self.clock()

    def attempt_timeout(self, deadline: Optional[float] = None) -> float:
        """Per-attempt timeout, capped by whatever is left of ``deadline``."""
        remaining = self.remaining(deadline)
        if remaining is None:
            return self.timeout
        return max(min(self.timeout, remaining), MIN_ATTEMPT_TIMEOUT)

    def call(
        self,
        func: Callable[[], T],
        description: str = "call",
        deadline: Optional[float] = None,
    ) -> T:
        """Run ``func`` until it succeeds, the attempts run out, or ``deadline`` passes.

        ``deadline`` is an absolute time on ``clock``. No new attempt starts,
        and no backoff sleep begins, once it can no longer be met.
        """
        for attempt in range(1, self.attempts + 1):
            remaining = self.remaining(deadline)
            if remaining is not None and remaining <= 0:
                raise ExtractionError(f"{description} abandoned: deadline reached")
            try:
                return func()
            except self.retry_on as exc:
                if attempt >= self.attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s", description, attempt, exc
                    )
                    raise
                delay = self.delay_for(attempt)
                remaining = self.remaining(deadline)
                if remaining is not None and remaining <= delay:
                    logger.warning(
                        "%s failed (attempt %d/%d): %s; no time left to retry",
                        description,
                        attempt,
                        self.attempts,
                        exc,
                    )
                    raise
                logger.info(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")
