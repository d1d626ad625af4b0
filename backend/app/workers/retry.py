"""
Retry / backoff policy for work items.

    delay(n) = base_delay_ms × 2ⁿ      n = item.retries (zero-indexed attempt about to be made)

With the defaults (base 5 s, max 3):
    1st failure → requeue, retries=1, +5 000 ms
    2nd failure → requeue, retries=2, +10 000 ms
    3rd failure → terminal, retries=3

The delay is not slept anywhere. It is added to the item's queue score, so a
retrying item sorts behind fresher work of the same nominal priority and the
worker keeps serving whatever is next.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.core.config import settings
from app.core.exceptions import NotFoundError, PermanentItemError

MAX_RETRIES         = 3
RETRY_BASE_DELAY_MS = 5000


@dataclass(frozen=True)
class RetryDecision:
    retry:    bool
    retries:  int     # retry count after this failure
    delay_ms: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    max_retries:   int = MAX_RETRIES
    base_delay_ms: int = RETRY_BASE_DELAY_MS

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.worker_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
        )

    def delay_ms(self, retries: int) -> int:
        return self.base_delay_ms * (2 ** retries)

    def decide(self, retries: int, exc: BaseException) -> RetryDecision:
        next_retries = retries + 1
        # A store update on a vanished row fails the same way every time.
        if isinstance(exc, (PermanentItemError, NotFoundError)) or next_retries >= self.max_retries:
            return RetryDecision(retry=False, retries=next_retries)
        return RetryDecision(retry=True, retries=next_retries, delay_ms=self.delay_ms(retries))
