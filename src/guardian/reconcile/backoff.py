from __future__ import annotations

from dataclasses import dataclass, field

from tenacity import RetryCallState, wait_exponential, wait_random_exponential


def _retry_state(attempt: int) -> RetryCallState:
    # tenacity numbers attempts from 1; ours are 0-based.
    state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
    state.attempt_number = max(attempt, 0) + 1
    return state


@dataclass
class Backoff:
    """Capped exponential backoff with full jitter.

    The ceiling for attempt ``n`` (0-based) is ``min(cap, base * factor**n)``;
    the delay is drawn uniformly from ``[0, ceiling]``. Delays are scheduled by
    the caller, so only tenacity's wait strategies are used here.
    """

    base: float = 1.0
    factor: float = 2.0
    cap: float = 300.0
    _ceiling: wait_exponential = field(init=False, repr=False, compare=False)
    _jitter: wait_random_exponential = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base <= 0 or self.factor < 1 or self.cap <= 0:
            raise ValueError("backoff requires base > 0, factor >= 1 and cap > 0")
        self._ceiling = wait_exponential(multiplier=self.base, exp_base=self.factor, max=self.cap)
        self._jitter = wait_random_exponential(multiplier=self.base, exp_base=self.factor, max=self.cap)

    def ceiling(self, attempt: int) -> float:
        return self._ceiling(_retry_state(attempt))

    def delay(self, attempt: int) -> float:
        return self._jitter(_retry_state(attempt))
