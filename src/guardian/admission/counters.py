from __future__ import annotations

import time
from collections import Counter, deque
from typing import Callable

from guardian.policies.models import Verdict

HOUR = 3600


class DecisionCounters:
    """
    Admission decision counters.

    Totals are keyed by ``(allowed, matched_policy)``. Denials are also kept in
    hourly buckets for the trailing day, which is what "denied in the last 24
    hours" is computed from. Bucket granularity makes that figure best-effort.
    """

    def __init__(self, clock: Callable[[], float] = time.time, window_hours: int = 24) -> None:
        self._clock = clock
        self._window_hours = window_hours
        self._totals: Counter[tuple[bool, str | None]] = Counter()
        self._denied_buckets: deque[list[int]] = deque()

    def record(self, verdict: Verdict) -> None:
        self._totals[(verdict.allowed, verdict.matched_policy)] += 1
        if not verdict.allowed:
            hour = int(self._clock()) // HOUR
            if self._denied_buckets and self._denied_buckets[-1][0] == hour:
                self._denied_buckets[-1][1] += 1
            else:
                self._denied_buckets.append([hour, 1])
            self._prune(hour)

    def _prune(self, hour: int) -> None:
        while self._denied_buckets and self._denied_buckets[0][0] <= hour - self._window_hours:
            self._denied_buckets.popleft()

    def denied_within(self, hours: int = 24) -> int:
        hour = int(self._clock()) // HOUR
        return sum(count for bucket, count in self._denied_buckets if bucket > hour - hours)

    def snapshot(self) -> dict[tuple[bool, str | None], int]:
        return dict(self._totals)

    @property
    def allowed_total(self) -> int:
        return sum(count for (allowed, _), count in self._totals.items() if allowed)

    @property
    def denied_total(self) -> int:
        return sum(count for (allowed, _), count in self._totals.items() if not allowed)
