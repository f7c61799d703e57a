"""Per-IP counter for rank-changing actions.

A fixed window, not a sliding log: the bucket resets wholesale once the
window has elapsed, so bursts either side of a reset can add up to twice the
limit. Counters live in memory only and are gone after a restart; expired
windows are dropped whenever an action is recorded.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict

ACTION_LIMIT = 15
ACTION_WINDOW_SECONDS = 10 * 60


@dataclass
class ActionCounter:
    count: int
    window_start: float


class ActionRateLimiter:
    def __init__(self, limit: int = ACTION_LIMIT, window: float = ACTION_WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._counters: Dict[str, ActionCounter] = {}

    def _prune(self, now: float):
        for ip in [ip for ip, c in self._counters.items() if now - c.window_start > self.window]:
            del self._counters[ip]

    def record_action(self, ip: str) -> int:
        now = self._clock()
        self._prune(now)
        counter = self._counters.get(ip)
        if counter is None or now - counter.window_start > self.window:
            counter = self._counters[ip] = ActionCounter(count=1, window_start=now)
        else:
            counter.count += 1
        return counter.count

    def exceeded(self, count: int) -> bool:
        return count > self.limit

    def counter(self, ip: str):
        return self._counters.get(ip)

    def reset(self):
        self._counters.clear()
