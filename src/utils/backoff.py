from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential retry delay for resources left in ERROR.

    The delay is written into the row's lease (`locked_until`) together with
    the ERROR status, so the scheduler simply cannot claim the row again
    before it expires.
    """

    base_s: float = 5.0
    factor: float = 2.0
    max_s: float = 300.0

    def delay_s(self, attempts: int, *, permanent: bool = False) -> float:
        if permanent:
            return float(self.max_s)
        n = max(int(attempts), 1)
        delay = float(self.base_s) * (float(self.factor) ** (n - 1))
        return min(delay, float(self.max_s))
