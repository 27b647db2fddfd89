"""
Poll Strategies
===============
Interval schedules used by CIMonitor between two check polls.

    fixed        — always initial_interval
    exponential  — initial_interval, then min(max_interval, interval * multiplier);
                   monotonically non-decreasing for the whole wait
    adaptive     — exponential, but when the pending/total ratio shrank since the
                   previous poll (checks finishing faster than expected) the
                   interval is divided by the multiplier, never below initial_interval

A strategy instance is owned by one wait_for_checks call (PollState) and is
never shared between revisions.
"""
import logging
from typing import Optional

from ci_engine.core.constants import POLL_STRATEGIES
from ci_engine.models.check_snapshot import CheckSnapshot

logger = logging.getLogger(__name__)


class PollStrategy:
    """Base schedule: returns the same interval forever."""

    name = "fixed"

    def __init__(self, initial_interval: float, max_interval: float, multiplier: float = 1.5) -> None:
        if initial_interval <= 0:
            raise ValueError("initial_interval must be positive")
        if max_interval < initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        if multiplier < 1.0:
            raise ValueError("backoff multiplier must be >= 1.0")
        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self.multiplier = multiplier
        self.current: Optional[float] = None

    def next_interval(self, snapshot: Optional[CheckSnapshot] = None) -> float:
        """
        Compute the next sleep interval.

        Parameters
        ----------
        snapshot : CheckSnapshot | None
            Snapshot of the poll that just finished; None after a transient
            fetch error.
        """
        self.current = self.initial_interval
        return self.current


class FixedStrategy(PollStrategy):
    name = "fixed"


class ExponentialStrategy(PollStrategy):
    name = "exponential"

    def next_interval(self, snapshot: Optional[CheckSnapshot] = None) -> float:
        if self.current is None:
            self.current = self.initial_interval
        else:
            self.current = min(self.max_interval, self.current * self.multiplier)
        return self.current


class AdaptiveStrategy(ExponentialStrategy):
    name = "adaptive"

    def __init__(self, initial_interval: float, max_interval: float, multiplier: float = 1.5) -> None:
        super().__init__(initial_interval, max_interval, multiplier)
        self.last_ratio: Optional[float] = None

    def next_interval(self, snapshot: Optional[CheckSnapshot] = None) -> float:
        ratio = None
        if snapshot is not None and not snapshot.is_empty:
            ratio = snapshot.pending_ratio

        shrinking = (
            self.current is not None
            and ratio is not None
            and self.last_ratio is not None
            and ratio < self.last_ratio
        )
        if ratio is not None:
            self.last_ratio = ratio

        if not shrinking:
            return super().next_interval(snapshot)

        self.current = max(self.initial_interval, self.current / self.multiplier)
        logger.debug("Checks completing faster, interval reduced to %.2fs", self.current)
        return self.current


_STRATEGIES = {
    "fixed": FixedStrategy,
    "exponential": ExponentialStrategy,
    "adaptive": AdaptiveStrategy,
}


def make_strategy(name: str, initial_interval: float, max_interval: float, multiplier: float) -> PollStrategy:
    """Build a fresh strategy instance by name."""
    try:
        cls = _STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown poll strategy '{name}', expected one of {POLL_STRATEGIES}") from None
    return cls(initial_interval, max_interval, multiplier)
