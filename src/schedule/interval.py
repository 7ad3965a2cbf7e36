"""
Card Sync — Interval Policy

Decides how long to wait before polling a source again.

Success path:
    manual mode  -> the source's fixed interval, unchanged
    auto mode    -> activity tiers (sales/hour over the trailing window):
                    >=5 -> 30m, >=2 -> 60m, >=1 -> 120m, >=0.5 -> 180m,
                    >=0.2 -> 240m, otherwise 360m
                    or, with AdaptiveStrategy.LEVELS, step through the
                    configured interval levels while nothing changes
    auto results get uniform jitter (default +/-10%) so items scheduled
    together drift apart.

Error path:
    EXPONENTIAL        60 * 2^min(n-1, 3), clamped to 360  (60, 120, 240, 360...)
    INTERVAL_DOUBLING  2 x configured interval

Both error formulas are non-decreasing in the consecutive error count and
bounded; the first success after any number of errors returns to the
success path.
"""

from __future__ import annotations

import math
import random
from typing import NamedTuple, Protocol

import structlog

from src.config import AdaptiveStrategy, BackoffStrategy, SyncMode, settings
from src.schedule.policy import PolicyConfig

logger = structlog.get_logger(__name__)


class SchedulableSource(Protocol):
    """The slice of TrackedSource the policy reads."""
    mode: str
    manual_interval_minutes: int | None
    interval_minutes: int | None
    unchanged_polls: int


class ScheduleDecision(NamedTuple):
    """Result of a success-path decision."""
    delay_minutes: int       # jittered delay until the next poll
    base_minutes: int        # pre-jitter interval, persisted as interval_minutes
    unchanged_polls: int     # new value of the no-change streak


def tier_interval_minutes(events_per_hour: float) -> int:
    """Map an activity rate onto its tier's base interval."""
    for min_rate, interval in settings.ACTIVITY_TIERS:
        if events_per_hour >= min_rate:
            return interval
    return settings.ACTIVITY_FLOOR_INTERVAL_MINUTES


def exponential_backoff_minutes(
    error_count: int,
    base: int | None = None,
    max_doublings: int | None = None,
    ceiling: int | None = None,
) -> int:
    """Delay after the error_count-th consecutive failure (error_count >= 1)."""
    base = base if base is not None else settings.ERROR_BASE_DELAY_MINUTES
    max_doublings = max_doublings if max_doublings is not None else settings.ERROR_MAX_DOUBLINGS
    ceiling = ceiling if ceiling is not None else settings.ERROR_BACKOFF_CEILING_MINUTES

    doublings = min(max(error_count, 1) - 1, max_doublings)
    return min(base * (2 ** doublings), ceiling)


class IntervalPolicy:
    """
    Pure scheduling policy for one cycle.

    Usage:
        policy = IntervalPolicy(PolicyConfig())
        delay = policy.next_delay_minutes(source, events_last_24h)
        delay = policy.next_delay_minutes_after_error(source, error_count)
    """

    def __init__(
        self,
        config: PolicyConfig,
        strategy: AdaptiveStrategy | None = None,
        backoff: BackoffStrategy | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.strategy = strategy or settings.ADAPTIVE_STRATEGY
        self.backoff = backoff or settings.BACKOFF_STRATEGY
        self._rng = rng or random.Random()

    # -----------------------------------------------------------------------
    # Success path
    # -----------------------------------------------------------------------

    def next_delay_minutes(
        self,
        source: SchedulableSource,
        observed_events: int,
        changed: bool = False,
    ) -> int:
        """Success-path delay in minutes; always a positive integer."""
        return self.plan_success(source, observed_events, changed).delay_minutes

    def plan_success(
        self,
        source: SchedulableSource,
        observed_events: int,
        changed: bool = False,
    ) -> ScheduleDecision:
        """
        Full success-path decision.

        Args:
            source: The polled source (mode, manual interval, level state).
            observed_events: Ledger events in the trailing activity window.
            changed: Whether this poll found new sales or a price/stock move.
                Only the LEVELS strategy reads it.
        """
        if source.mode == SyncMode.MANUAL.value:
            interval = source.manual_interval_minutes or settings.MANUAL_DEFAULT_INTERVAL_MINUTES
            return ScheduleDecision(interval, interval, 0)

        if self.strategy == AdaptiveStrategy.LEVELS:
            base, unchanged = self._level_interval(source, changed)
        else:
            events_per_hour = max(observed_events, 0) / settings.ACTIVITY_WINDOW_HOURS
            base = tier_interval_minutes(events_per_hour)
            unchanged = 0 if changed else source.unchanged_polls + 1

        delay = self.apply_jitter(base)
        logger.debug(
            "interval_success_planned",
            strategy=self.strategy.value,
            observed_events=observed_events,
            base_minutes=base,
            delay_minutes=delay,
        )
        return ScheduleDecision(delay, base, unchanged)

    def _level_interval(self, source: SchedulableSource, changed: bool) -> tuple[int, int]:
        levels = self.config.interval_levels_minutes
        if changed:
            return levels[0], 0

        current = source.interval_minutes or levels[0]
        index = next((i for i, level in enumerate(levels) if level >= current), len(levels) - 1)

        unchanged = source.unchanged_polls + 1
        if unchanged >= self.config.no_change_level_up_threshold:
            return levels[min(index + 1, len(levels) - 1)], 0
        return levels[index], unchanged

    def apply_jitter(self, base_minutes: int) -> int:
        """Uniform integer within [base*(1+min%), base*(1+max%)], at least 1."""
        low = math.ceil(base_minutes * (1 + self.config.jitter_min_percent / 100))
        high = math.floor(base_minutes * (1 + self.config.jitter_max_percent / 100))
        if low > high:
            return max(1, round(base_minutes))
        return max(1, self._rng.randint(low, high))

    # -----------------------------------------------------------------------
    # Error path
    # -----------------------------------------------------------------------

    def next_delay_minutes_after_error(self, source: SchedulableSource, error_count: int) -> int:
        """
        Error-path delay after the error_count-th consecutive failure.

        No jitter: the delay must stay monotonic in error_count.
        """
        if self.backoff == BackoffStrategy.INTERVAL_DOUBLING:
            if source.mode == SyncMode.MANUAL.value:
                interval = source.manual_interval_minutes or settings.MANUAL_DEFAULT_INTERVAL_MINUTES
            else:
                interval = settings.ACTIVITY_FLOOR_INTERVAL_MINUTES
            delay = interval * 2
        else:
            delay = exponential_backoff_minutes(error_count)

        logger.debug(
            "interval_error_planned",
            backoff=self.backoff.value,
            error_count=error_count,
            delay_minutes=delay,
        )
        return delay
