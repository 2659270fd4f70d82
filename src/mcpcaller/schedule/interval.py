"""Seasonal call-interval model."""

from __future__ import annotations

import random
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from mcpcaller.config import ScheduleConfig

MIN_DELAY_MS = 1000.0

BUSINESS_HOURS = range(9, 18)
EVENING_HOURS = range(18, 23)

BUSINESS_HOURS_FACTOR = 0.7
EVENING_FACTOR = 0.9
OFF_HOURS_FACTOR = 1.5
WEEKDAY_FACTOR = 0.8
WEEKEND_FACTOR = 1.3


def time_of_day_factor(hour: int) -> float:
    if hour in BUSINESS_HOURS:
        return BUSINESS_HOURS_FACTOR
    if hour in EVENING_HOURS:
        return EVENING_FACTOR
    return OFF_HOURS_FACTOR


def day_of_week_factor(weekday: int) -> float:
    """``weekday`` follows ``datetime.weekday()``: Monday is 0, Sunday is 6."""
    if 0 <= weekday <= 4:
        return WEEKDAY_FACTOR
    return WEEKEND_FACTOR


def seasonal_multiplier(now: datetime) -> float:
    return time_of_day_factor(now.hour) * day_of_week_factor(now.weekday())


def seasonal_interval_ms(base_interval_ms: float, now: datetime) -> float:
    return float(base_interval_ms) * seasonal_multiplier(now)


def apply_jitter(value_ms: float, jitter_percent: float, rng: Optional[random.Random] = None) -> float:
    source = rng or random
    jitter_amount = (float(jitter_percent) / 100.0) * value_ms
    if jitter_amount <= 0:
        return max(MIN_DELAY_MS, value_ms)
    return max(MIN_DELAY_MS, value_ms + source.uniform(-jitter_amount, jitter_amount))


def next_delay(
    config: "ScheduleConfig",
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Milliseconds until the next call, never below ``MIN_DELAY_MS``."""

    moment = now or datetime.now()
    return apply_jitter(
        seasonal_interval_ms(config.base_interval_ms, moment),
        config.jitter_percent,
        rng,
    )
