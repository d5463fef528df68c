"""
SM-2 style spaced-repetition scheduling.

The scheduler is a pure function of the answer outcome, the previous interval
and the previous ease factor. Persisting its outputs is the mastery store's
job.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

from mastery_config import MasteryConfig, get_config


class ReviewSchedule(NamedTuple):
    """Next review interval, ease factor and date."""
    next_interval: int
    new_ease_factor: float
    next_review_date: datetime


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def clamp_ease(ease_factor: float, settings: Optional[MasteryConfig] = None) -> float:
    """Clamp an ease factor into the configured bounds."""
    settings = settings or get_config().mastery
    return max(settings.min_ease_factor, min(settings.max_ease_factor, ease_factor))


def next_review(is_correct: bool,
                previous_interval: int,
                ease_factor: float,
                now: Optional[datetime] = None,
                settings: Optional[MasteryConfig] = None) -> ReviewSchedule:
    """Compute the next review after an answer.

    A correct answer grows the interval (0 -> 1 -> 6 -> interval * ease) and
    raises the ease factor. An incorrect answer resets the interval to one day
    whatever it was and lowers the ease factor.

    Args:
        is_correct: Whether the answer was correct
        previous_interval: Interval in days before this answer
        ease_factor: Ease factor before this answer
        now: Reference time for the review date
        settings: Mastery settings, defaults to the global configuration

    Returns:
        ``ReviewSchedule`` with a positive interval and a bounded ease factor
    """
    settings = settings or get_config().mastery
    if now is None:
        now = datetime.now(timezone.utc)

    prior_ease = clamp_ease(ease_factor, settings)
    previous_interval = max(0, int(previous_interval))

    if is_correct:
        if previous_interval == 0:
            next_interval = 1
        elif previous_interval == 1:
            next_interval = 6
        else:
            next_interval = round_half_up(previous_interval * prior_ease)
        new_ease = min(settings.max_ease_factor, prior_ease + settings.ease_bonus)
    else:
        next_interval = 1
        new_ease = max(settings.min_ease_factor, prior_ease - settings.ease_penalty)

    next_interval = max(1, next_interval)
    new_ease = clamp_ease(round(new_ease, 2), settings)

    return ReviewSchedule(
        next_interval=next_interval,
        new_ease_factor=new_ease,
        next_review_date=now + timedelta(days=next_interval),
    )
