"""
Forgetting-curve decay for stored mastery scores.

Effective mastery is the stored score discounted by the time since the last
interaction: ``stored * exp(-k * days)``. The function is pure; callers pass
``now`` explicitly when they need determinism.
"""

import math
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from mastery_config import get_config


SECONDS_PER_DAY = 86_400


class DecayedMastery(NamedTuple):
    """Decay-adjusted mastery and the elapsed time it was computed from."""
    value: float
    days_since_interaction: float


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from ``earlier`` to ``later``, never negative."""
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    if later.tzinfo is None:
        later = later.replace(tzinfo=timezone.utc)
    elapsed = (later - earlier).total_seconds() / SECONDS_PER_DAY
    return max(0.0, elapsed)


def effective_mastery(stored_mastery: float,
                      last_interaction: datetime,
                      now: Optional[datetime] = None,
                      decay_rate: Optional[float] = None) -> DecayedMastery:
    """Apply exponential decay to a stored mastery score.

    Args:
        stored_mastery: Stored score in [0, 1]
        last_interaction: Time of the last interaction with the concept
        now: Evaluation time, defaults to the current UTC time
        decay_rate: Decay constant, defaults to ``MasteryConfig.decay_rate``

    Returns:
        ``DecayedMastery`` whose value lies in ``[0, stored_mastery]``
    """
    if now is None:
        now = datetime.now(timezone.utc)
    if decay_rate is None:
        decay_rate = get_config().mastery.decay_rate

    stored = max(0.0, min(1.0, stored_mastery))
    days = days_between(last_interaction, now)

    if days == 0.0:
        return DecayedMastery(stored, 0.0)

    value = stored * math.exp(-decay_rate * days)
    # Guard against float drift above the stored value
    value = max(0.0, min(stored, value))
    return DecayedMastery(value, days)
