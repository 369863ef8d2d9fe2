"""Elo rating update rule for user proficiency and item difficulty.

A swipe answer is a match between the user and the item: the user wins
(outcome 1) by answering correctly, loses (outcome 0) otherwise. The
user gains exactly what the item's expected score says they should not
have, and the item moves the opposite way.

    E          = 1 / (1 + 10 ** ((item - user) / 400))
    user_delta =  Ku * (outcome - E)
    item_delta = -Ki * (outcome - E)

Pure functions, no I/O. K-factors and bounds default to Settings.
"""

import math
from dataclasses import dataclass
from typing import Optional

from practice_engine.config import settings


@dataclass(frozen=True)
class EloDeltas:
    user_delta: float
    item_delta: float
    expected: float


def expected_score(user_rating: float, item_rating: float) -> float:
    """Probability that a user at user_rating answers an item at item_rating correctly."""
    return 1.0 / (1.0 + 10 ** ((item_rating - user_rating) / 400.0))


def compute_deltas(
    user_rating: float,
    item_rating: float,
    outcome: float,
    k_user: Optional[float] = None,
    k_item: Optional[float] = None,
) -> EloDeltas:
    """Rating changes for one answer. outcome is 1.0 for correct, 0.0 for incorrect."""
    if not (0.0 <= outcome <= 1.0) or math.isnan(outcome):
        raise ValueError(f"outcome must be within [0, 1], got {outcome}")
    ku = settings.k_user if k_user is None else k_user
    ki = settings.k_item if k_item is None else k_item

    expected = expected_score(user_rating, item_rating)
    surprise = outcome - expected
    return EloDeltas(
        user_delta=ku * surprise,
        item_delta=-ki * surprise,
        expected=expected,
    )


def clamp_rating(rating: float) -> float:
    return max(settings.rating_min, min(settings.rating_max, rating))
