"""Rating-matched practice decks.

Items are ranked by how far their difficulty sits from the user's current
rating for the (lang, exam, skill) slice, closest first. Ties are broken
randomly: the candidates are shuffled before a stable sort, so equally
close items come out in a different order from one deck to the next.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from practice_engine.config import settings
from practice_engine.db import practice_store as ps
from practice_engine.db.database import bounded
from practice_engine.db.rating_store import RatingStore, UserKey
from practice_engine.errors import InvalidConfig

logger = logging.getLogger(__name__)


@dataclass
class Deck:
    items: List[Dict[str, Any]] = field(default_factory=list)
    user_rating: float = 0.0
    estimated_difficulty: float = 0.0
    session_suggested_size: int = 0


def suggested_deck_size(duration_s: int) -> int:
    """Roughly one card every three seconds, capped at 40 cards."""
    return max(1, min(duration_s // 3, 40))


class DeckBuilder:
    def __init__(self, rating_store: RatingStore, rng: Optional[random.Random] = None):
        self.rating_store = rating_store
        self.rng = rng or random.Random()

    async def build_deck(
        self,
        db,
        user_id: str,
        lang: str,
        level: str,
        exam: str,
        skill: str,
        size: int,
        exclude_recent_item_ids: Iterable[str] = (),
    ) -> Deck:
        if size < 1 or size > settings.max_deck_size:
            raise InvalidConfig(f"Deck size must be between 1 and {settings.max_deck_size}")

        rating = await bounded(self.rating_store.get_user_rating(db, UserKey(user_id, lang, exam, skill)))
        excluded = set(exclude_recent_item_ids)

        candidates = [
            item for item in await bounded(ps.list_active_items(db, lang, level, exam))
            if skill in item["skill_scope"] and item["id"] not in excluded
        ]
        self.rng.shuffle(candidates)
        candidates.sort(key=lambda item: abs(item["difficulty_elo"] - rating.rating))
        chosen = candidates[:size]

        if chosen:
            estimated = sum(item["difficulty_elo"] for item in chosen) / len(chosen)
        else:
            estimated = rating.rating

        logger.debug(
            "Deck for %s %s/%s/%s/%s: %d of %d candidates around %.0f",
            user_id, lang, level, exam, skill, len(chosen), len(candidates), rating.rating,
        )
        return Deck(
            items=chosen,
            user_rating=rating.rating,
            estimated_difficulty=round(estimated, 1),
            session_suggested_size=len(chosen),
        )
