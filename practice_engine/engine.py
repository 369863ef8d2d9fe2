"""Wiring of the practice engine components.

One PracticeEngine per process. It owns the shared lock registry, so every
component that serializes on a session, user rating or item sees the same
locks.
"""

import random
from typing import Optional

from practice_engine.db.database import connection
from practice_engine.db.rating_store import RatingStore
from practice_engine.services.answer_processor import AnswerProcessor
from practice_engine.services.clock import SystemClock
from practice_engine.services.deck_builder import DeckBuilder
from practice_engine.services.keyed_lock import KeyedLocks
from practice_engine.services.session_manager import SessionManager


class PracticeEngine:
    def __init__(
        self,
        database_path: Optional[str] = None,
        clock=None,
        rng: Optional[random.Random] = None,
    ):
        # None means the configured backend (DATABASE_URL / DATABASE_PATH)
        self.database_path = database_path
        self.clock = clock or SystemClock()
        self.locks = KeyedLocks()
        self.ratings = RatingStore(self.locks, self.clock)
        self.sessions = SessionManager(self.locks, self.clock)
        self.decks = DeckBuilder(self.ratings, rng)
        self.answers = AnswerProcessor(self.sessions, self.ratings, self.clock)

    def connect(self):
        """Async context manager yielding a connection for one unit of work."""
        return connection(self.database_path)
