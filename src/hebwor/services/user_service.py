"""User service for managing users, their settings and progress statistics."""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from hebwor.config import DAILY_WORDS_OPTIONS, settings
from hebwor.exceptions import NotFoundError
from hebwor.models.base import utcnow
from hebwor.models.levels import Level, next_level
from hebwor.models.models import ExerciseType, User, WordStatus
from hebwor.monitoring import total_users
from hebwor.services.learning_service import LearningService, percentage
from hebwor.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

ACTIVITY_WINDOW_DAYS = 7


@dataclass
class ExerciseStats:
    correct: int = 0
    total: int = 0

    @property
    def accuracy(self) -> int:
        return percentage(self.correct, self.total)


@dataclass
class UserProgress:
    """Snapshot of a user's learning progress."""
    level: Level
    mastery: int
    next_level: Optional[Level]
    word_counts: Dict[WordStatus, int]
    exercises: Dict[ExerciseType, ExerciseStats] = field(default_factory=dict)
    active_days: int = 0
    recent_exercises: int = 0
    preview_unlocked: bool = False
    advancing_soon: bool = False
    ready_to_advance: bool = False

    @property
    def total_words(self) -> int:
        return sum(self.word_counts.values())

    @property
    def overall(self) -> ExerciseStats:
        return ExerciseStats(
            correct=sum(s.correct for s in self.exercises.values()),
            total=sum(s.total for s in self.exercises.values()),
        )


class UserService:
    """Service for managing user data and preferences."""

    def __init__(self, db: Session):
        """Initialize the service with a database session."""
        self.db = db
        self.store = ProgressStore(db)

    def get_user(self, telegram_id: int) -> Optional[User]:
        return self.store.get_user(telegram_id)

    def get_or_create_user(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        language_code: Optional[str] = None,
    ) -> User:
        """Get existing user or create a new one."""
        user = self.store.get_user(telegram_id)
        if user:
            return user

        user = User(
            id=telegram_id,
            telegram_username=username,
            first_name=first_name,
            language_code=language_code,
            daily_words_count=settings.learning.default_daily_words,
        )
        self.db.add(user)
        self.store.commit()
        self.db.refresh(user)

        total_users.inc()
        logger.info(f"Created user {telegram_id} ({username})")
        return user

    def set_daily_words_count(self, user_id: int, count: int) -> User:
        """Change how many new words the user gets per request."""
        if count not in DAILY_WORDS_OPTIONS:
            raise ValueError(f"Daily words count must be one of {DAILY_WORDS_OPTIONS}, got {count}")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        user.daily_words_count = count
        self.store.commit()
        logger.info(f"User {user_id} set daily words count to {count}")
        return user

    def get_progress(self, user_id: int) -> UserProgress:
        """Collect word, exercise and activity statistics for a user."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")

        learning = settings.learning
        level = user.level
        mastery = LearningService(self.db).calculate_mastery(user_id, level)
        upcoming = next_level(level)

        exercises = {
            kind: ExerciseStats(correct=correct, total=total)
            for kind, (correct, total) in self.store.attempt_stats_by_type(user_id).items()
        }
        since = utcnow() - timedelta(days=ACTIVITY_WINDOW_DAYS)
        active_days, recent_exercises = self.store.recent_activity(user_id, since)

        return UserProgress(
            level=level,
            mastery=mastery,
            next_level=upcoming,
            word_counts=self.store.count_states_by_status(user_id),
            exercises=exercises,
            active_days=active_days,
            recent_exercises=recent_exercises,
            preview_unlocked=upcoming is not None and mastery >= learning.preview_threshold,
            advancing_soon=upcoming is not None and mastery >= learning.advanced_threshold,
            ready_to_advance=upcoming is not None and mastery >= learning.auto_advance_threshold,
        )
