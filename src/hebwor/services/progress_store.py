"""Storage access for vocabulary, word states, attempts and level state.

Every method returns ORM entities, dataclasses or plain numbers. Nothing
here commits on its own; callers group writes and call ``commit``.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Sequence, Union

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hebwor.models.base import utcnow
from hebwor.models.levels import Level, parse_level
from hebwor.models.models import (
    ExerciseResult,
    ExerciseType,
    User,
    UserVocabulary,
    VocabularyWord,
    WordStatus,
)
from hebwor.monitoring import db_errors

logger = logging.getLogger(__name__)

LevelLike = Union[str, Level]


@dataclass(frozen=True)
class UserLevelState:
    """User's current level and the cached mastery of it."""
    level: Level
    mastery_percentage: int


class ProgressStore:
    """Typed accessor over the learning tables."""

    def __init__(self, db: Session):
        """Initialize the store with a database session."""
        self.db = db

    def commit(self) -> None:
        """Commit the current transaction, rolling back on failure."""
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            db_errors.labels(error_type=type(e).__name__).inc()
            logger.error(f"Database commit failed: {e}")
            raise

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a group of writes and commit them together.

        On a database error the whole group is rolled back and the error
        is re-raised.
        """
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            db_errors.labels(error_type=type(e).__name__).inc()
            logger.error(f"Database transaction failed: {e}")
            raise

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_user_level_state(self, user_id: int) -> Optional[UserLevelState]:
        """Get the user's level and cached mastery, or None for an unknown user."""
        user = self.get_user(user_id)
        if user is None:
            return None
        return UserLevelState(
            level=user.level,
            mastery_percentage=user.current_level_mastery_percentage or 0,
        )

    def set_user_level_state(self, user_id: int, level: LevelLike, mastery_percentage: int) -> None:
        """Set the user's level and cached mastery."""
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                current_level=parse_level(level).value,
                current_level_mastery_percentage=mastery_percentage,
            )
            .execution_options(synchronize_session="fetch")
        )

    # Vocabulary

    def count_total(self, level: LevelLike) -> int:
        """Count all vocabulary words at a level."""
        return (
            self.db.query(func.count(VocabularyWord.id))
            .filter(VocabularyWord.cefr_level == parse_level(level).value)
            .scalar()
        ) or 0

    def find_unseen_words(self, user_id: int, level: LevelLike, limit: int) -> List[VocabularyWord]:
        """Words at a level the user has no state for, most common first."""
        if limit <= 0:
            return []
        seen_ids = select(UserVocabulary.vocabulary_id).where(UserVocabulary.user_id == user_id)
        return (
            self.db.query(VocabularyWord)
            .filter(
                VocabularyWord.cefr_level == parse_level(level).value,
                ~VocabularyWord.id.in_(seen_ids),
            )
            .order_by(VocabularyWord.frequency_rank.asc(), VocabularyWord.id.asc())
            .limit(limit)
            .all()
        )

    def find_practice_words(self, user_id: int, level: LevelLike, limit: int) -> List[VocabularyWord]:
        """Words at a level the user is learning or reviewing, least reviewed first."""
        if limit <= 0:
            return []
        return (
            self.db.query(VocabularyWord)
            .join(UserVocabulary, UserVocabulary.vocabulary_id == VocabularyWord.id)
            .filter(
                UserVocabulary.user_id == user_id,
                VocabularyWord.cefr_level == parse_level(level).value,
                UserVocabulary.status.in_([WordStatus.LEARNING.value, WordStatus.REVIEWING.value]),
            )
            .order_by(UserVocabulary.review_count.asc(), func.random())
            .limit(limit)
            .all()
        )

    def random_words_from_level(
        self, level: LevelLike, exclude_ids: Sequence[int] = (), limit: int = 3
    ) -> List[VocabularyWord]:
        """Random words at a level, used for distractors and assessment questions."""
        if limit <= 0:
            return []
        query = self.db.query(VocabularyWord).filter(VocabularyWord.cefr_level == parse_level(level).value)
        if exclude_ids:
            query = query.filter(~VocabularyWord.id.in_(list(exclude_ids)))
        return query.order_by(func.random()).limit(limit).all()

    # Word states

    def get_word_state(self, user_id: int, word_id: int) -> Optional[UserVocabulary]:
        """Get the user's state for a word, re-read from the database."""
        return (
            self.db.query(UserVocabulary)
            .filter(
                and_(
                    UserVocabulary.user_id == user_id,
                    UserVocabulary.vocabulary_id == word_id,
                )
            )
            .populate_existing()
            .first()
        )

    def count_mastered(self, user_id: int, level: LevelLike) -> int:
        """Count the user's mastered words at a level."""
        return (
            self.db.query(func.count(UserVocabulary.id))
            .join(VocabularyWord, UserVocabulary.vocabulary_id == VocabularyWord.id)
            .filter(
                UserVocabulary.user_id == user_id,
                UserVocabulary.status == WordStatus.MASTERED.value,
                VocabularyWord.cefr_level == parse_level(level).value,
            )
            .scalar()
        ) or 0

    def upsert_learning_states(self, user_id: int, word_ids: Iterable[int]) -> int:
        """Create learning states for words the user has none for.

        Existing states are left untouched. Returns the number of states created.
        """
        word_ids = list(dict.fromkeys(word_ids))
        if not word_ids:
            return 0
        now = utcnow()
        rows = [
            {
                "user_id": user_id,
                "vocabulary_id": word_id,
                "status": WordStatus.LEARNING.value,
                "review_count": 0,
                "first_seen_at": now,
            }
            for word_id in word_ids
        ]
        statement = (
            self._insert(UserVocabulary)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["user_id", "vocabulary_id"])
        )
        result = self.db.execute(statement)
        return max(result.rowcount or 0, 0)

    def upsert_learning_state(self, user_id: int, word_id: int) -> bool:
        """Create a learning state for one word; False if one already existed."""
        return self.upsert_learning_states(user_id, [word_id]) == 1

    def increment_review_count(self, user_id: int, word_id: int) -> int:
        """Add one to the review count in SQL. Returns the number of rows updated."""
        result = self.db.execute(
            update(UserVocabulary)
            .where(
                UserVocabulary.user_id == user_id,
                UserVocabulary.vocabulary_id == word_id,
            )
            .values(review_count=UserVocabulary.review_count + 1)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def set_word_status(
        self,
        user_id: int,
        word_id: int,
        status: WordStatus,
        mastered_at: Optional[datetime] = None,
    ) -> None:
        """Set a word's status; mastered_at is only written when given."""
        values = {"status": status.value}
        if mastered_at is not None:
            values["mastered_at"] = mastered_at
        self.db.execute(
            update(UserVocabulary)
            .where(
                UserVocabulary.user_id == user_id,
                UserVocabulary.vocabulary_id == word_id,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

    def count_states_by_status(self, user_id: int) -> dict[WordStatus, int]:
        """Number of the user's words in each status."""
        rows = (
            self.db.query(UserVocabulary.status, func.count(UserVocabulary.id))
            .filter(UserVocabulary.user_id == user_id)
            .group_by(UserVocabulary.status)
            .all()
        )
        counts = {status: 0 for status in WordStatus}
        for status, count in rows:
            counts[WordStatus(status)] = count
        return counts

    # Attempts

    def append_attempt(
        self,
        user_id: int,
        word_id: int,
        exercise_type: ExerciseType,
        correct: bool,
        response_time_ms: Optional[int] = None,
    ) -> ExerciseResult:
        """Log one answered question."""
        attempt = ExerciseResult(
            user_id=user_id,
            vocabulary_id=word_id,
            exercise_type=exercise_type.value,
            correct=correct,
            attempt_time=utcnow(),
            response_time_ms=response_time_ms,
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def attempt_stats_by_type(self, user_id: int) -> dict[ExerciseType, tuple[int, int]]:
        """Correct and total attempts per exercise type."""
        rows = (
            self.db.query(
                ExerciseResult.exercise_type,
                func.count(ExerciseResult.id),
                func.sum(case((ExerciseResult.correct.is_(True), 1), else_=0)),
            )
            .filter(ExerciseResult.user_id == user_id)
            .group_by(ExerciseResult.exercise_type)
            .all()
        )
        return {ExerciseType(kind): (int(correct or 0), int(total)) for kind, total, correct in rows}

    def recent_activity(self, user_id: int, since: datetime) -> tuple[int, int]:
        """Number of distinct active days and of attempts since a moment."""
        days, attempts = (
            self.db.query(
                func.count(func.distinct(func.date(ExerciseResult.attempt_time))),
                func.count(ExerciseResult.id),
            )
            .filter(ExerciseResult.user_id == user_id, ExerciseResult.attempt_time >= since)
            .one()
        )
        return int(days or 0), int(attempts or 0)

    def _insert(self, model):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Upsert is not supported for dialect {dialect}")
