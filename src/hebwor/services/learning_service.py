"""Learning service: level mastery, word distribution and level advancement."""
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from sqlalchemy.orm import Session

from hebwor.config import LearningSettings, settings
from hebwor.exceptions import NotFoundError
from hebwor.models.levels import Level, next_level, parse_level
from hebwor.models.models import VocabularyWord
from hebwor.monitoring import level_advances, words_delivered
from hebwor.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

LevelLike = Union[str, Level]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def percentage(part: int, total: int) -> int:
    """Share of ``part`` in ``total`` as an integer percentage in [0, 100]."""
    if total <= 0:
        return 0
    # Integer form of round_half_up(100 * part / total)
    value = (200 * part + total) // (2 * total)
    return max(0, min(100, value))


@dataclass(frozen=True)
class WordDistribution:
    """Shares of a word batch taken from the current and the next level."""
    current_level: float
    next_level: float


def get_word_distribution(mastery: int, learning: Optional[LearningSettings] = None) -> WordDistribution:
    """Map mastery of the current level to a current/next level split.

    The more of the current level is mastered, the more words come from the
    next one. Bins are closed on the lower bound.
    """
    learning = learning or settings.learning
    if mastery >= learning.advanced_threshold:
        return WordDistribution(0.30, 0.70)
    if mastery >= learning.balanced_threshold:
        return WordDistribution(0.50, 0.50)
    if mastery >= learning.gradual_threshold:
        return WordDistribution(0.70, 0.30)
    if mastery >= learning.preview_threshold:
        return WordDistribution(0.85, 0.15)
    return WordDistribution(1.00, 0.00)


@dataclass(frozen=True)
class LevelSplit:
    """How many words of a batch to take from each level."""
    level: Level
    current_count: int
    next_level: Optional[Level]
    next_count: int
    mastery: int


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of the level advancement check."""
    advanced: bool
    mastery: int
    new_level: Optional[Level] = None


@dataclass
class DailyWords:
    """Words delivered for one "new words" request."""
    level: Level
    words: List[VocabularyWord] = field(default_factory=list)
    advance: Optional[AdvanceResult] = None


class LearningService:
    """Service for level mastery, word selection and level advancement."""

    def __init__(self, db: Session, learning: Optional[LearningSettings] = None):
        """Initialize the service with a database session."""
        self.db = db
        self.store = ProgressStore(db)
        self.learning = learning or settings.learning

    def calculate_mastery(self, user_id: int, level: LevelLike) -> int:
        """Percentage of all words at a level the user has mastered."""
        level = parse_level(level)
        total = self.store.count_total(level)
        if total == 0:
            return 0
        mastered = self.store.count_mastered(user_id, level)
        return percentage(mastered, total)

    def split_by_mastery(self, user_id: int, level: LevelLike, count: int) -> LevelSplit:
        """Split a batch size between the level and the next one."""
        level = parse_level(level)
        mastery = self.calculate_mastery(user_id, level)
        distribution = get_word_distribution(mastery, self.learning)
        current_count = round_half_up(count * distribution.current_level)
        upcoming = next_level(level)
        next_count = count - current_count if upcoming else 0
        return LevelSplit(
            level=level,
            current_count=current_count,
            next_level=upcoming,
            next_count=next_count,
            mastery=mastery,
        )

    def select_by_distribution(
        self,
        user_id: int,
        level: LevelLike,
        count: int,
        fetch: Callable[[int, Level, int], List[VocabularyWord]],
    ) -> List[VocabularyWord]:
        """Fetch words from the level and the next one following the mastery split."""
        if count <= 0:
            return []
        split = self.split_by_mastery(user_id, level, count)
        words = fetch(user_id, split.level, split.current_count)
        if split.next_level is not None and split.next_count > 0:
            words += fetch(user_id, split.next_level, split.next_count)
        logger.debug(
            f"Selected {len(words)} words for user {user_id}: mastery {split.mastery}%, "
            f"{split.current_count} from {split.level}, {split.next_count} from {split.next_level}"
        )
        return words

    def select_new_words(self, user_id: int, level: LevelLike, count: int) -> List[VocabularyWord]:
        """Pick words the user has not seen yet, most common first.

        May return fewer words than requested, or none, once a level runs out.
        """
        return self.select_by_distribution(user_id, level, count, self.store.find_unseen_words)

    def mark_words_as_learning(self, user_id: int, word_ids: List[int]) -> int:
        """Start tracking presented words. Words already tracked are not reset."""
        created = self.store.upsert_learning_states(user_id, word_ids)
        self.store.commit()
        return created

    def check_advance(self, user_id: int) -> AdvanceResult:
        """Move the user to the next level once the current one is mastered enough."""
        state = self.store.get_user_level_state(user_id)
        if state is None:
            raise NotFoundError(f"User {user_id} not found")

        mastery = self.calculate_mastery(user_id, state.level)
        upcoming = next_level(state.level)

        if upcoming is not None and mastery >= self.learning.auto_advance_threshold:
            self.store.set_user_level_state(user_id, upcoming, 0)
            self.store.commit()
            level_advances.labels(level=upcoming.value).inc()
            logger.info(f"User {user_id} advanced from {state.level} to {upcoming} with {mastery}% mastery")
            return AdvanceResult(advanced=True, mastery=mastery, new_level=upcoming)

        if mastery != state.mastery_percentage:
            self.store.set_user_level_state(user_id, state.level, mastery)
            self.store.commit()
        return AdvanceResult(advanced=False, mastery=mastery)

    def refresh_cached_mastery(self, user_id: int) -> int:
        """Recompute the cached mastery of the user's current level (not committed)."""
        state = self.store.get_user_level_state(user_id)
        if state is None:
            raise NotFoundError(f"User {user_id} not found")
        mastery = self.calculate_mastery(user_id, state.level)
        self.store.set_user_level_state(user_id, state.level, mastery)
        return mastery

    def deliver_daily_words(self, user_id: int, count: Optional[int] = None) -> DailyWords:
        """Handle a "new words" request: advance if due, then select and track words."""
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if count is None:
            count = user.daily_words_count or self.learning.default_daily_words

        advance = self.check_advance(user_id)
        level = advance.new_level if advance.advanced else user.level

        words = self.select_new_words(user_id, level, count)
        if words:
            self.mark_words_as_learning(user_id, [word.id for word in words])
            for word in words:
                words_delivered.labels(level=word.cefr_level).inc()

        logger.info(f"Delivered {len(words)} words to user {user_id} (level: {level})")
        return DailyWords(level=level, words=words, advance=advance)
