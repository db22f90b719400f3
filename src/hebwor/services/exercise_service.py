"""Exercise service: answer scoring, word promotion and exercise sessions."""
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from hebwor.config import LearningSettings, settings
from hebwor.exceptions import FlowNotFoundError, NotFoundError
from hebwor.models.base import utcnow
from hebwor.models.flow_models import CurrentQuestion, ExerciseFlow, ExerciseWord, FlowKind
from hebwor.models.models import ExerciseType, UserVocabulary, VocabularyWord, WordStatus
from hebwor.monitoring import answers_recorded, word_promotions
from hebwor.services.flow_service import FlowService
from hebwor.services.learning_service import LearningService, percentage, round_half_up
from hebwor.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

# Flashcard answers: the user either knew the word or did not
FLASHCARD_DIDNT_KNOW = 0
FLASHCARD_KNEW = 1


@dataclass(frozen=True)
class ScoreResult:
    """Word state after an answer was recorded."""
    status: WordStatus
    review_count: int
    promoted: bool = False


@dataclass
class ExerciseQuestion:
    """Question ready to be shown to the user."""
    index: int
    total: int
    exercise_type: ExerciseType
    word: ExerciseWord
    prompt: str
    options: List[str] = field(default_factory=list)  # Empty for flashcards


@dataclass
class AnswerOutcome:
    """Result of answering the current question of a session."""
    correct: bool
    correct_answer: str
    word: ExerciseWord
    score: ScoreResult
    finished: bool


@dataclass
class ExerciseSummary:
    """Results of a finished session."""
    exercise_type: ExerciseType
    correct: int
    total: int
    percentage: int
    duration_seconds: int


class ExerciseService:
    """Service for exercise sessions and scoring of answers."""

    def __init__(
        self,
        db: Session,
        learning: Optional[LearningSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the service with a database session."""
        self.db = db
        self.store = ProgressStore(db)
        self.learning = learning or settings.learning
        self.learning_service = LearningService(db, self.learning)
        self.flows = FlowService(db)
        self.rng = rng or random.Random()
        self.clock = clock

    # Scoring

    def _promotion(self, state: UserVocabulary) -> Optional[WordStatus]:
        """Next status for a word state, if it has earned one."""
        status = state.word_status
        if status is WordStatus.LEARNING and state.review_count >= self.learning.learning_to_reviewing:
            return WordStatus.REVIEWING
        elif status is WordStatus.REVIEWING and state.review_count >= self.learning.reviewing_to_mastered:
            return WordStatus.MASTERED
        return None

    def record_answer(
        self,
        user_id: int,
        word_id: int,
        exercise_type: ExerciseType,
        correct: bool,
        response_time_ms: Optional[int] = None,
    ) -> ScoreResult:
        """Log an answer and promote the word if it earned it.

        Wrong answers are logged only; a word is never demoted. At most one
        promotion happens per answer.
        """
        if self.store.get_word_state(user_id, word_id) is None:
            raise NotFoundError(f"No state for word {word_id} of user {user_id}")

        promoted_to = None
        with self.store.transaction():
            self.store.append_attempt(user_id, word_id, exercise_type, correct, response_time_ms)
            if correct:
                self.store.increment_review_count(user_id, word_id)
                state = self.store.get_word_state(user_id, word_id)
                promoted_to = self._promotion(state)
                if promoted_to is WordStatus.MASTERED:
                    self.store.set_word_status(user_id, word_id, promoted_to, mastered_at=utcnow())
                    self.learning_service.refresh_cached_mastery(user_id)
                elif promoted_to is not None:
                    self.store.set_word_status(user_id, word_id, promoted_to)

        state = self.store.get_word_state(user_id, word_id)
        answers_recorded.labels(exercise_type=exercise_type.value, correct=str(correct).lower()).inc()
        if promoted_to is not None:
            word_promotions.labels(status=promoted_to.value).inc()
            logger.info(f"Word {word_id} of user {user_id} promoted to {promoted_to.value}")

        return ScoreResult(
            status=state.word_status,
            review_count=state.review_count,
            promoted=promoted_to is not None,
        )

    # Sessions

    def select_exercise_words(self, user_id: int, level, count: int) -> List[VocabularyWord]:
        """Pick words the user is learning or reviewing, split across levels by mastery."""
        return self.learning_service.select_by_distribution(
            user_id, level, count, self.store.find_practice_words
        )

    def start_session(self, user_id: int, exercise_type: ExerciseType) -> Optional[ExerciseFlow]:
        """Start a new session, replacing any flow in progress.

        Returns None when the user has no words to practise.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        if exercise_type.is_multiple_choice:
            size = self.learning.exercise_set_size
        else:
            size = self.learning.flashcard_set_size
        words = self.select_exercise_words(user_id, user.level, size)
        if not words:
            logger.info(f"User {user_id} has no words for {exercise_type.value}")
            return None

        flow = ExerciseFlow(
            exercise_type=exercise_type,
            words=[ExerciseWord.from_word(word) for word in words],
            started_at=self.clock(),
        )
        self.flows.save(user_id, flow)
        logger.info(f"Started {exercise_type.value} session with {len(words)} words for user {user_id}")
        return flow

    def _load(self, user_id: int) -> ExerciseFlow:
        flow = self.flows.load(user_id, ExerciseFlow)
        if flow is None:
            raise FlowNotFoundError(f"User {user_id} has no exercise in progress")
        return flow

    def _build_options(self, word: ExerciseWord, exercise_type: ExerciseType) -> List[str]:
        """Correct answer plus same-level distractors, shuffled."""
        distractors = self.store.random_words_from_level(
            word.cefr_level, exclude_ids=[word.id], limit=self.learning.distractor_count
        )
        if exercise_type is ExerciseType.MCQ_HE_RU:
            correct = word.russian_translation
            candidates = [d.russian_translation for d in distractors]
        else:
            correct = word.hebrew_word
            candidates = [d.hebrew_word for d in distractors]
        options = list(dict.fromkeys([correct] + candidates))
        self.rng.shuffle(options)
        return options

    def next_question(self, user_id: int) -> Optional[ExerciseQuestion]:
        """Prepare the current question of the session, or None once it is over."""
        flow = self._load(user_id)
        word = flow.current_word
        if word is None:
            return None

        if flow.exercise_type.is_multiple_choice:
            options = self._build_options(word, flow.exercise_type)
            correct = word.russian_translation if flow.exercise_type is ExerciseType.MCQ_HE_RU else word.hebrew_word
            correct_index = options.index(correct)
        else:
            options = []
            correct_index = None
        flow.current_question = CurrentQuestion(
            options=options, correct_index=correct_index, asked_at=self.clock()
        )
        self.flows.save(user_id, flow)

        prompt = word.russian_translation if flow.exercise_type is ExerciseType.MCQ_RU_HE else word.hebrew_word
        return ExerciseQuestion(
            index=flow.current_index,
            total=len(flow.words),
            exercise_type=flow.exercise_type,
            word=word,
            prompt=prompt,
            options=options,
        )

    def answer(self, user_id: int, question_index: int, choice: int) -> Optional[AnswerOutcome]:
        """Score the answer to the current question and move on.

        ``choice`` is the option index for multiple choice, and
        ``FLASHCARD_KNEW`` or ``FLASHCARD_DIDNT_KNOW`` for flashcards.
        Answers to any other than the current question are ignored (None).
        """
        flow = self._load(user_id)
        if question_index != flow.current_index or flow.current_question is None or flow.is_finished:
            logger.debug(f"Ignoring stale answer {question_index} from user {user_id}")
            return None

        word = flow.current_word
        question = flow.current_question
        if flow.exercise_type.is_multiple_choice:
            correct = choice == question.correct_index
            correct_answer = (
                word.russian_translation if flow.exercise_type is ExerciseType.MCQ_HE_RU else word.hebrew_word
            )
        else:
            correct = choice == FLASHCARD_KNEW
            correct_answer = word.russian_translation
        response_time_ms = max(0, int((self.clock() - question.asked_at) * 1000))

        score = self.record_answer(user_id, word.id, flow.exercise_type, correct, response_time_ms)

        if correct:
            flow.correct_count += 1
        flow.current_index += 1
        flow.current_question = None
        self.flows.save(user_id, flow)

        return AnswerOutcome(
            correct=correct,
            correct_answer=correct_answer,
            word=word,
            score=score,
            finished=flow.is_finished,
        )

    def finish(self, user_id: int) -> ExerciseSummary:
        """Summarise the session and end it."""
        flow = self._load(user_id)
        total = len(flow.words)
        summary = ExerciseSummary(
            exercise_type=flow.exercise_type,
            correct=flow.correct_count,
            total=total,
            percentage=percentage(flow.correct_count, total),
            duration_seconds=round_half_up(max(0.0, self.clock() - flow.started_at)),
        )
        self.flows.clear(user_id, FlowKind.EXERCISE)
        logger.info(
            f"User {user_id} finished {flow.exercise_type.value}: {summary.correct}/{summary.total} "
            f"in {summary.duration_seconds}s"
        )
        return summary
