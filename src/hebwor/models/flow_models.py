"""Typed per-flow conversation state.

Each flow kind has its own dataclass. ``ConversationState`` rows carry the
kind as a tag next to the serialized data, so loading a row always yields
the dataclass for that kind.
"""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from hebwor.models.models import ExerciseType, VocabularyWord


class FlowKind(str, Enum):
    """Tags of the flows a user can have in progress."""
    ASSESSMENT = "assessment"
    EXERCISE = "exercise"


@dataclass
class AssessmentQuestion:
    """One multiple-choice question of the level assessment."""
    hebrew: str
    russian: str  # Question text shown to the user
    options: List[str]
    correct_index: int
    level: str


@dataclass
class ShuffledQuestion:
    """Options of a question in the order they were shown."""
    options: List[str]
    correct_index: int


@dataclass
class AssessmentFlow:
    """State of a running level assessment."""
    kind: ClassVar[FlowKind] = FlowKind.ASSESSMENT

    questions: List[AssessmentQuestion]
    answers: Dict[int, int] = field(default_factory=dict)  # question index -> original option index
    shuffled: Dict[int, ShuffledQuestion] = field(default_factory=dict)

    def to_data(self) -> Dict[str, Any]:
        """Convert to serializable data for storage."""
        return {
            "questions": [asdict(q) for q in self.questions],
            "answers": {str(k): v for k, v in self.answers.items()},
            "shuffled": {str(k): asdict(v) for k, v in self.shuffled.items()},
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "AssessmentFlow":
        """Create an instance from stored data."""
        return cls(
            questions=[AssessmentQuestion(**q) for q in data.get("questions", [])],
            answers={int(k): int(v) for k, v in data.get("answers", {}).items()},
            shuffled={int(k): ShuffledQuestion(**v) for k, v in data.get("shuffled", {}).items()},
        )

    def answer_list(self) -> List[Optional[int]]:
        """Answers in question order; None for unanswered questions."""
        return [self.answers.get(i) for i in range(len(self.questions))]


@dataclass
class ExerciseWord:
    """Snapshot of a vocabulary word taken when the session starts."""
    id: int
    hebrew_word: str
    russian_translation: str
    cefr_level: str
    example_sentence_hebrew: Optional[str] = None
    example_sentence_russian: Optional[str] = None

    @classmethod
    def from_word(cls, word: VocabularyWord) -> "ExerciseWord":
        return cls(
            id=word.id,
            hebrew_word=word.hebrew_word,
            russian_translation=word.russian_translation,
            cefr_level=word.cefr_level,
            example_sentence_hebrew=word.example_sentence_hebrew,
            example_sentence_russian=word.example_sentence_russian,
        )


@dataclass
class CurrentQuestion:
    """Question that is currently shown to the user."""
    options: List[str]
    correct_index: Optional[int]  # None for flashcards
    asked_at: float  # epoch seconds


@dataclass
class ExerciseFlow:
    """State of a running exercise session."""
    kind: ClassVar[FlowKind] = FlowKind.EXERCISE

    exercise_type: ExerciseType
    words: List[ExerciseWord]
    started_at: float
    current_index: int = 0
    correct_count: int = 0
    current_question: Optional[CurrentQuestion] = None

    @property
    def current_word(self) -> Optional[ExerciseWord]:
        if self.current_index >= len(self.words):
            return None
        return self.words[self.current_index]

    @property
    def is_finished(self) -> bool:
        return self.current_index >= len(self.words)

    def to_data(self) -> Dict[str, Any]:
        """Convert to serializable data for storage."""
        return {
            "exercise_type": self.exercise_type.value,
            "words": [asdict(w) for w in self.words],
            "started_at": self.started_at,
            "current_index": self.current_index,
            "correct_count": self.correct_count,
            "current_question": asdict(self.current_question) if self.current_question else None,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "ExerciseFlow":
        """Create an instance from stored data."""
        question = data.get("current_question")
        return cls(
            exercise_type=ExerciseType(data["exercise_type"]),
            words=[ExerciseWord(**w) for w in data["words"]],
            started_at=float(data["started_at"]),
            current_index=int(data.get("current_index", 0)),
            correct_count=int(data.get("correct_count", 0)),
            current_question=CurrentQuestion(**question) if question else None,
        )


FlowState = Union[AssessmentFlow, ExerciseFlow]
