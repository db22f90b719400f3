"""Database models for the bot."""
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from hebwor.config import settings
from hebwor.models.base import Base, TimestampMixin, utcnow
from hebwor.models.levels import MIN_LEVEL, Level, parse_level


class WordStatus(str, Enum):
    """Learning status of a word for a user."""
    LEARNING = "learning"
    REVIEWING = "reviewing"
    MASTERED = "mastered"


class ExerciseType(str, Enum):
    """Kinds of exercise a word can be practised with."""
    MCQ_HE_RU = "mcq_he_ru"  # Hebrew prompt, pick the Russian translation
    MCQ_RU_HE = "mcq_ru_he"  # Russian prompt, pick the Hebrew word
    FLASHCARD = "flashcard"  # Self-assessed

    @property
    def is_multiple_choice(self) -> bool:
        return self is not ExerciseType.FLASHCARD


class User(Base, TimestampMixin):
    """Telegram user and their level state."""

    __tablename__ = "users"

    id = Column(BigInteger, primary_key=True, autoincrement=False)  # Telegram user ID
    telegram_username = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    language_code = Column(String(10), nullable=True)
    current_level = Column(String(5), nullable=False, default=MIN_LEVEL.value)
    current_level_mastery_percentage = Column(Integer, nullable=False, default=0)
    assessment_completed = Column(Boolean, nullable=False, default=False)
    daily_words_count = Column(Integer, nullable=False, default=settings.learning.default_daily_words)
    is_premium = Column(Boolean, nullable=False, default=False)

    # Relationships
    words = relationship("UserVocabulary", back_populates="user", cascade="all, delete-orphan")
    exercise_results = relationship("ExerciseResult", back_populates="user", cascade="all, delete-orphan")
    conversation_state = relationship(
        "ConversationState", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_users_level_mastery", "current_level", "current_level_mastery_percentage"),
    )

    @property
    def level(self) -> Level:
        return parse_level(self.current_level)


class VocabularyWord(Base):
    """Hebrew word with its Russian translation."""

    __tablename__ = "vocabulary"

    id = Column(Integer, primary_key=True)
    hebrew_word = Column(String(255), nullable=False, unique=True)
    russian_translation = Column(Text, nullable=False)  # Several meanings are separated by ';'
    frequency_rank = Column(Integer, nullable=False)  # 1 = most common
    cefr_level = Column(String(5), nullable=False)
    part_of_speech = Column(String(50))
    example_sentence_hebrew = Column(Text)
    example_sentence_russian = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    users = relationship("UserVocabulary", back_populates="word")

    __table_args__ = (
        Index("idx_vocabulary_level_rank", "cefr_level", "frequency_rank"),
    )

    def __repr__(self) -> str:
        return f"<VocabularyWord {self.id} {self.hebrew_word} ({self.cefr_level}, #{self.frequency_rank})>"


class UserVocabulary(Base):
    """Learning state of one word for one user."""

    __tablename__ = "user_vocabulary"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    vocabulary_id = Column(Integer, ForeignKey("vocabulary.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=WordStatus.LEARNING.value)
    first_seen_at = Column(DateTime(timezone=True), default=utcnow)
    mastered_at = Column(DateTime(timezone=True), nullable=True)
    review_count = Column(Integer, nullable=False, default=0)  # Correct answers so far

    # Relationships
    user = relationship("User", back_populates="words")
    word = relationship("VocabularyWord", back_populates="users")

    __table_args__ = (
        UniqueConstraint("user_id", "vocabulary_id", name="uq_user_vocabulary"),
        Index("idx_user_vocabulary_status", "user_id", "status"),
    )

    @property
    def word_status(self) -> WordStatus:
        return WordStatus(self.status)


class ExerciseResult(Base):
    """One answered exercise question. Append-only."""

    __tablename__ = "exercise_results"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    vocabulary_id = Column(Integer, ForeignKey("vocabulary.id", ondelete="CASCADE"), nullable=False)
    exercise_type = Column(String(50), nullable=False)
    correct = Column(Boolean, nullable=False)
    attempt_time = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    response_time_ms = Column(Integer, nullable=True)

    # Relationships
    user = relationship("User", back_populates="exercise_results")
    word = relationship("VocabularyWord")

    __table_args__ = (
        Index("idx_exercise_results_user", "user_id", "attempt_time"),
        Index("idx_exercise_results_vocabulary", "vocabulary_id"),
    )


class ConversationState(Base):
    """The user's in-flight flow (assessment or exercise session)."""

    __tablename__ = "conversation_state"

    user_id = Column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    flow_kind = Column(String(50), nullable=False)
    state_data = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="conversation_state")
