"""Test configuration."""
import os
import tempfile
from pathlib import Path

# Set test environment before any imports
TEST_DIR = Path(tempfile.mkdtemp(prefix="hebwor-test-"))
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DIR / 'test.db'}"
os.environ["DATA_DIR"] = str(TEST_DIR / "data")
os.environ["ASSESSMENT_PROVIDER"] = "vocabulary"
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST-TOKEN")

from typing import Callable, Generator, List, Optional

import pytest
from faker import Faker
from sqlalchemy.orm import Session

# Import after environment setup
from hebwor.config import ensure_directories
from hebwor.models.base import Base, SessionLocal, engine, init_db
from hebwor.models.levels import Level
from hebwor.models.models import User, UserVocabulary, VocabularyWord, WordStatus

fake = Faker()


@pytest.fixture(autouse=True)
def setup_test_environment() -> None:
    """Set up test environment before each test."""
    ensure_directories()


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    init_db()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    """Factory creating users."""
    def _make_user(level: Level = Level.A1, **kwargs) -> User:
        user = User(
            id=kwargs.pop("id", fake.unique.random_int(min=1000, max=10**9)),
            telegram_username=fake.user_name(),
            first_name=fake.first_name(),
            current_level=level.value,
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make_user


@pytest.fixture
def user(make_user: Callable[..., User]) -> User:
    """Create a test user at A1."""
    return make_user()


@pytest.fixture
def make_words(db: Session) -> Callable[..., List[VocabularyWord]]:
    """Factory creating vocabulary words at a level, ranked from ``start_rank``."""
    def _make_words(level: Level, count: int, start_rank: int = 1) -> List[VocabularyWord]:
        words = [
            VocabularyWord(
                hebrew_word=f"{level.value}-{fake.unique.lexify('????????')}",
                russian_translation=fake.unique.lexify("перевод-????????"),
                frequency_rank=start_rank + i,
                cefr_level=level.value,
                example_sentence_hebrew=fake.sentence(),
                example_sentence_russian=fake.sentence(),
            )
            for i in range(count)
        ]
        db.add_all(words)
        db.commit()
        for word in words:
            db.refresh(word)
        return words
    return _make_words


@pytest.fixture
def make_state(db: Session) -> Callable[..., UserVocabulary]:
    """Factory creating a user's state for a word."""
    def _make_state(
        user: User,
        word: VocabularyWord,
        status: WordStatus = WordStatus.LEARNING,
        review_count: int = 0,
        mastered_at: Optional[object] = None,
    ) -> UserVocabulary:
        state = UserVocabulary(
            user_id=user.id,
            vocabulary_id=word.id,
            status=status.value,
            review_count=review_count,
            mastered_at=mastered_at,
        )
        db.add(state)
        db.commit()
        db.refresh(state)
        return state
    return _make_state
