"""Tests for learning service."""
from typing import Callable, List

import pytest
from sqlalchemy.orm import Session

from hebwor.config import LearningSettings
from hebwor.exceptions import NotFoundError
from hebwor.models.levels import Level
from hebwor.models.models import User, UserVocabulary, VocabularyWord, WordStatus
from hebwor.services.learning_service import (
    LearningService,
    WordDistribution,
    get_word_distribution,
    percentage,
    round_half_up,
)
from hebwor.services.progress_store import ProgressStore


@pytest.fixture
def learning_service(db: Session) -> LearningService:
    """Create a learning service instance."""
    return LearningService(db, LearningSettings())


def master(make_state: Callable, user: User, words: List[VocabularyWord]) -> None:
    for word in words:
        make_state(user, word, WordStatus.MASTERED, review_count=8)


# Pure helpers

@pytest.mark.parametrize(
    "value, expected",
    [(0.0, 0), (2.5, 3), (1.5, 2), (4.25, 4), (3.49, 3), (0.5, 1)],
)
def test_round_half_up(value: float, expected: int) -> None:
    """Test that halves are rounded up."""
    assert round_half_up(value) == expected


def test_percentage() -> None:
    """Test integer percentages with half-up rounding and clamping."""
    assert percentage(0, 0) == 0
    assert percentage(1, 8) == 13  # 12.5
    assert percentage(17, 20) == 85
    assert percentage(24, 25) == 96
    assert percentage(5, 3) == 100


@pytest.mark.parametrize(
    "mastery, expected",
    [
        (10, WordDistribution(1.00, 0.00)),
        (55, WordDistribution(0.85, 0.15)),
        (70, WordDistribution(0.70, 0.30)),
        (85, WordDistribution(0.50, 0.50)),
        (95, WordDistribution(0.30, 0.70)),
    ],
)
def test_word_distribution_bins(mastery: int, expected: WordDistribution) -> None:
    """Test the distribution of each mastery bin."""
    assert get_word_distribution(mastery, LearningSettings()) == expected


def test_word_distribution_bounds_are_inclusive() -> None:
    """Test that each bin starts at its threshold."""
    learning = LearningSettings()
    assert get_word_distribution(49, learning).current_level == 1.00
    assert get_word_distribution(50, learning).current_level == 0.85
    assert get_word_distribution(65, learning).current_level == 0.70
    assert get_word_distribution(80, learning).current_level == 0.50
    assert get_word_distribution(90, learning).current_level == 0.30
    assert get_word_distribution(100, learning).current_level == 0.30


def test_word_distribution_shares_sum_to_one() -> None:
    """Test that the shares always sum to exactly 1.0 and never grow for the current level."""
    learning = LearningSettings()
    previous = 1.0
    for mastery in range(0, 101):
        distribution = get_word_distribution(mastery, learning)
        assert distribution.current_level + distribution.next_level == 1.0
        assert distribution.current_level <= previous
        previous = distribution.current_level


# Mastery

def test_mastery_of_empty_level_is_zero(learning_service: LearningService, user: User) -> None:
    """Test that a level without words has 0% mastery."""
    assert learning_service.calculate_mastery(user.id, Level.C2) == 0


def test_mastery_counts_only_mastered_words_at_level(
    learning_service: LearningService, user: User, make_words: Callable, make_state: Callable
) -> None:
    """Test mastery calculation."""
    a1 = make_words(Level.A1, 8)
    a2 = make_words(Level.A2, 4, start_rank=100)
    make_state(user, a1[0], WordStatus.MASTERED)
    make_state(user, a1[1], WordStatus.REVIEWING, review_count=5)
    make_state(user, a1[2], WordStatus.LEARNING)
    master(make_state, user, a2)

    assert learning_service.calculate_mastery(user.id, Level.A1) == 13  # 1/8 = 12.5%
    assert learning_service.calculate_mastery(user.id, Level.A2) == 100


def test_mastery_is_per_user(
    learning_service: LearningService, make_user: Callable, make_words: Callable, make_state: Callable
) -> None:
    """Test that other users' progress does not count."""
    words = make_words(Level.A1, 4)
    alice, bob = make_user(), make_user()
    master(make_state, alice, words)

    assert learning_service.calculate_mastery(alice.id, Level.A1) == 100
    assert learning_service.calculate_mastery(bob.id, Level.A1) == 0


# Word selection

def test_select_new_words_at_zero_mastery(
    learning_service: LearningService, make_user: Callable, make_words: Callable
) -> None:
    """Test that a beginner of a level only gets words of that level, most common first."""
    user = make_user(Level.B1)
    b1 = make_words(Level.B1, 10, start_rank=500)
    make_words(Level.B2, 10, start_rank=1000)

    words = learning_service.select_new_words(user.id, Level.B1, 5)

    assert [w.id for w in words] == [w.id for w in b1[:5]]
    assert all(w.cefr_level == "B1" for w in words)
    assert [w.frequency_rank for w in words] == sorted(w.frequency_rank for w in words)


def test_select_new_words_at_85_percent_mastery(
    learning_service: LearningService,
    make_user: Callable,
    make_words: Callable,
    make_state: Callable,
) -> None:
    """Test the balanced split: 3 words of the level and 2 of the next one."""
    user = make_user(Level.B1)
    b1 = make_words(Level.B1, 20, start_rank=500)
    b2 = make_words(Level.B2, 10, start_rank=1000)
    master(make_state, user, b1[:17])

    words = learning_service.select_new_words(user.id, Level.B1, 5)

    assert [w.id for w in words] == [w.id for w in b1[17:20]] + [w.id for w in b2[:2]]


def test_select_new_words_skips_seen_words(
    learning_service: LearningService, user: User, make_words: Callable, make_state: Callable
) -> None:
    """Test that words with a state are never offered again."""
    a1 = make_words(Level.A1, 6)
    make_state(user, a1[0])
    make_state(user, a1[2], WordStatus.REVIEWING, review_count=4)

    words = learning_service.select_new_words(user.id, Level.A1, 3)

    assert [w.id for w in words] == [a1[1].id, a1[3].id, a1[4].id]


def test_select_new_words_returns_fewer_when_level_is_exhausted(
    learning_service: LearningService, user: User, make_words: Callable, make_state: Callable
) -> None:
    """Test that a nearly exhausted level gives a shorter list."""
    a1 = make_words(Level.A1, 3)
    make_state(user, a1[0])

    assert len(learning_service.select_new_words(user.id, Level.A1, 5)) == 2


def test_select_new_words_at_exhausted_top_level_is_empty(
    learning_service: LearningService, make_user: Callable, make_words: Callable, make_state: Callable
) -> None:
    """Test that nothing is returned, without errors, once C2 is fully seen."""
    user = make_user(Level.C2)
    for word in make_words(Level.C2, 4, start_rank=4000):
        make_state(user, word)

    assert learning_service.select_new_words(user.id, Level.C2, 5) == []


def test_select_new_words_at_top_level_never_looks_further(
    learning_service: LearningService, make_user: Callable, make_words: Callable, make_state: Callable
) -> None:
    """Test that C2 users with high mastery only get C2 words."""
    user = make_user(Level.C2)
    c2 = make_words(Level.C2, 12, start_rank=4000)
    master(make_state, user, c2[:10])  # 83%

    split = learning_service.split_by_mastery(user.id, Level.C2, 5)
    assert split.next_level is None
    assert split.next_count == 0
    assert [w.id for w in learning_service.select_new_words(user.id, Level.C2, 5)] == [c2[10].id, c2[11].id]


def test_split_by_mastery_rounds_half_up(
    learning_service: LearningService, user: User, make_words: Callable, make_state: Callable
) -> None:
    """Test that 5 x 0.5 gives 3 words of the level."""
    a1 = make_words(Level.A1, 10)
    master(make_state, user, a1[:8])

    split = learning_service.split_by_mastery(user.id, Level.A1, 5)

    assert split.mastery == 80
    assert (split.current_count, split.next_count) == (3, 2)
    assert split.next_level is Level.A2


def test_mark_words_as_learning_is_idempotent(
    learning_service: LearningService, db: Session, user: User, make_words: Callable, make_state: Callable
) -> None:
    """Test that presenting words again does not reset their state."""
    a1 = make_words(Level.A1, 3)
    make_state(user, a1[0], WordStatus.REVIEWING, review_count=5)

    created = learning_service.mark_words_as_learning(user.id, [w.id for w in a1])
    assert created == 2
    assert learning_service.mark_words_as_learning(user.id, [w.id for w in a1]) == 0

    states = {s.vocabulary_id: s for s in db.query(UserVocabulary).populate_existing().all()}
    assert len(states) == 3
    assert states[a1[0].id].status == WordStatus.REVIEWING.value
    assert states[a1[0].id].review_count == 5
    assert states[a1[1].id].status == WordStatus.LEARNING.value
    assert states[a1[1].id].review_count == 0


# Level advancement

def test_check_advance_moves_user_up(
    learning_service: LearningService, db: Session, make_user: Callable, make_words: Callable, make_state: Callable
) -> None:
    """Test advancing from A2 to B1 at 96% mastery."""
    user = make_user(Level.A2)
    a2 = make_words(Level.A2, 25, start_rank=100)
    master(make_state, user, a2[:24])

    result = learning_service.check_advance(user.id)

    assert result.advanced is True
    assert result.new_level is Level.B1
    assert result.mastery == 96

    state = ProgressStore(db).get_user_level_state(user.id)
    assert state.level is Level.B1
    assert state.mastery_percentage == 0


def test_check_advance_below_threshold_refreshes_cache(
    learning_service: LearningService, db: Session, user: User, make_words: Callable, make_state: Callable
) -> None:
    """Test that nothing moves below the threshold, but the cached mastery is updated."""
    a1 = make_words(Level.A1, 10)
    master(make_state, user, a1[:9])

    result = learning_service.check_advance(user.id)

    assert result.advanced is False
    assert result.new_level is None
    assert result.mastery == 90
    state = ProgressStore(db).get_user_level_state(user.id)
    assert state.level is Level.A1
    assert state.mastery_percentage == 90


def test_check_advance_never_leaves_c2(
    learning_service: LearningService, make_user: Callable, make_words: Callable, make_state: Callable
) -> None:
    """Test that C2 users stay at C2 with full mastery."""
    user = make_user(Level.C2)
    master(make_state, user, make_words(Level.C2, 3, start_rank=4000))

    result = learning_service.check_advance(user.id)

    assert result.advanced is False
    assert result.mastery == 100


def test_check_advance_unknown_user(learning_service: LearningService) -> None:
    """Test that an unknown user is reported."""
    with pytest.raises(NotFoundError):
        learning_service.check_advance(999)


def test_deliver_daily_words_advances_first(
    learning_service: LearningService, db: Session, make_user: Callable, make_words: Callable, make_state: Callable
) -> None:
    """Test that new words come from the new level after an advance."""
    user = make_user(Level.A1, daily_words_count=5)
    master(make_state, user, make_words(Level.A1, 20))
    a2 = make_words(Level.A2, 8, start_rank=100)
    make_words(Level.B1, 8, start_rank=500)

    delivery = learning_service.deliver_daily_words(user.id)

    assert delivery.advance.advanced is True
    assert delivery.level is Level.A2
    assert [w.id for w in delivery.words] == [w.id for w in a2[:5]]
    tracked = db.query(UserVocabulary).filter(UserVocabulary.vocabulary_id.in_([w.id for w in a2[:5]])).count()
    assert tracked == 5


def test_deliver_daily_words_uses_user_batch_size(
    learning_service: LearningService, make_user: Callable, make_words: Callable
) -> None:
    """Test that the user's daily words count is used."""
    user = make_user(Level.A1, daily_words_count=7)
    make_words(Level.A1, 20)

    delivery = learning_service.deliver_daily_words(user.id)

    assert delivery.advance.advanced is False
    assert len(delivery.words) == 7
    assert len(learning_service.deliver_daily_words(user.id, count=10).words) == 10
