"""Tests for the level assessment."""
import json
import random
from typing import Callable, List, Optional, Sequence
from unittest.mock import Mock

import pytest
from openai import OpenAIError
from sqlalchemy.orm import Session

from hebwor.config import AssessmentSettings
from hebwor.exceptions import FlowNotFoundError, NotFoundError
from hebwor.models.flow_models import AssessmentFlow, AssessmentQuestion
from hebwor.models.levels import Level
from hebwor.models.models import ConversationState, User, WordStatus
from hebwor.services.assessment_service import (
    QUESTIONS_PER_LEVEL,
    AssessmentProvider,
    AssessmentResult,
    AssessmentService,
    LLMAssessmentProvider,
    VocabularyAssessmentProvider,
    create_assessment_provider,
    grade_by_level,
    parse_json_reply,
    score_by_level,
)
from hebwor.services.flow_service import FlowService
from hebwor.services.progress_store import ProgressStore


def make_question(level: str, correct_index: int = 0) -> AssessmentQuestion:
    return AssessmentQuestion(
        hebrew=f"{level}-word",
        russian=f"Что означает {level}-word?",
        options=["a", "b", "c", "d"],
        correct_index=correct_index,
        level=level,
    )


class StaticProvider(AssessmentProvider):
    """Provider with fixed questions that records what it was asked to grade."""

    def __init__(self, questions: List[AssessmentQuestion], level: Level = Level.B1):
        self.questions = questions
        self.level = level
        self.analyzed: Optional[Sequence[Optional[int]]] = None

    def generate_questions(self, is_premium: bool = False) -> List[AssessmentQuestion]:
        return list(self.questions)

    def analyze(self, questions, answers, is_premium: bool = False) -> AssessmentResult:
        self.analyzed = list(answers)
        return AssessmentResult(level=self.level, reasoning="test")


@pytest.fixture
def provider(db: Session) -> VocabularyAssessmentProvider:
    """Create a vocabulary assessment provider."""
    return VocabularyAssessmentProvider(db, rng=random.Random(1))


# Grading

def test_score_by_level() -> None:
    """Test counting correct answers per level."""
    questions = [make_question("A1"), make_question("A1", 1), make_question("B1", 2)]

    scores = score_by_level(questions, [0, 0, 2])

    assert scores == {Level.A1: [1, 2], Level.B1: [1, 1]}


def test_unanswered_questions_count_as_wrong() -> None:
    """Test that missing answers are wrong."""
    assert score_by_level([make_question("A2")], [None]) == {Level.A2: [0, 1]}
    assert score_by_level([make_question("A2")], []) == {Level.A2: [0, 1]}


@pytest.mark.parametrize(
    "answers, expected",
    [
        ([0, 0, 0, 0, 0, 0, 0], Level.C1),  # everything right
        ([1, 1, 1, 1, 1, 1, 1], Level.A1),  # nothing right
        ([0, 1, 0, 1, 1, 1, 1], Level.A2),  # half of A1, all of A2, nothing of B1
        ([0, 0, 0, 1, 1, 0, 0], Level.A2),  # B1 failed, later levels do not count
        ([0, 0, 0, 0, 1, 0, 1], Level.B2),  # half of B2, C1 failed
    ],
)
def test_analyze_assigns_highest_consecutive_level(
    provider: VocabularyAssessmentProvider, answers: List[int], expected: Level
) -> None:
    """Test that the level is the highest one with all lower levels passed."""
    questions = [
        make_question("A1"), make_question("A1"),
        make_question("A2"),
        make_question("B1"),
        make_question("B2"), make_question("B2"),
        make_question("C1"),
    ]

    result = provider.analyze(questions, answers)

    assert result.level is expected
    assert result.reasoning.startswith("Правильные ответы по уровням")
    assert result.recommendations


def test_analyze_skips_levels_without_questions(provider: VocabularyAssessmentProvider) -> None:
    """Test that a level missing from the vocabulary does not block later ones."""
    questions = [make_question("A1"), make_question("B1")]

    assert provider.analyze(questions, [0, 0]).level is Level.B1


def test_analyze_without_questions(provider: VocabularyAssessmentProvider) -> None:
    """Test that an empty assessment gives the first level."""
    result = provider.analyze([], [])

    assert result.level is Level.A1
    assert result.reasoning == "Нет ответов для анализа"


def test_generate_questions_from_vocabulary(provider: VocabularyAssessmentProvider, make_words: Callable) -> None:
    """Test question generation from the vocabulary table."""
    make_words(Level.A1, 5)
    make_words(Level.B1, 5, start_rank=500)
    make_words(Level.C2, 1, start_rank=4000)  # no distractors available

    questions = provider.generate_questions()

    levels = [q.level for q in questions]
    assert levels == ["A1"] * QUESTIONS_PER_LEVEL[Level.A1] + ["B1"] * QUESTIONS_PER_LEVEL[Level.B1]
    for question in questions:
        assert len(question.options) == 4
        assert len(set(question.options)) == 4
        assert question.hebrew in question.russian
        assert 0 <= question.correct_index < 4


# Flow

def test_start_without_questions(db: Session, user: User) -> None:
    """Test that no assessment starts without vocabulary."""
    assert AssessmentService(db).start(user.id) is None


def test_start_unknown_user(db: Session) -> None:
    """Test that an unknown user is reported."""
    with pytest.raises(NotFoundError):
        AssessmentService(db).start(999)


def test_answer_maps_shuffled_choice_to_original_option(db: Session, user: User) -> None:
    """Test that answers given on shuffled options are stored as original indexes."""
    provider = StaticProvider([make_question("A1", correct_index=2), make_question("A2", correct_index=0)])
    service = AssessmentService(db, provider=provider, rng=random.Random(3))
    service.start(user.id)

    view = service.question(user.id, 0)
    assert sorted(view.options) == ["a", "b", "c", "d"]
    assert view.total == 2
    choice = view.options.index("c")
    answer = service.answer(user.id, 0, choice)
    assert answer.correct is True
    assert answer.correct_answer == "c"
    assert answer.finished is False

    view = service.question(user.id, 1)
    wrong = view.options.index("d")
    answer = service.answer(user.id, 1, wrong)
    assert answer.correct is False
    assert answer.correct_answer == "a"
    assert answer.finished is True

    assert service.question(user.id, 2) is None
    assert FlowService(db).load(user.id, AssessmentFlow).answer_list() == [2, 3]


def test_repeated_answer_is_ignored(db: Session, user: User) -> None:
    """Test that each question is answered once."""
    service = AssessmentService(db, provider=StaticProvider([make_question("A1")]))
    service.start(user.id)
    service.question(user.id, 0)

    assert service.answer(user.id, 0, 0) is not None
    assert service.answer(user.id, 0, 1) is None

    with pytest.raises(ValueError):
        service.answer(user.id, 5, 0)


def test_complete_sets_level(db: Session, user: User, make_words: Callable, make_state: Callable) -> None:
    """Test that completing the assessment applies the assigned level."""
    b1 = make_words(Level.B1, 4, start_rank=500)
    make_state(user, b1[0], WordStatus.MASTERED, review_count=8)
    provider = StaticProvider([make_question("A1"), make_question("B1")], level=Level.B1)
    service = AssessmentService(db, provider=provider)
    service.start(user.id)
    service.question(user.id, 0)
    service.answer(user.id, 0, 0)

    result = service.complete(user.id)

    assert result.level is Level.B1
    assert provider.analyzed[1] is None
    state = ProgressStore(db).get_user_level_state(user.id)
    assert state.level is Level.B1
    assert state.mastery_percentage == 25
    db.refresh(user)
    assert user.assessment_completed is True
    assert db.query(ConversationState).count() == 0


def test_complete_without_assessment(db: Session, user: User) -> None:
    """Test completing when nothing is in progress."""
    with pytest.raises(FlowNotFoundError):
        AssessmentService(db).complete(user.id)


def test_grade_by_level() -> None:
    """Test grading on per-level scores."""
    assert grade_by_level({}) is Level.A1
    assert grade_by_level({Level.A1: [2, 2], Level.A2: [1, 1], Level.B1: [0, 2]}) is Level.A2
    assert grade_by_level({Level.A1: [0, 2], Level.B2: [2, 2]}) is Level.A1


# LLM provider

def reply(content: Optional[str]) -> Mock:
    """Build a chat completion response carrying ``content``."""
    return Mock(choices=[Mock(message=Mock(content=content))])


@pytest.fixture
def client() -> Mock:
    """Create a mock OpenAI client."""
    return Mock()


@pytest.fixture
def llm_provider(client: Mock) -> LLMAssessmentProvider:
    """Create an LLM provider around the mock client."""
    return LLMAssessmentProvider(client, model="basic-model", premium_model="premium-model")


def sent_prompt(client: Mock) -> str:
    return client.chat.completions.create.call_args.kwargs["messages"][-1]["content"]


def test_parse_json_reply() -> None:
    """Test parsing plain and wrapped JSON replies."""
    assert parse_json_reply('{"level": "B1"}') == {"level": "B1"}
    assert parse_json_reply('Вот результат:\n```json\n{"level": "B1"}\n```') == {"level": "B1"}

    with pytest.raises(ValueError):
        parse_json_reply("уровень B1")
    with pytest.raises(ValueError):
        parse_json_reply("[1, 2]")


@pytest.mark.parametrize("is_premium, model", [(False, "basic-model"), (True, "premium-model")])
def test_llm_model_follows_premium_flag(
    llm_provider: LLMAssessmentProvider, client: Mock, is_premium: bool, model: str
) -> None:
    """Test that premium users are served by the premium model."""
    client.chat.completions.create.return_value = reply('{"questions": []}')

    assert llm_provider.generate_questions(is_premium) == []

    assert client.chat.completions.create.call_args.kwargs["model"] == model


def test_llm_generate_questions_skips_malformed(llm_provider: LLMAssessmentProvider, client: Mock) -> None:
    """Test that only well-formed questions are kept."""
    good = {
        "hebrew": "שלום",
        "russian": "Что означает на русском языке следующее слово на иврите: שלום?",
        "options": ["Мир/Привет", "Спасибо", "Пожалуйста", "До свидания"],
        "correctIndex": 0,
        "level": "a1",
    }
    questions = [
        good,
        {**good, "level": "D1"},
        {**good, "correctIndex": 4},
        {**good, "options": ["Мир/Привет"]},
        {**good, "options": ["Да", "Да", "Нет", "Нет"]},
        {**good, "correctIndex": None},
        "שלום",
    ]
    client.chat.completions.create.return_value = reply(json.dumps({"questions": questions}))

    (question,) = llm_provider.generate_questions()

    assert question.hebrew == "שלום"
    assert question.level == "A1"
    assert question.correct_index == 0
    assert question.options[question.correct_index] == "Мир/Привет"
    prompt = sent_prompt(client)
    assert "2 x A1" in prompt and "1 x C2" in prompt


def test_llm_generate_questions_rejects_unreadable_reply(llm_provider: LLMAssessmentProvider, client: Mock) -> None:
    """Test that a reply without JSON is an error."""
    client.chat.completions.create.return_value = reply(None)

    with pytest.raises(ValueError):
        llm_provider.generate_questions()


def test_llm_analyze(llm_provider: LLMAssessmentProvider, client: Mock) -> None:
    """Test grading by the model."""
    client.chat.completions.create.return_value = reply(json.dumps({
        "level": "B1",
        "reasoning": "Уверенно отвечает на A1-A2",
        "strengths": ["Базовая лексика"],
        "recommendations": ["Больше абстрактных слов", ""],
    }))
    questions = [make_question("A1"), make_question("A2", 1), make_question("B1", 2)]

    result = llm_provider.analyze(questions, [0, 1, None], is_premium=True)

    assert result == AssessmentResult(
        level=Level.B1,
        reasoning="Уверенно отвечает на A1-A2",
        strengths=["Базовая лексика"],
        recommendations=["Больше абстрактных слов"],
    )
    assert client.chat.completions.create.call_args.kwargs["model"] == "premium-model"
    prompt = sent_prompt(client)
    assert "Ответ пользователя: b" in prompt
    assert "Ответ пользователя: нет ответа" in prompt
    assert "A1: 1/1 правильно, A2: 1/1 правильно, B1: 0/1 правильно" in prompt


@pytest.mark.parametrize(
    "outcome",
    [reply('{"level": "C1-C2", "reasoning": "..."}'), reply("Не могу определить"), OpenAIError("unavailable")],
)
def test_llm_analyze_falls_back_to_level_scores(
    llm_provider: LLMAssessmentProvider, client: Mock, outcome: object
) -> None:
    """Test that an unusable reply is graded by the per-level rule."""
    if isinstance(outcome, Exception):
        client.chat.completions.create.side_effect = outcome
    else:
        client.chat.completions.create.return_value = outcome
    questions = [make_question("A1"), make_question("A2"), make_question("B1")]

    result = llm_provider.analyze(questions, [0, 0, 1])

    assert result.level is Level.A2
    assert result.reasoning == "Правильные ответы по уровням: A1: 1/1 правильно, A2: 1/1 правильно, B1: 0/1 правильно"
    assert result.recommendations == ["Начните с изучения слов уровня A2"]


def test_create_assessment_provider(db: Session, mocker) -> None:
    """Test choosing the provider from settings."""
    openai_client = mocker.patch("hebwor.services.assessment_service.OpenAI")

    vocabulary = create_assessment_provider(db, config=AssessmentSettings(provider="vocabulary"))
    assert isinstance(vocabulary, VocabularyAssessmentProvider)
    openai_client.assert_not_called()

    config = AssessmentSettings(
        provider="llm", api_key="sk-test", base_url="http://localhost:8000/v1", model="m", premium_model="pm"
    )
    llm = create_assessment_provider(db, config=config)
    assert isinstance(llm, LLMAssessmentProvider)
    assert llm.client is openai_client.return_value
    assert (llm.model, llm.premium_model) == ("m", "pm")
    openai_client.assert_called_once_with(api_key="sk-test", base_url="http://localhost:8000/v1")


def test_assessment_with_llm_provider(db: Session, make_user: Callable, client: Mock) -> None:
    """Test a premium user's assessment run by the model end to end."""
    user = make_user(is_premium=True)
    question = {
        "hebrew": "ספר",
        "russian": "Что означает на русском языке следующее слово на иврите: ספר?",
        "options": ["книга", "стол", "окно", "дверь"],
        "correctIndex": 0,
        "level": "A2",
    }
    client.chat.completions.create.side_effect = [
        reply(json.dumps({"questions": [question]})),
        reply('{"level": "A2", "reasoning": "Знает бытовую лексику"}'),
    ]
    provider = LLMAssessmentProvider(client, model="basic-model", premium_model="premium-model")
    service = AssessmentService(db, provider=provider, rng=random.Random(5))

    service.start(user.id)
    view = service.question(user.id, 0)
    service.answer(user.id, 0, view.options.index("книга"))
    result = service.complete(user.id)

    assert result.level is Level.A2
    assert result.reasoning == "Знает бытовую лексику"
    models = [call.kwargs["model"] for call in client.chat.completions.create.call_args_list]
    assert models == ["premium-model", "premium-model"]
    assert "Результат: ПРАВИЛЬНО" in sent_prompt(client)
    db.refresh(user)
    assert user.current_level == "A2"
