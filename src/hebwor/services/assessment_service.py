"""Level assessment: question generation, grading and the assessment flow."""
import json
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI, OpenAIError
from sqlalchemy.orm import Session

from hebwor.config import AssessmentSettings, settings
from hebwor.exceptions import FlowNotFoundError, NotFoundError
from hebwor.models.flow_models import AssessmentFlow, AssessmentQuestion, FlowKind, ShuffledQuestion
from hebwor.models.levels import LEVELS, MIN_LEVEL, Level, parse_level
from hebwor.monitoring import assessments_completed
from hebwor.services.flow_service import FlowService
from hebwor.services.learning_service import LearningService
from hebwor.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

# Number of assessment questions per level
QUESTIONS_PER_LEVEL: Dict[Level, int] = {
    Level.A1: 2,
    Level.A2: 1,
    Level.B1: 2,
    Level.B2: 2,
    Level.C1: 1,
    Level.C2: 1,
}

QUESTION_TEXT = "Что означает на русском языке следующее слово на иврите: {hebrew}?"


@dataclass
class AssessmentResult:
    """Level assigned by an assessment, with a short explanation."""
    level: Level
    reasoning: str
    strengths: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


class AssessmentProvider(ABC):
    """Source of assessment questions and grader of the answers."""

    @abstractmethod
    def generate_questions(self, is_premium: bool = False) -> List[AssessmentQuestion]:
        """Create the questions of a new assessment."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    def analyze(
        self,
        questions: Sequence[AssessmentQuestion],
        answers: Sequence[Optional[int]],
        is_premium: bool = False,
    ) -> AssessmentResult:
        """Grade the answers (original option indexes, None if unanswered)."""
        raise NotImplementedError("Subclasses must implement this method")


def score_by_level(
    questions: Sequence[AssessmentQuestion], answers: Sequence[Optional[int]]
) -> Dict[Level, List[int]]:
    """Correct and total answers per level, for levels that have questions."""
    scores: Dict[Level, List[int]] = {}
    for i, question in enumerate(questions):
        level = parse_level(question.level)
        correct, total = scores.get(level, [0, 0])
        answer = answers[i] if i < len(answers) else None
        scores[level] = [correct + int(answer == question.correct_index), total + 1]
    return scores


def grade_by_level(scores: Dict[Level, List[int]]) -> Level:
    """Highest level such that every scored level up to it is at least half right."""
    assigned = MIN_LEVEL
    for level in LEVELS:
        if level not in scores:
            continue  # No questions at this level
        correct, total = scores[level]
        if 2 * correct < total:
            break
        assigned = level
    return assigned


class VocabularyAssessmentProvider(AssessmentProvider):
    """Assessment built from the vocabulary table.

    Each question asks for the Russian translation of a Hebrew word, with
    translations of other words of the same level as wrong options. The
    assigned level is the highest one such that every level up to it had
    at least half of its questions answered correctly.
    """

    def __init__(self, db: Session, distractor_count: int = 3, rng: Optional[random.Random] = None):
        self.store = ProgressStore(db)
        self.distractor_count = distractor_count
        self.rng = rng or random.Random()

    def _make_question(self, word, level: Level) -> Optional[AssessmentQuestion]:
        distractors = self.store.random_words_from_level(level, exclude_ids=[word.id], limit=self.distractor_count)
        options = list(dict.fromkeys([word.russian_translation] + [d.russian_translation for d in distractors]))
        if len(options) < 2:
            return None
        self.rng.shuffle(options)
        return AssessmentQuestion(
            hebrew=word.hebrew_word,
            russian=QUESTION_TEXT.format(hebrew=word.hebrew_word),
            options=options,
            correct_index=options.index(word.russian_translation),
            level=level.value,
        )

    def generate_questions(self, is_premium: bool = False) -> List[AssessmentQuestion]:
        questions = []
        for level, count in QUESTIONS_PER_LEVEL.items():
            for word in self.store.random_words_from_level(level, limit=count):
                question = self._make_question(word, level)
                if question is not None:
                    questions.append(question)
        logger.info(f"Generated {len(questions)} assessment questions")
        return questions

    def analyze(
        self,
        questions: Sequence[AssessmentQuestion],
        answers: Sequence[Optional[int]],
        is_premium: bool = False,
    ) -> AssessmentResult:
        scores = score_by_level(questions, answers)
        assigned = grade_by_level(scores)

        scored = [level for level in LEVELS if level in scores]
        passed = [level.value for level in scored if 2 * scores[level][0] >= scores[level][1]]
        failed = [level.value for level in scored if 2 * scores[level][0] < scores[level][1]]
        summary = ", ".join(f"{level.value}: {scores[level][0]}/{scores[level][1]}" for level in scored)

        strengths = [f"Уверенное знание слов уровней {', '.join(passed)}"] if passed else []
        recommendations = [f"Начните с изучения слов уровня {assigned.value}"]
        if failed:
            recommendations.append(f"Уделите внимание словам уровней {', '.join(failed)}")

        return AssessmentResult(
            level=assigned,
            reasoning=f"Правильные ответы по уровням: {summary}" if summary else "Нет ответов для анализа",
            strengths=strengths,
            recommendations=recommendations,
        )


LLM_SYSTEM_PROMPT = "Вы опытный преподаватель иврита для русскоязычных учеников. Отвечайте только JSON."

LLM_QUESTIONS_PROMPT = """Составьте {count} вопросов с выбором ответа, чтобы определить уровень владения ивритом по шкале CEFR (A1-C2).

Уровни вопросов: {plan}.

Каждый вопрос задаётся на русском языке в виде
"Что означает на русском языке следующее слово/фраза на иврите: [иврит]?"
с ивритом, написанным ивритскими буквами, и четырьмя вариантами ответа на русском.
Это проверка знаний: никаких подсказок, дословных переводов и пояснений в скобках.
Неправильные варианты должны быть правдоподобными, но явно неверными.

Верните JSON в точности такого вида:
{{"questions": [{{"hebrew": "שלום", "russian": "Что означает на русском языке следующее слово на иврите: שלום?", "options": ["Мир/Привет", "Спасибо", "Пожалуйста", "До свидания"], "correctIndex": 0, "level": "A1"}}]}}"""

LLM_ANALYSIS_PROMPT = """Проанализируйте результаты теста и определите уровень владения ивритом по шкале CEFR (A1, A2, B1, B2, C1, C2).

Результаты теста:
{details}

Итоги по уровням: {summary}

Уровень ученика - самый высокий уровень, на большинство вопросов которого он ответил правильно,
уверенно отвечая на все более низкие уровни.

Верните JSON в точности такого вида, все тексты на русском языке:
{{"level": "A2", "reasoning": "Обоснование...", "strengths": ["Сильная сторона"], "recommendations": ["Рекомендация"]}}"""


def parse_json_reply(content: str) -> Dict[str, Any]:
    """Parse a model reply as a JSON object, also when it is wrapped in other text."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if not match:
            raise ValueError(f"No JSON object in reply: {content[:200]}")
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in reply: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Reply is not a JSON object")
    return data


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


class LLMAssessmentProvider(AssessmentProvider):
    """Assessment written and graded by a chat completion model.

    Premium users are served by ``premium_model``. A reply that cannot be
    used for grading falls back to the per-level rule of ``grade_by_level``.
    """

    def __init__(self, client: OpenAI, model: str, premium_model: str, temperature: float = 0.7):
        self.client = client
        self.model = model
        self.premium_model = premium_model
        self.temperature = temperature

    def model_for(self, is_premium: bool) -> str:
        return self.premium_model if is_premium else self.model

    def _complete(self, prompt: str, is_premium: bool) -> Dict[str, Any]:
        model = self.model_for(is_premium)
        logger.debug(f"Requesting {model}: {prompt[:100]}...")
        response = self.client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": LLM_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
        )
        return parse_json_reply(response.choices[0].message.content or "")

    @staticmethod
    def _parse_question(item: Any) -> Optional[AssessmentQuestion]:
        if not isinstance(item, dict):
            return None
        try:
            level = parse_level(str(item.get("level", "")))
            options = [str(option) for option in item.get("options") or []]
            correct_index = int(item.get("correctIndex", item.get("correct_index")))
        except (TypeError, ValueError):
            return None
        hebrew = str(item.get("hebrew") or "").strip()
        if not hebrew or len(options) < 2 or len(set(options)) != len(options):
            return None
        if not 0 <= correct_index < len(options):
            return None
        return AssessmentQuestion(
            hebrew=hebrew,
            russian=str(item.get("russian") or "").strip() or QUESTION_TEXT.format(hebrew=hebrew),
            options=options,
            correct_index=correct_index,
            level=level.value,
        )

    def generate_questions(self, is_premium: bool = False) -> List[AssessmentQuestion]:
        plan = ", ".join(f"{count} x {level.value}" for level, count in QUESTIONS_PER_LEVEL.items())
        prompt = LLM_QUESTIONS_PROMPT.format(count=sum(QUESTIONS_PER_LEVEL.values()), plan=plan)
        data = self._complete(prompt, is_premium)

        questions = []
        for item in data.get("questions") or []:
            question = self._parse_question(item)
            if question is None:
                logger.warning(f"Skipping malformed assessment question: {item}")
                continue
            questions.append(question)
        logger.info(f"Generated {len(questions)} assessment questions with {self.model_for(is_premium)}")
        return questions

    def analyze(
        self,
        questions: Sequence[AssessmentQuestion],
        answers: Sequence[Optional[int]],
        is_premium: bool = False,
    ) -> AssessmentResult:
        scores = score_by_level(questions, answers)
        summary = ", ".join(
            f"{level.value}: {scores[level][0]}/{scores[level][1]} правильно" for level in LEVELS if level in scores
        )
        details = []
        for i, question in enumerate(questions):
            answer = answers[i] if i < len(answers) else None
            answered = answer is not None and 0 <= answer < len(question.options)
            given = question.options[answer] if answered else "нет ответа"
            details.append(
                f"Вопрос {i + 1} (Уровень: {question.level}):\n"
                f"Иврит: {question.hebrew}\n"
                f"Вопрос: {question.russian}\n"
                f"Правильный ответ: {question.options[question.correct_index]}\n"
                f"Ответ пользователя: {given}\n"
                f"Результат: {'ПРАВИЛЬНО' if answer == question.correct_index else 'НЕПРАВИЛЬНО'}"
            )
        prompt = LLM_ANALYSIS_PROMPT.format(details="\n\n".join(details), summary=summary)

        try:
            data = self._complete(prompt, is_premium)
            level = parse_level(str(data.get("level", "")))
        except (OpenAIError, ValueError) as e:
            level = grade_by_level(scores)
            logger.warning(f"Assessment analysis failed ({e}), graded by level scores as {level.value}")
            return AssessmentResult(
                level=level,
                reasoning=f"Правильные ответы по уровням: {summary}" if summary else "Нет ответов для анализа",
                recommendations=[f"Начните с изучения слов уровня {level.value}"],
            )

        logger.info(f"Assigned level {level.value} by {self.model_for(is_premium)}")
        return AssessmentResult(
            level=level,
            reasoning=str(data.get("reasoning") or ""),
            strengths=_string_list(data.get("strengths")),
            recommendations=_string_list(data.get("recommendations")),
        )


def create_assessment_provider(
    db: Session,
    distractor_count: int = 3,
    rng: Optional[random.Random] = None,
    config: Optional[AssessmentSettings] = None,
) -> AssessmentProvider:
    """Create the assessment provider selected in settings."""
    config = config or settings.assessment
    if config.provider == "llm":
        client = OpenAI(api_key=config.api_key, base_url=config.base_url)
        return LLMAssessmentProvider(client, config.model, config.premium_model)
    return VocabularyAssessmentProvider(db, distractor_count, rng)


@dataclass
class AssessmentQuestionView:
    """Question as shown to the user, with shuffled options."""
    index: int
    total: int
    hebrew: str
    text: str
    options: List[str]


@dataclass
class AssessmentAnswer:
    correct: bool
    correct_answer: str
    finished: bool


class AssessmentService:
    """Service running the level assessment flow."""

    def __init__(
        self,
        db: Session,
        provider: Optional[AssessmentProvider] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the service with a database session."""
        self.db = db
        self.store = ProgressStore(db)
        self.flows = FlowService(db)
        self.learning_service = LearningService(db)
        self.rng = rng or random.Random()
        self.provider = provider or create_assessment_provider(
            db, self.learning_service.learning.distractor_count, self.rng
        )

    def _load(self, user_id: int) -> AssessmentFlow:
        flow = self.flows.load(user_id, AssessmentFlow)
        if flow is None:
            raise FlowNotFoundError(f"User {user_id} has no assessment in progress")
        return flow

    def start(self, user_id: int) -> Optional[AssessmentFlow]:
        """Start a new assessment, replacing any flow in progress.

        Returns None when no questions could be generated.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        questions = self.provider.generate_questions(bool(user.is_premium))
        if not questions:
            logger.warning(f"No assessment questions available for user {user_id}")
            return None
        flow = AssessmentFlow(questions=questions)
        self.flows.save(user_id, flow)
        logger.info(f"User {user_id} started the assessment ({len(questions)} questions)")
        return flow

    def question(self, user_id: int, index: int) -> Optional[AssessmentQuestionView]:
        """Show a question with freshly shuffled options, or None past the last one."""
        flow = self._load(user_id)
        if index >= len(flow.questions):
            return None
        question = flow.questions[index]
        order = list(range(len(question.options)))
        self.rng.shuffle(order)
        options = [question.options[i] for i in order]
        flow.shuffled[index] = ShuffledQuestion(options=options, correct_index=order.index(question.correct_index))
        self.flows.save(user_id, flow)
        return AssessmentQuestionView(
            index=index,
            total=len(flow.questions),
            hebrew=question.hebrew,
            text=question.russian,
            options=options,
        )

    def answer(self, user_id: int, index: int, choice: int) -> Optional[AssessmentAnswer]:
        """Record the answer to a question given as an index into the shown options.

        A question can be answered once; repeated answers are ignored (None).
        """
        flow = self._load(user_id)
        if not 0 <= index < len(flow.questions):
            raise ValueError(f"Question {index} does not exist")
        if index in flow.answers:
            logger.debug(f"Ignoring repeated answer to question {index} from user {user_id}")
            return None
        question = flow.questions[index]
        shuffled = flow.shuffled.get(index)

        if shuffled is not None:
            correct = choice == shuffled.correct_index
            original = question.options.index(shuffled.options[choice]) if 0 <= choice < len(shuffled.options) else -1
            correct_answer = shuffled.options[shuffled.correct_index]
        else:
            correct = choice == question.correct_index
            original = choice
            correct_answer = question.options[question.correct_index]

        flow.answers[index] = original
        self.flows.save(user_id, flow)
        return AssessmentAnswer(
            correct=correct,
            correct_answer=correct_answer,
            finished=index + 1 >= len(flow.questions),
        )

    def complete(self, user_id: int) -> AssessmentResult:
        """Grade the assessment and apply the assigned level to the user."""
        flow = self._load(user_id)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        result = self.provider.analyze(flow.questions, flow.answer_list(), bool(user.is_premium))

        mastery = self.learning_service.calculate_mastery(user_id, result.level)
        self.store.set_user_level_state(user_id, result.level, mastery)
        user.assessment_completed = True
        self.store.commit()
        self.flows.clear(user_id, FlowKind.ASSESSMENT)

        assessments_completed.labels(level=result.level.value).inc()
        logger.info(f"User {user_id} completed the assessment with level {result.level.value}")
        return result
