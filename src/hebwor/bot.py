"""Telegram bot handlers."""
import functools
import html
import logging
from typing import Awaitable, Callable, List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import CallbackContext

from hebwor.config import DAILY_WORDS_OPTIONS
from hebwor.exceptions import FlowNotFoundError
from hebwor.models.base import SessionLocal
from hebwor.models.flow_models import ExerciseFlow
from hebwor.models.models import ExerciseType, User, WordStatus
from hebwor.monitoring import error_count, request_duration
from hebwor.services.assessment_service import AssessmentResult, AssessmentService
from hebwor.services.exercise_service import (
    FLASHCARD_DIDNT_KNOW,
    FLASHCARD_KNEW,
    ExerciseQuestion,
    ExerciseService,
    ExerciseSummary,
)
from hebwor.services.flow_service import FlowService
from hebwor.services.learning_service import LearningService
from hebwor.services.user_service import UserService

# Get logger for this module
logger = logging.getLogger(__name__)

# Button texts
MENU = "📚 Главное меню"
NEW_WORDS = "📚 Новые слова"
MORE_WORDS = "📖 Ещё слова"
EXERCISES = "✏️ Упражнения"
START_EXERCISES = "✏️ Начать упражнения"
PROGRESS = "📊 Прогресс"
SETTINGS = "⚙️ Настройки"
START_TEST = "🎯 Начать тест"
RETAKE_TEST = "🎯 Пройти тест заново"
CHANGE_WORDS_COUNT = "📚 Изменить количество слов"
BACK = "◀️ Назад"

EXERCISE_TITLES = {
    ExerciseType.MCQ_HE_RU: "🔤 Иврит → Русский",
    ExerciseType.MCQ_RU_HE: "🔤 Русский → Иврит",
    ExerciseType.FLASHCARD: "🎴 Флэшкарты",
}
EXERCISE_CALLBACKS = {
    "exercise_he_ru": ExerciseType.MCQ_HE_RU,
    "exercise_ru_he": ExerciseType.MCQ_RU_HE,
    "exercise_flashcards": ExerciseType.FLASHCARD,
}

ERROR_TEXT = "Произошла ошибка. Пожалуйста, попробуйте позже."
ERR_MSG_NOT_REGISTERED = "Сначала используйте /start"
ERR_MSG_NO_FLOW = "Ошибка: состояние не найдено. Начните заново."
ERR_MSG_NO_ASSESSMENT = "Сначала пройдите тест для определения уровня."

# Options longer than this are shown as numbered buttons
MAX_BUTTON_LENGTH = 40

# Callbacks that answer the query themselves, with feedback
FEEDBACK_PREFIXES = ("ex_", "as_")

Handler = Callable[[Update, CallbackContext], Awaitable[None]]


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(NEW_WORDS, callback_data="daily_words")],
        [InlineKeyboardButton(EXERCISES, callback_data="exercises")],
        [InlineKeyboardButton(PROGRESS, callback_data="progress"),
         InlineKeyboardButton(SETTINGS, callback_data="settings")],
    ])


def menu_button() -> List[InlineKeyboardButton]:
    return [InlineKeyboardButton(MENU, callback_data="main_menu")]


def track(name: str) -> Callable[[Handler], Handler]:
    """Time a handler and turn its failures into a generic message for the user."""
    def decorator(func: Handler) -> Handler:
        @functools.wraps(func)
        async def wrapper(update: Update, context: CallbackContext) -> None:
            with request_duration.labels(handler=name).time():
                try:
                    await func(update, context)
                except Exception as e:
                    error_count.labels(error_type=type(e).__name__).inc()
                    logger.error(f"Error in {name} handler for user {update.effective_user.id}: {e}", exc_info=True)
                    await send(update, ERROR_TEXT)
        return wrapper
    return decorator


async def send(update: Update, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
    """Edit the message behind a button press, or reply to a command."""
    if update.callback_query:
        await update.callback_query.edit_message_text(text, reply_markup=reply_markup, parse_mode="HTML")
    else:
        await update.message.reply_text(text, reply_markup=reply_markup, parse_mode="HTML")


async def log_received(update: Update, context_type: str) -> None:
    """Log an incoming update."""
    txt = ""
    if update.callback_query:
        txt = f" {update.callback_query.data}"
    elif update.message:
        txt = f" {update.message.text}"
    logger.info(f"Received @{context_type:8} from user {update.effective_user.username} ({update.effective_user.id}){txt}")


def parse_indexes(data: str, prefix: str) -> List[int]:
    """Integers after a callback prefix: "ex_3_1" -> [3, 1]."""
    return [int(part) for part in data[len(prefix):].split("_")]


def options_keyboard(options: List[str], prefix: str, index: int) -> InlineKeyboardMarkup:
    """Answer buttons; numbered when any option is too long for a button."""
    if any(len(option) > MAX_BUTTON_LENGTH for option in options):
        buttons = [InlineKeyboardButton(str(i + 1), callback_data=f"{prefix}{index}_{i}") for i in range(len(options))]
        rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
    else:
        rows = [[InlineKeyboardButton(option, callback_data=f"{prefix}{index}_{i}")] for i, option in enumerate(options)]
    return InlineKeyboardMarkup(rows)


def numbered_options(options: List[str]) -> str:
    if all(len(option) <= MAX_BUTTON_LENGTH for option in options):
        return ""
    return "\n\n" + "\n".join(f"{i + 1}. {html.escape(option)}" for i, option in enumerate(options))


# Start and main menu

@track("start")
async def handle_start(update: Update, context: CallbackContext) -> None:
    """Register the user and show the welcome message."""
    tg_user = update.effective_user
    await log_received(update, "start")

    db = SessionLocal()
    try:
        user = UserService(db).get_or_create_user(
            telegram_id=tg_user.id,
            username=tg_user.username,
            first_name=tg_user.first_name,
            language_code=tg_user.language_code,
        )
        name = html.escape(tg_user.first_name or "")

        if not user.assessment_completed:
            await send(
                update,
                f"Здравствуйте, {name}! 👋\n\n"
                "Добро пожаловать в бот для изучения иврита!\n\n"
                "Я помогу вам:\n"
                "• Определить ваш текущий уровень владения ивритом\n"
                "• Изучать новые слова с переводом на русский\n"
                "• Практиковаться с интерактивными упражнениями\n"
                "• Отслеживать ваш прогресс\n\n"
                "Для начала давайте определим ваш уровень владения ивритом. Это займёт около 2-3 минут.",
                InlineKeyboardMarkup([[InlineKeyboardButton(START_TEST, callback_data="start_assessment")]]),
            )
        else:
            await send(
                update,
                f"С возвращением, {name}! 👋\n\n"
                f"Ваш текущий уровень: <b>{user.current_level}</b>\n\n"
                "Чем займёмся сегодня?",
                main_menu_keyboard(),
            )
    finally:
        db.close()


async def show_main_menu(update: Update, context: CallbackContext) -> None:
    await send(update, "📚 <b>Главное меню</b>\n\nЧем займёмся?", main_menu_keyboard())


def get_user_from_update(update: Update) -> Optional[User]:
    """Get user from database based on update."""
    tg_user = update.effective_user
    if not tg_user:
        return None

    db = SessionLocal()
    try:
        return UserService(db).get_user(tg_user.id)
    finally:
        db.close()


async def require_assessment(update: Update) -> bool:
    """Offer the assessment to a user who has not taken it. Returns True if offered."""
    user = get_user_from_update(update)
    if user is not None and user.assessment_completed:
        return False
    await send(
        update,
        ERR_MSG_NO_ASSESSMENT,
        InlineKeyboardMarkup([[InlineKeyboardButton(START_TEST, callback_data="start_assessment")]]),
    )
    return True


# New words

async def handle_daily_words(update: Update, context: CallbackContext) -> None:
    """Deliver a batch of new words, advancing the level first when due."""
    if await require_assessment(update):
        return
    db = SessionLocal()
    try:
        delivery = LearningService(db).deliver_daily_words(update.effective_user.id)

        header = ""
        if delivery.advance and delivery.advance.advanced:
            header = (
                f"🎉 <b>Поздравляем!</b> Вы освоили {delivery.advance.mastery}% слов и перешли "
                f"на уровень <b>{delivery.level}</b>!\n\n"
            )

        if not delivery.words:
            await send(
                update,
                f"{header}🎉 Отлично! Вы уже изучили все слова уровня <b>{delivery.level}</b>!\n\n"
                "Повторите изученные слова в упражнениях.",
                InlineKeyboardMarkup([
                    [InlineKeyboardButton(EXERCISES, callback_data="exercises")],
                    menu_button(),
                ]),
            )
            return

        cards = []
        for i, word in enumerate(delivery.words):
            card = f"<b>{i + 1}. {html.escape(word.hebrew_word)}</b>\n💭 {html.escape(word.russian_translation)}"
            if word.example_sentence_hebrew:
                card += f"\n📖 {html.escape(word.example_sentence_hebrew)}"
                if word.example_sentence_russian:
                    card += f"\n   <i>{html.escape(word.example_sentence_russian)}</i>"
            cards.append(card)

        await send(
            update,
            f"{header}📚 <b>Новые слова</b> (уровень {delivery.level})\n\n" + "\n\n".join(cards),
            InlineKeyboardMarkup([
                [InlineKeyboardButton(START_EXERCISES, callback_data="exercises")],
                [InlineKeyboardButton(MORE_WORDS, callback_data="daily_words")],
                menu_button(),
            ]),
        )
    finally:
        db.close()


# Exercises

async def show_exercise_menu(update: Update, context: CallbackContext) -> None:
    keyboard = [
        [InlineKeyboardButton(title, callback_data=data)]
        for data, title in (
            ("exercise_he_ru", EXERCISE_TITLES[ExerciseType.MCQ_HE_RU]),
            ("exercise_ru_he", EXERCISE_TITLES[ExerciseType.MCQ_RU_HE]),
            ("exercise_flashcards", EXERCISE_TITLES[ExerciseType.FLASHCARD]),
        )
    ]
    keyboard.append(menu_button())
    await send(
        update,
        "✏️ <b>Упражнения</b>\n\nВыберите тип упражнения:\n\n"
        "🔤 <b>Иврит → Русский</b> - угадайте перевод с иврита на русский\n"
        "🔤 <b>Русский → Иврит</b> - угадайте перевод с русского на иврит\n"
        "🎴 <b>Флэшкарты</b> - быстрое повторение с самопроверкой",
        InlineKeyboardMarkup(keyboard),
    )


async def start_exercise(update: Update, context: CallbackContext) -> None:
    """Start a session of the chosen exercise type."""
    if await require_assessment(update):
        return
    exercise_type = EXERCISE_CALLBACKS[update.callback_query.data]
    user_id = update.effective_user.id
    db = SessionLocal()
    try:
        service = ExerciseService(db)
        if service.start_session(user_id, exercise_type) is None:
            await send(
                update,
                "У вас нет слов для упражнений. Сначала изучите новые слова!",
                InlineKeyboardMarkup([[
                    InlineKeyboardButton(NEW_WORDS, callback_data="daily_words"),
                    InlineKeyboardButton(MENU, callback_data="main_menu"),
                ]]),
            )
            return
        await send_exercise_question(update, service, user_id)
    finally:
        db.close()


def exercise_question_text(question: ExerciseQuestion, reveal: bool = False) -> str:
    title = EXERCISE_TITLES[question.exercise_type]
    counter = f"({question.index + 1}/{question.total})"
    prompt = html.escape(question.prompt)
    if question.exercise_type is ExerciseType.MCQ_HE_RU:
        return f"<b>{title}</b> {counter}\n\nЧто означает:\n\n<b>{prompt}</b>" + numbered_options(question.options)
    if question.exercise_type is ExerciseType.MCQ_RU_HE:
        return f"<b>{title}</b> {counter}\n\nКак будет на иврите:\n\n<b>{prompt}</b>" + numbered_options(question.options)

    word = question.word
    text = f"<b>{title}</b> {counter}\n\n<b>{prompt}</b>"
    if reveal:
        text += f"\n\n💭 <b>{html.escape(word.russian_translation)}</b>"
    if word.example_sentence_hebrew:
        text += f"\n\n📖 {html.escape(word.example_sentence_hebrew)}"
        if reveal and word.example_sentence_russian:
            text += f"\n   <i>{html.escape(word.example_sentence_russian)}</i>"
    if reveal:
        text += "\n\n<b>Вы знали перевод?</b>"
    else:
        text += "\n\n<i>Вспомните перевод, затем нажмите кнопку для проверки</i>"
    return text


async def send_exercise_question(update: Update, service: ExerciseService, user_id: int) -> None:
    """Show the current question, or the results once the session is over."""
    question = service.next_question(user_id)
    if question is None:
        await send_exercise_summary(update, service.finish(user_id))
        return

    if question.exercise_type.is_multiple_choice:
        keyboard = options_keyboard(question.options, "ex_", question.index)
    else:
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("🔍 Показать ответ", callback_data=f"fc_reveal_{question.index}")
        ]])
    await send(update, exercise_question_text(question), keyboard)


async def handle_flashcard_reveal(update: Update, context: CallbackContext) -> None:
    """Show the translation of the current flashcard."""
    (index,) = parse_indexes(update.callback_query.data, "fc_reveal_")
    user_id = update.effective_user.id
    db = SessionLocal()
    try:
        flow = FlowService(db).load(user_id, ExerciseFlow)
        if flow is None or flow.current_index != index or flow.current_word is None:
            await send(update, ERR_MSG_NO_FLOW, InlineKeyboardMarkup([menu_button()]))
            return
        question = ExerciseQuestion(
            index=index,
            total=len(flow.words),
            exercise_type=flow.exercise_type,
            word=flow.current_word,
            prompt=flow.current_word.hebrew_word,
        )
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("✅ Знал(а)", callback_data=f"ex_{index}_{FLASHCARD_KNEW}"),
            InlineKeyboardButton("❌ Не знал(а)", callback_data=f"ex_{index}_{FLASHCARD_DIDNT_KNOW}"),
        ]])
        await send(update, exercise_question_text(question, reveal=True), keyboard)
    finally:
        db.close()


async def handle_exercise_answer(update: Update, context: CallbackContext) -> None:
    """Score an exercise answer and show the next question."""
    query = update.callback_query
    index, choice = parse_indexes(query.data, "ex_")
    user_id = update.effective_user.id
    db = SessionLocal()
    try:
        service = ExerciseService(db)
        try:
            outcome = service.answer(user_id, index, choice)
        except FlowNotFoundError:
            # Late press after the session ended; the summary stays on screen
            logger.debug(f"No exercise session for answer {query.data} from user {user_id}")
            await query.answer()
            return

        if outcome is None:
            await query.answer()
            return

        if outcome.correct:
            feedback = "✅ Правильно!"
        else:
            feedback = f"❌ Неправильно. Правильный ответ: {outcome.correct_answer[:150]}"
        if outcome.score.promoted and outcome.score.status is WordStatus.MASTERED:
            feedback += "\n🌟 Слово освоено!"
        await query.answer(text=feedback)

        await send_exercise_question(update, service, user_id)
    finally:
        db.close()


async def send_exercise_summary(update: Update, summary: ExerciseSummary) -> None:
    if summary.percentage < 50:
        emoji, message = "💪", "Продолжайте практиковаться!"
    elif summary.percentage < 80:
        emoji, message = "👍", "Хорошо!"
    else:
        emoji, message = "🎉", "Отлично!"

    again = next(data for data, kind in EXERCISE_CALLBACKS.items() if kind is summary.exercise_type)
    await send(
        update,
        f"{emoji} <b>Упражнение завершено!</b>\n\n{message}\n\n"
        "📊 <b>Результаты:</b>\n"
        f"• Правильных ответов: {summary.correct}/{summary.total} ({summary.percentage}%)\n"
        f"• Время: {summary.duration_seconds}с",
        InlineKeyboardMarkup([
            [InlineKeyboardButton("🔄 Ещё раз", callback_data=again)],
            [InlineKeyboardButton("✏️ Другое упражнение", callback_data="exercises"),
             InlineKeyboardButton(MENU, callback_data="main_menu")],
        ]),
    )


# Progress and settings

async def show_progress(update: Update, context: CallbackContext) -> None:
    """Show word, exercise and activity statistics."""
    db = SessionLocal()
    try:
        progress = UserService(db).get_progress(update.effective_user.id)
    finally:
        db.close()

    filled = progress.mastery // 10
    lines = [
        "📊 <b>Ваш прогресс</b>",
        "",
        f"<b>Текущий уровень:</b> {progress.level}",
        f"<b>Освоение уровня {progress.level}:</b> {progress.mastery}%",
        f"[{'█' * filled}{'░' * (10 - filled)}]",
    ]
    if progress.preview_unlocked:
        lines.append(f"🔓 <b>Открыт предпросмотр уровня {progress.next_level}!</b>")
    if progress.advancing_soon:
        lines.append(f"🎯 <b>Скоро повышение до {progress.next_level}!</b>")
    if progress.ready_to_advance:
        lines.append(f"✨ <b>Готовы к {progress.next_level}!</b> Автоматическое повышение при следующем изучении слов.")

    counts = progress.word_counts
    lines += [
        "",
        f"<b>📚 Словарный запас</b> ({progress.total_words} слов)",
        f"🟡 Изучаю: {counts[WordStatus.LEARNING]}",
        f"🔵 Повторяю: {counts[WordStatus.REVIEWING]}",
        f"🟢 Освоил(а): {counts[WordStatus.MASTERED]}",
        "",
        f"<b>✏️ Упражнения</b> ({progress.overall.total} попыток)",
        f"Точность: <b>{progress.overall.accuracy}%</b>",
    ]
    if progress.exercises:
        for kind, stats in progress.exercises.items():
            lines.append(f"  • {EXERCISE_TITLES[kind]}: {stats.correct}/{stats.total} ({stats.accuracy}%)")
    else:
        lines.append("  <i>Пока нет данных</i>")
    lines += [
        "",
        "<b>📅 Активность (7 дней)</b>",
        f"• Активных дней: {progress.active_days}",
        f"• Всего упражнений: {progress.recent_exercises}",
    ]

    await send(
        update,
        "\n".join(lines),
        InlineKeyboardMarkup([
            [InlineKeyboardButton(NEW_WORDS, callback_data="daily_words"),
             InlineKeyboardButton(EXERCISES, callback_data="exercises")],
            [InlineKeyboardButton(RETAKE_TEST, callback_data="start_assessment")],
            menu_button(),
        ]),
    )


async def show_settings(update: Update, context: CallbackContext) -> None:
    user = get_user_from_update(update)
    await send(
        update,
        "⚙️ <b>Настройки</b>\n\n"
        f"📚 Слов за раз: <b>{user.daily_words_count}</b>\n"
        f"🎓 Уровень: <b>{user.current_level}</b>\n\n"
        "Вы можете изменить количество новых слов, которые получаете за один раз.",
        InlineKeyboardMarkup([
            [InlineKeyboardButton(CHANGE_WORDS_COUNT, callback_data="settings_words")],
            [InlineKeyboardButton(RETAKE_TEST, callback_data="start_assessment")],
            menu_button(),
        ]),
    )


async def show_words_settings(update: Update, context: CallbackContext) -> None:
    user = get_user_from_update(update)
    buttons = [
        InlineKeyboardButton(
            f"✅ {count} слов" if count == user.daily_words_count else f"{count} слов",
            callback_data=f"set_words_{count}",
        )
        for count in DAILY_WORDS_OPTIONS
    ]
    await send(
        update,
        "📚 <b>Количество слов за раз</b>\n\n"
        "Выберите, сколько новых слов вы хотите получать за один раз.\n\n"
        f"Текущая настройка: <b>{user.daily_words_count} слов</b>",
        InlineKeyboardMarkup([buttons, [InlineKeyboardButton(BACK, callback_data="settings")]]),
    )


async def handle_set_words(update: Update, context: CallbackContext) -> None:
    (count,) = parse_indexes(update.callback_query.data, "set_words_")
    db = SessionLocal()
    try:
        UserService(db).set_daily_words_count(update.effective_user.id, count)
    finally:
        db.close()
    await show_settings(update, context)


# Assessment

async def start_assessment(update: Update, context: CallbackContext) -> None:
    user_id = update.effective_user.id
    db = SessionLocal()
    try:
        service = AssessmentService(db)
        flow = service.start(user_id)
        if flow is None:
            await send(update, "Тест пока недоступен: словарь пуст.", InlineKeyboardMarkup([menu_button()]))
            return
        await send_assessment_question(update, service, user_id, 0)
    finally:
        db.close()


async def send_assessment_question(update: Update, service: AssessmentService, user_id: int, index: int) -> None:
    question = service.question(user_id, index)
    if question is None:
        await send_assessment_result(update, service.complete(user_id))
        return
    await send(
        update,
        f"🎯 <b>Вопрос {question.index + 1}/{question.total}</b>\n\n{html.escape(question.text)}"
        + numbered_options(question.options),
        options_keyboard(question.options, "as_", question.index),
    )


async def handle_assessment_answer(update: Update, context: CallbackContext) -> None:
    query = update.callback_query
    index, choice = parse_indexes(query.data, "as_")
    user_id = update.effective_user.id
    db = SessionLocal()
    try:
        service = AssessmentService(db)
        try:
            result = service.answer(user_id, index, choice)
        except FlowNotFoundError:
            # Late press after the result was shown
            logger.debug(f"No assessment for answer {query.data} from user {user_id}")
            await query.answer()
            return

        if result is None:
            await query.answer()
            return

        if result.correct:
            await query.answer(text="✅ Правильно!")
        else:
            await query.answer(text=f"❌ Неправильно. Правильный ответ: {result.correct_answer[:150]}")

        await send_assessment_question(update, service, user_id, index + 1)
    finally:
        db.close()


async def send_assessment_result(update: Update, result: AssessmentResult) -> None:
    text = f"🎉 <b>Тест завершён!</b>\n\n<b>Ваш уровень: {result.level}</b>\n\n"
    text += f"<b>Обоснование:</b>\n{html.escape(result.reasoning)}\n"
    if result.strengths:
        text += "\n<b>Ваши сильные стороны:</b>\n" + "\n".join(f"• {html.escape(s)}" for s in result.strengths) + "\n"
    if result.recommendations:
        text += "\n<b>Рекомендации:</b>\n" + "\n".join(f"• {html.escape(r)}" for r in result.recommendations) + "\n"
    text += "\nТеперь вы можете начать изучение слов на вашем уровне!"
    await send(update, text, main_menu_keyboard())


# Routing

ROUTES = {
    "main_menu": show_main_menu,
    "daily_words": handle_daily_words,
    "exercises": show_exercise_menu,
    "progress": show_progress,
    "settings": show_settings,
    "settings_words": show_words_settings,
    "start_assessment": start_assessment,
}
PREFIX_ROUTES = (
    ("exercise_", start_exercise),
    ("fc_reveal_", handle_flashcard_reveal),
    ("ex_", handle_exercise_answer),
    ("as_", handle_assessment_answer),
    ("set_words_", handle_set_words),
)


@track("callback")
async def handle_callback(update: Update, context: CallbackContext) -> None:
    """Handle callback queries from inline keyboards."""
    query = update.callback_query
    data = query.data or ""
    if not data.startswith(FEEDBACK_PREFIXES):
        await query.answer()

    await log_received(update, "callback")

    if get_user_from_update(update) is None:
        await send(update, ERR_MSG_NOT_REGISTERED)
        return

    route = ROUTES.get(data)
    if route is None:
        route = next((handler for prefix, handler in PREFIX_ROUTES if data.startswith(prefix)), None)
    if route is None:
        logger.warning(f"Unknown callback data: {data}")
        return
    await route(update, context)


async def handle_error(update: object, context: CallbackContext) -> None:
    """Log errors that escaped the handlers."""
    error_count.labels(error_type=type(context.error).__name__).inc()
    logger.error("Exception while handling an update", exc_info=context.error)
