"""Configuration settings for the bot."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
VOCABULARY_FILE = DATA_DIR / "vocabulary.json"

# Daily batch sizes a user can pick in settings
DAILY_WORDS_OPTIONS = (5, 7, 10)
ASSESSMENT_PROVIDERS = ("vocabulary", "llm")


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR
    vocabulary_file: Path = Path(os.getenv("VOCABULARY_FILE", str(VOCABULARY_FILE)))


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///hebwor.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class BotSettings:
    """Bot configuration settings."""
    token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    webhook_url: Optional[str] = os.getenv("TELEGRAM_WEBHOOK_URL")
    webhook_port: int = int(os.getenv("TELEGRAM_WEBHOOK_PORT", "8443"))


@dataclass
class LearningSettings:
    """Learning process settings.

    The four distribution thresholds split new words between the user's
    level and the next one; ``auto_advance_threshold`` moves the user up.
    All of them are mastery percentages.
    """
    preview_threshold: int = int(os.getenv("PREVIEW_THRESHOLD", "50"))
    gradual_threshold: int = int(os.getenv("GRADUAL_THRESHOLD", "65"))
    balanced_threshold: int = int(os.getenv("BALANCED_THRESHOLD", "80"))
    advanced_threshold: int = int(os.getenv("ADVANCED_THRESHOLD", "90"))
    auto_advance_threshold: int = int(os.getenv("AUTO_ADVANCE_THRESHOLD", "95"))
    learning_to_reviewing: int = int(os.getenv("LEARNING_TO_REVIEWING", "3"))
    reviewing_to_mastered: int = int(os.getenv("REVIEWING_TO_MASTERED", "8"))
    default_daily_words: int = int(os.getenv("DEFAULT_DAILY_WORDS", "5"))
    exercise_set_size: int = int(os.getenv("EXERCISE_SET_SIZE", "5"))
    flashcard_set_size: int = int(os.getenv("FLASHCARD_SET_SIZE", "10"))
    distractor_count: int = int(os.getenv("DISTRACTOR_COUNT", "3"))


@dataclass
class AssessmentSettings:
    """Level assessment settings.

    ``provider`` is ``vocabulary`` (questions from the word table) or ``llm``
    (questions and grading by an OpenAI-compatible chat model). Premium
    users get ``premium_model``.
    """
    provider: str = os.getenv("ASSESSMENT_PROVIDER", "vocabulary").lower()
    api_key: str = os.getenv("OPENAI_API_KEY", "")
    base_url: Optional[str] = os.getenv("OPENAI_BASE_URL")
    model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    premium_model: str = os.getenv("OPENAI_MODEL_PREMIUM", "gpt-4o")


@dataclass
class MetricsSettings:
    """Prometheus metrics settings."""
    port: Optional[int] = int(os.getenv("METRICS_PORT")) if os.getenv("METRICS_PORT") else None


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_bot_settings() -> BotSettings:
    """Get bot settings."""
    return BotSettings()


def get_learning_settings() -> LearningSettings:
    """Get learning settings."""
    return LearningSettings()


def get_assessment_settings() -> AssessmentSettings:
    """Get assessment settings."""
    return AssessmentSettings()


def get_metrics_settings() -> MetricsSettings:
    """Get metrics settings."""
    return MetricsSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    bot: BotSettings = field(default_factory=get_bot_settings)
    learning: LearningSettings = field(default_factory=get_learning_settings)
    assessment: AssessmentSettings = field(default_factory=get_assessment_settings)
    metrics: MetricsSettings = field(default_factory=get_metrics_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if not self.bot.token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required")

        learning = self.learning
        thresholds = [
            learning.preview_threshold,
            learning.gradual_threshold,
            learning.balanced_threshold,
            learning.advanced_threshold,
            learning.auto_advance_threshold,
        ]
        if any(t < 0 or t > 100 for t in thresholds):
            raise ValueError("Mastery thresholds must be between 0 and 100")

        if thresholds[:4] != sorted(thresholds[:4]):
            raise ValueError(
                "PREVIEW_THRESHOLD <= GRADUAL_THRESHOLD <= BALANCED_THRESHOLD <= ADVANCED_THRESHOLD is required"
            )

        if learning.learning_to_reviewing < 1:
            raise ValueError("LEARNING_TO_REVIEWING must be positive")

        if learning.reviewing_to_mastered <= learning.learning_to_reviewing:
            raise ValueError("REVIEWING_TO_MASTERED must be greater than LEARNING_TO_REVIEWING")

        if learning.default_daily_words not in DAILY_WORDS_OPTIONS:
            raise ValueError(f"DEFAULT_DAILY_WORDS must be one of {DAILY_WORDS_OPTIONS}")

        if learning.exercise_set_size < 1 or learning.flashcard_set_size < 1:
            raise ValueError("EXERCISE_SET_SIZE and FLASHCARD_SET_SIZE must be positive")

        if self.assessment.provider not in ASSESSMENT_PROVIDERS:
            raise ValueError(f"ASSESSMENT_PROVIDER must be one of {ASSESSMENT_PROVIDERS}")

        if self.assessment.provider == "llm" and not self.assessment.api_key:
            raise ValueError("OPENAI_API_KEY is required for the llm assessment provider")


# Create global settings instance
settings = Settings()
