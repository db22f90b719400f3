"""Monitoring configuration for the bot."""
from prometheus_client import Counter, Histogram, start_http_server

# Bot metrics
total_users = Counter(
    "hebwor_total_users",
    "Total number of users who have interacted with the bot",
)

# Learning metrics
words_delivered = Counter(
    "hebwor_words_delivered_total",
    "Total number of new words presented to users",
    ["level"],
)

answers_recorded = Counter(
    "hebwor_answers_recorded_total",
    "Total number of exercise answers recorded",
    ["exercise_type", "correct"],
)

word_promotions = Counter(
    "hebwor_word_promotions_total",
    "Total number of word status promotions",
    ["status"],
)

level_advances = Counter(
    "hebwor_level_advances_total",
    "Total number of automatic level advancements",
    ["level"],
)

assessments_completed = Counter(
    "hebwor_assessments_completed_total",
    "Total number of completed level assessments",
    ["level"],
)

# Error metrics
error_count = Counter(
    "hebwor_errors_total",
    "Total number of errors encountered",
    ["error_type"],
)

# Performance metrics
request_duration = Histogram(
    "hebwor_request_duration_seconds",
    "Duration of bot requests in seconds",
    ["handler"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0],
)

# Database metrics
db_errors = Counter(
    "hebwor_db_errors_total",
    "Total number of database errors",
    ["error_type"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
