import os
from dotenv import load_dotenv
from typing import List

import pytz

load_dotenv()


class ConfigurationError(Exception):
    """Raised when the dispatch configuration cannot be used to send anything."""


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _int_list(raw: str) -> List[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


# Database
DATABASE_URL = os.getenv("DATABASE_URL")

# Sending window (local hours in TARGET_TIMEZONE, end is exclusive)
# Uses America/New_York by default which auto-handles EST/EDT
TARGET_TIMEZONE = os.getenv("TARGET_TIMEZONE", "America/New_York")
SENDING_HOUR_START = int(os.getenv("SENDING_HOUR_START", "8"))
SENDING_HOUR_END = int(os.getenv("SENDING_HOUR_END", "17"))
SEND_ON_WEEKENDS = _bool("SEND_ON_WEEKENDS", "true")

# Pacing floor between consecutive sends inside one batch
MIN_SEND_DELAY_SECONDS = int(os.getenv("MIN_SEND_DELAY_SECONDS", "60"))

# Credential pool
DEFAULT_DAILY_LIMIT = int(os.getenv("DEFAULT_DAILY_LIMIT", "50"))
HEALTH_MIN_SAMPLE = int(os.getenv("HEALTH_MIN_SAMPLE", "10"))     # attempts before the rate counts
HEALTH_THRESHOLD = float(os.getenv("HEALTH_THRESHOLD", "0.70"))   # success rate below this deactivates

# Duplicate suppression
COOLDOWN_DAYS = int(os.getenv("COOLDOWN_DAYS", "90"))
SITE_SUPPRESSION_ENABLED = _bool("SITE_SUPPRESSION_ENABLED", "true")
SITE_MAX_SENDS = int(os.getenv("SITE_MAX_SENDS", "1"))
DOMAIN_SUPPRESSION_ENABLED = _bool("DOMAIN_SUPPRESSION_ENABLED", "false")
DOMAIN_MAX_SENDS = int(os.getenv("DOMAIN_MAX_SENDS", "2"))
AUTO_BLACKLIST_BOUNCES = _bool("AUTO_BLACKLIST_BOUNCES", "true")

# Batch processing
MAX_BATCH_SIZE = int(os.getenv("MAX_BATCH_SIZE", "50"))
SEND_CONCURRENCY = int(os.getenv("SEND_CONCURRENCY", "3"))
SEND_TIMEOUT_SECONDS = int(os.getenv("SEND_TIMEOUT_SECONDS", "60"))
BATCH_TIMEOUT_SECONDS = int(os.getenv("BATCH_TIMEOUT_SECONDS", "600"))
DEFAULT_TEMPLATE_ID = os.getenv("DEFAULT_TEMPLATE_ID", "default")

# Retry policy for transient failures: wait 1 min, then 5, then 15
MAX_SEND_ATTEMPTS = int(os.getenv("MAX_SEND_ATTEMPTS", "4"))
RETRY_BACKOFF_MINUTES = _int_list(os.getenv("RETRY_BACKOFF_MINUTES", "1,5,15"))

# Scheduler
DISPATCH_INTERVAL_MINUTES = int(os.getenv("DISPATCH_INTERVAL_MINUTES", "60"))
HEALTH_SWEEP_HOUR = int(os.getenv("HEALTH_SWEEP_HOUR", "7"))
REVIEW_RETENTION_DAYS = int(os.getenv("REVIEW_RETENTION_DAYS", "90"))

# Alerts (Slack / Discord / Telegram webhook)
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
DAILY_SUMMARY_ENABLED = _bool("DAILY_SUMMARY_ENABLED", "true")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")
LOG_JSON = _bool("LOG_JSON", "false")


def validate():
    """
    Check the settings that would make every tick fail.

    Raises ConfigurationError with every problem found, not just the first.
    """
    problems = []

    for name in ("SENDING_HOUR_START", "SENDING_HOUR_END"):
        value = globals()[name]
        if not 0 <= value <= 24:
            problems.append(f"{name}={value} is not an hour (0-24)")
    if SENDING_HOUR_START >= SENDING_HOUR_END:
        problems.append(
            f"sending window is empty ({SENDING_HOUR_START}:00 >= {SENDING_HOUR_END}:00)"
        )

    try:
        pytz.timezone(TARGET_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        problems.append(f"unknown TARGET_TIMEZONE {TARGET_TIMEZONE!r}")

    if not 0.0 <= HEALTH_THRESHOLD <= 1.0:
        problems.append(f"HEALTH_THRESHOLD={HEALTH_THRESHOLD} must be between 0 and 1")
    if HEALTH_MIN_SAMPLE < 0:
        problems.append(f"HEALTH_MIN_SAMPLE={HEALTH_MIN_SAMPLE} must not be negative")
    if MAX_BATCH_SIZE < 1:
        problems.append("MAX_BATCH_SIZE must be at least 1")
    if SEND_CONCURRENCY < 1:
        problems.append("SEND_CONCURRENCY must be at least 1")
    if MAX_SEND_ATTEMPTS < 1:
        problems.append("MAX_SEND_ATTEMPTS must be at least 1")
    if not RETRY_BACKOFF_MINUTES:
        problems.append("RETRY_BACKOFF_MINUTES is empty")

    if problems:
        raise ConfigurationError("; ".join(problems))
