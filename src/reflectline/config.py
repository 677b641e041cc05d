"""Startup configuration.

``validate_config`` checks that all required environment variables are set
before the service starts placing calls, so a missing key is a clear
startup failure rather than a silent mid-call crash.  ``Settings`` carries
the engine's tunables; every threshold the completion detector and the
scheduler loop use is read from here.
"""

import logging
import os
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
    "DEEPGRAM_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "PUBLIC_BASE_URL",
]

OPTIONAL_VARS = [
    "GOOGLE_TTS_API_KEY",
    "GOOGLE_TTS_VOICE",
    "JOURNAL_WEBHOOK_URL",
    "JOURNAL_WEBHOOK_SECRET",
    "REFLECTLINE_DB_PATH",
    "JUDGE_MODEL",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Exit the process if any required variable is missing or empty."""
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or the deployment's secret store.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass
class Settings:
    # Scheduler loop
    poll_interval_seconds: float = 15.0
    batch_size: int = 10
    default_max_attempts: int = 3
    retry_delay_minutes: float = 5.0

    # Completion detection
    pause_threshold_seconds: float = 3.0
    min_silence_seconds: float = 3.0
    hard_ceiling_seconds: float = 12.0
    ceiling_min_chars: int = 20
    confidence_bar: float = 0.75
    judge_timeout_seconds: float = 4.0

    # Call lifetime
    connect_timeout_seconds: float = 60.0
    caller_silence_timeout_seconds: float = 90.0

    db_path: str = "data/reflectline.db"

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", d.poll_interval_seconds),
            batch_size=_env_int("BATCH_SIZE", d.batch_size),
            default_max_attempts=_env_int("DEFAULT_MAX_ATTEMPTS", d.default_max_attempts),
            retry_delay_minutes=_env_float("RETRY_DELAY_MINUTES", d.retry_delay_minutes),
            pause_threshold_seconds=_env_float("PAUSE_THRESHOLD_SECONDS", d.pause_threshold_seconds),
            min_silence_seconds=_env_float("MIN_SILENCE_SECONDS", d.min_silence_seconds),
            hard_ceiling_seconds=_env_float("HARD_CEILING_SECONDS", d.hard_ceiling_seconds),
            ceiling_min_chars=_env_int("CEILING_MIN_CHARS", d.ceiling_min_chars),
            confidence_bar=_env_float("CONFIDENCE_BAR", d.confidence_bar),
            judge_timeout_seconds=_env_float("JUDGE_TIMEOUT_SECONDS", d.judge_timeout_seconds),
            connect_timeout_seconds=_env_float("CONNECT_TIMEOUT_SECONDS", d.connect_timeout_seconds),
            caller_silence_timeout_seconds=_env_float(
                "CALLER_SILENCE_TIMEOUT_SECONDS", d.caller_silence_timeout_seconds
            ),
            db_path=os.getenv("REFLECTLINE_DB_PATH", d.db_path),
        )
