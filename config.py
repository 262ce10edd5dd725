"""
Configuration module for Medbox.
Loads settings from environment variables (.env file).
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


class Config:
    """Application configuration loaded from environment variables."""

    # Local timezone used for "today" and day keys
    TIMEZONE = os.getenv("MEDBOX_TIMEZONE", "America/Los_Angeles")

    # RxNav drug classification lookup
    RXNAV_BASE_URL = os.getenv("RXNAV_BASE_URL", "https://rxnav.nlm.nih.gov/REST")
    LOOKUP_TIMEOUT_SECONDS = _float_env("LOOKUP_TIMEOUT_SECONDS", 12.0)

    # Refill prediction
    REFILL_HISTORY_DAYS = _int_env("REFILL_HISTORY_DAYS", 30)
    REFILL_MIN_HISTORY_DAYS = _int_env("REFILL_MIN_HISTORY_DAYS", 7)
    REFILL_HIGH_CONFIDENCE_DAYS = _int_env("REFILL_HIGH_CONFIDENCE_DAYS", 21)
    REFILL_CONSISTENCY_STDEV = _float_env("REFILL_CONSISTENCY_STDEV", 0.15)
    REFILL_SAFETY_BUFFER_DAYS = _int_env("REFILL_SAFETY_BUFFER_DAYS", 5)
    REFILL_CRITICAL_DAYS = _int_env("REFILL_CRITICAL_DAYS", 3)
    REFILL_WARNING_DAYS = _int_env("REFILL_WARNING_DAYS", 10)

    # HTTP API
    API_HOST = os.getenv("MEDBOX_HOST", "127.0.0.1")
    API_PORT = _int_env("MEDBOX_PORT", 5000)

    # Paths
    BASE_DIR = os.path.dirname(os.path.abspath(__file__))
    DATA_DIR = os.getenv("MEDBOX_DATA_DIR", os.path.join(BASE_DIR, "data"))
    LOG_DIR = os.getenv("MEDBOX_LOG_DIR", os.path.join(BASE_DIR, "logs"))

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable."""
        import pytz

        problems = []
        try:
            pytz.timezone(cls.TIMEZONE)
        except pytz.exceptions.UnknownTimeZoneError:
            problems.append(f"MEDBOX_TIMEZONE={cls.TIMEZONE!r} is not a known timezone")
        if not 10 <= cls.LOOKUP_TIMEOUT_SECONDS <= 15:
            problems.append("LOOKUP_TIMEOUT_SECONDS should be between 10 and 15")
        if cls.REFILL_CRITICAL_DAYS > cls.REFILL_WARNING_DAYS:
            problems.append("REFILL_CRITICAL_DAYS must not exceed REFILL_WARNING_DAYS")
        if cls.REFILL_MIN_HISTORY_DAYS > cls.REFILL_HISTORY_DAYS:
            problems.append("REFILL_MIN_HISTORY_DAYS must not exceed REFILL_HISTORY_DAYS")
        if problems:
            raise ValueError(
                f"Invalid configuration: {'; '.join(problems)}. "
                f"Please check your .env file (see .env.example)."
            )
