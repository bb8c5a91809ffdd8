"""
SafeCheck Monitor — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # SQLite
    DATABASE_PATH: str = "data/safecheck.db"
    DB_TIMEOUT_SECONDS: float = 10.0

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # Schedules; DEFAULT_TIMEZONE is only a fallback when a user has none
    DEFAULT_TIMEZONE: str = "Asia/Karachi"
    DEFAULT_SCHEDULES: list[str] = ["11:00 AM"]

    # Missed check-in detection
    GRACE_PERIOD_MINUTES: int = 0
    ESCALATION_THRESHOLD_DAYS: int = 3
    ESCALATION_RATE_LIMIT_HOURS: int = 24

    # Deferred tasks
    TASK_CREATE_MAX_ATTEMPTS: int = 3
    TASK_RETRY_BASE_SECONDS: float = 1.0

    # Background jobs
    SWEEP_INTERVAL_MINUTES: int = 15
    DAILY_RESET_INTERVAL_MINUTES: int = 60

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("DEFAULT_SCHEDULES", mode="before")
    @classmethod
    def parse_schedules(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, list):
            return v or ["11:00 AM"]
        if isinstance(v, str) and v.strip():
            return [s.strip() for s in v.split(",") if s.strip()]
        return ["11:00 AM"]

    @field_validator(
        "GRACE_PERIOD_MINUTES",
        "ESCALATION_THRESHOLD_DAYS",
        "ESCALATION_RATE_LIMIT_HOURS",
        "TASK_CREATE_MAX_ATTEMPTS",
        "SWEEP_INTERVAL_MINUTES",
        "DAILY_RESET_INTERVAL_MINUTES",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 0:
            raise ValueError(f"must be non-negative, got {value}")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/safecheck.db"),
        DB_TIMEOUT_SECONDS=os.getenv("DB_TIMEOUT_SECONDS", "10"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        DEFAULT_TIMEZONE=os.getenv("DEFAULT_TIMEZONE", "Asia/Karachi"),
        DEFAULT_SCHEDULES=os.getenv("DEFAULT_SCHEDULES", "11:00 AM"),
        GRACE_PERIOD_MINUTES=os.getenv("GRACE_PERIOD_MINUTES", "0"),
        ESCALATION_THRESHOLD_DAYS=os.getenv("ESCALATION_THRESHOLD_DAYS", "3"),
        ESCALATION_RATE_LIMIT_HOURS=os.getenv("ESCALATION_RATE_LIMIT_HOURS", "24"),
        TASK_CREATE_MAX_ATTEMPTS=os.getenv("TASK_CREATE_MAX_ATTEMPTS", "3"),
        TASK_RETRY_BASE_SECONDS=os.getenv("TASK_RETRY_BASE_SECONDS", "1.0"),
        SWEEP_INTERVAL_MINUTES=os.getenv("SWEEP_INTERVAL_MINUTES", "15"),
        DAILY_RESET_INTERVAL_MINUTES=os.getenv("DAILY_RESET_INTERVAL_MINUTES", "60"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
