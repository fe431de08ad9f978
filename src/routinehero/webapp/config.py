"""Configuration constants for the Routine Hero web API."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("ROUTINEHERO_DATABASE_URL", "sqlite:///routinehero.db")
SESSION_SECRET = os.environ.get("ROUTINEHERO_SESSION_SECRET", "change-this-session-secret")
PIN_SALT = os.environ.get("ROUTINEHERO_PIN_SALT", "routine-hero-salt")
TIMEZONE_NAME = os.environ.get("ROUTINEHERO_TIMEZONE", "UTC")
APP_TIMEZONE = ZoneInfo(TIMEZONE_NAME)

_log_path = os.environ.get("ROUTINEHERO_LOG_PATH", "").strip()
LOG_PATH: Optional[Path] = Path(_log_path) if _log_path else None

RECENT_ACTIVITY_DAYS = 7
RECENT_ACTIVITY_LIMIT = 20
FAMILY_CODE_ATTEMPTS = 5
PROGRESS_UPDATE_ATTEMPTS = 3

DEFAULT_ROUTINE_TYPE = "morning"
DEFAULT_CHILD_AGE = 5
DEFAULT_CHILD_AVATAR = "🧒"
DEFAULT_TASK_ICON = "⭐"
DEFAULT_TASK_DURATION = 5
DEFAULT_TASK_POINTS = 10

SESSION_FAMILY_KEY = "rh_family_id"
SESSION_CHILD_KEY = "rh_child_id"
SESSION_PARENT_KEY = "rh_is_parent"

__all__ = [
    "DATABASE_URL",
    "SESSION_SECRET",
    "PIN_SALT",
    "TIMEZONE_NAME",
    "APP_TIMEZONE",
    "LOG_PATH",
    "RECENT_ACTIVITY_DAYS",
    "RECENT_ACTIVITY_LIMIT",
    "FAMILY_CODE_ATTEMPTS",
    "PROGRESS_UPDATE_ATTEMPTS",
    "DEFAULT_ROUTINE_TYPE",
    "DEFAULT_CHILD_AGE",
    "DEFAULT_CHILD_AVATAR",
    "DEFAULT_TASK_ICON",
    "DEFAULT_TASK_DURATION",
    "DEFAULT_TASK_POINTS",
    "SESSION_FAMILY_KEY",
    "SESSION_CHILD_KEY",
    "SESSION_PARENT_KEY",
]
