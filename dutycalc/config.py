"""
Runtime configuration.

Values come from the environment (a local .env is loaded first), with
defaults suitable for local development against SQLite.
"""

import os

from dotenv import load_dotenv
from flask import current_app, has_app_context

load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("SQLALCHEMY_DATABASE_URI", "sqlite:///dutycalc.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # AI formula extraction
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    FORMULA_MODEL = os.environ.get("FORMULA_MODEL", "gpt-4o")
    FORMULA_AI_TIMEOUT_SECONDS = _env_float("FORMULA_AI_TIMEOUT_SECONDS", 20.0)

    # Results below this are queued for review instead of applied
    FORMULA_CONFIDENCE_THRESHOLD = _env_float("FORMULA_CONFIDENCE_THRESHOLD", 0.85)
    FORMULA_BATCH_WORKERS = _env_int("FORMULA_BATCH_WORKERS", 8)

    # Money is quantized to this many fractional digits
    MONEY_SCALE = _env_int("MONEY_SCALE", 2)

    # Countries without normal trade relations use the column 2 ("other") rate
    NON_NTR_COUNTRIES = tuple(
        c.strip().upper()
        for c in os.environ.get("NON_NTR_COUNTRIES", "CU,KP,BY,RU").split(",")
        if c.strip()
    )

    ENGINE_VERSION = "1.0.0"


def setting(name: str):
    """
    Read a setting from the active Flask app, falling back to Config.

    Lets create_app(config_overrides) reach services constructed inside
    an app context; outside one the environment-derived Config applies.
    """
    if has_app_context() and name in current_app.config:
        return current_app.config[name]
    return getattr(Config, name)
