"""Environment variable validation and logging setup."""

import logging
import os
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "QUESTION_DATA_DIR": "data/questions",
    "CURRENT_GRADE": "1",
    "MAX_SET_QUESTIONS": "20",
    "LEARNER_NAME": "Learner",
    "LOG_LEVEL": "INFO",
}

_INT_VARS = {"CURRENT_GRADE": 1, "MAX_SET_QUESTIONS": 1}

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Apply defaults and validate configuration.

    Raises EnvironmentError if validation fails.
    """
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var, minimum in _INT_VARS.items():
        raw = os.environ[var]
        try:
            parsed = int(raw)
        except ValueError as exc:
            raise EnvironmentError(f"{var} must be an integer, got {raw!r}") from exc
        if parsed < minimum:
            raise EnvironmentError(f"{var} must be >= {minimum}, got {parsed}")

    level = os.environ["LOG_LEVEL"].upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise EnvironmentError(f"Invalid LOG_LEVEL: {os.environ['LOG_LEVEL']}")

    url = os.getenv("QUESTION_BANK_URL")
    if url and not (url.startswith("http://") or url.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for QUESTION_BANK_URL: {url}")
    if not url:
        logger.debug("Optional environment variable not set: QUESTION_BANK_URL (remote question bundle)")

def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Environment variable %s=%r is not an integer; using %d", name, value, default)
        return default

def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stream handler to the ``qb`` channel loggers and set the root level."""
    resolved = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=resolved, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    channel = logging.getLogger("qb")
    if not channel.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(message)s"))
        channel.addHandler(handler)
        channel.propagate = False
    channel.setLevel(resolved)
