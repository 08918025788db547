"""Environment variable validation and management."""

import os
import logging
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_MASTERED_POLICIES = {"exclude", "downweight"}


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "QUESTION_BANK_PATH": "questions.json",
    "ENCOURAGEMENT_PATH": "encouragement.json",
    "ROUND_SIZE": "10",
    "MASTERED_POLICY": "exclude",
    "QUESTION_FETCH_LIMIT": "800",
    "STATS_FETCH_LIMIT": "2000",
    "TRAINER_SUBJECTS": "physics,chemistry,biology,earth",
    "TRAINER_LEARNERS": "chiao:Chiao,ashley:Ashley,tester:Tester (for dev)",
}


def validate_environment() -> None:
    """Apply defaults and validate the trainer configuration.

    Raises EnvironmentError if validation fails.
    """
    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    errors: List[str] = []
    for var, minimum in (("ROUND_SIZE", 1), ("QUESTION_FETCH_LIMIT", 1), ("STATS_FETCH_LIMIT", 1)):
        try:
            value = int(os.environ[var])
        except ValueError:
            errors.append(f"{var} must be an integer, got {os.environ[var]!r}")
            continue
        if value < minimum:
            errors.append(f"{var} must be >= {minimum}, got {value}")

    policy = os.environ["MASTERED_POLICY"].strip().lower()
    if policy not in _MASTERED_POLICIES:
        errors.append(f"MASTERED_POLICY must be one of {sorted(_MASTERED_POLICIES)}, got {policy!r}")

    if not get_env_list("TRAINER_SUBJECTS"):
        errors.append("TRAINER_SUBJECTS must name at least one subject")

    if errors:
        raise EnvironmentError("Invalid configuration: " + "; ".join(errors))

    for var in ("QUESTION_BANK_PATH", "ENCOURAGEMENT_PATH"):
        if not os.path.exists(os.environ[var]):
            logger.warning("Optional file not found: %s=%s", var, os.environ[var])


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Environment variable %s=%r is not an integer; using %d", name, value, default)
        return default


def get_env_list(name: str, default: Optional[str] = None) -> List[str]:
    raw = os.getenv(name, default or DEFAULTS.get(name, ""))
    return [part.strip() for part in raw.split(",") if part.strip()]


def get_learner_roster(name: str = "TRAINER_LEARNERS") -> List[Tuple[str, str]]:
    """Parse ``id:Display Name`` pairs; a bare id doubles as its display name."""
    roster: List[Tuple[str, str]] = []
    for entry in get_env_list(name):
        user_id, _, display = entry.partition(":")
        user_id = user_id.strip()
        if user_id:
            roster.append((user_id, display.strip() or user_id))
    return roster
