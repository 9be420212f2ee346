"""Environment variable validation and management."""

import os
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_INT_VARS = (
    "NORMICYTE_CASE_POINTS",
    "NORMICYTE_ACCURACY_WEIGHT",
    "NORMICYTE_WEEKLY_WINDOW",
    "NORMICYTE_SCORE_CHANGE_FLOOR",
    "NORMICYTE_PHISHING_XP",
    "NORMICYTE_SOLVED_THRESHOLD",
    "NORMICYTE_PARTIAL_THRESHOLD",
)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var in _INT_VARS:
        get_env_int(var, 0)
    get_score_change_tiers("NORMICYTE_SCORE_CHANGE_TIERS", ())

    badges_path = os.getenv("BADGES_PATH")
    if badges_path and not os.path.exists(badges_path):
        raise EnvironmentError(f"BADGES_PATH does not exist: {badges_path}")
    if not badges_path:
        logger.debug("Optional environment variable not set: BADGES_PATH (badge definitions JSON)")


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be an integer, got {value!r}") from exc


def get_score_change_tiers(
    name: str, default: Tuple[Tuple[int, int], ...]
) -> Tuple[Tuple[int, int], ...]:
    """Parse ``"80:50,50:30"`` into ``((80, 50), (50, 30))`` sorted by threshold."""
    value: Optional[str] = os.getenv(name)
    if value is None or not value.strip():
        return default
    tiers = []
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        threshold, _, points = chunk.partition(":")
        try:
            tiers.append((int(threshold), int(points)))
        except ValueError as exc:
            raise EnvironmentError(
                f"{name} entries must look like 'threshold:points', got {chunk!r}"
            ) from exc
    tiers.sort(key=lambda tier: tier[0], reverse=True)
    return tuple(tiers)
