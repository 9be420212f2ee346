"""Badge definition loader."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

BADGE_CATEGORIES = frozenset({"achievement", "streak", "skill", "milestone"})
REQUIREMENT_TYPES = frozenset(
    {"cases_solved", "score_reached", "streak_days", "accuracy", "special"}
)

_WHITESPACE = re.compile(r"\s+")


class BadgeConfigError(ValueError):
    """Raised when ``badges.json`` contains invalid data."""


def badge_id_for(name_en: str) -> str:
    """Return the stable badge identifier derived from the English name."""

    return _WHITESPACE.sub("_", name_en.strip().lower())


@dataclass(frozen=True)
class BadgeDefinition:
    """Immutable representation of an unlockable badge."""

    id: str
    name_en: str
    name_hi: str
    description_en: str
    description_hi: str
    icon: str
    category: str
    requirement_type: str
    requirement_value: float


class BadgeRegistry:
    """Load badge definitions from ``badges.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent
        if path is None:
            path = os.getenv("BADGES_PATH") or base_path / "badges.json"
        self.path = Path(path)
        self._badges: List[BadgeDefinition] = []
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload badge definitions from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Badge definitions file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise BadgeConfigError("Badge definitions file must contain a JSON list")

        badges: List[BadgeDefinition] = []
        seen: set[str] = set()
        for idx, entry in enumerate(raw, start=1):
            if not isinstance(entry, dict):
                raise BadgeConfigError(f"Entry #{idx} must be a JSON object")

            name_en = str(entry.get("name_en") or "").strip()
            if not name_en:
                raise BadgeConfigError(f"Entry #{idx} is missing a non-empty 'name_en'")

            badge_id = badge_id_for(name_en)
            if badge_id in seen:
                raise BadgeConfigError(f"Duplicate badge id detected: {badge_id}")
            seen.add(badge_id)

            category = str(entry.get("category", "")).strip()
            if category not in BADGE_CATEGORIES:
                raise BadgeConfigError(f"Badge {badge_id} has unknown category '{category}'")

            requirement_type = str(entry.get("requirement_type", "")).strip()
            if requirement_type not in REQUIREMENT_TYPES:
                raise BadgeConfigError(
                    f"Badge {badge_id} has unknown requirement_type '{requirement_type}'"
                )

            try:
                requirement_value = float(entry.get("requirement_value"))
            except (TypeError, ValueError) as exc:
                raise BadgeConfigError(
                    f"Badge {badge_id} has non-numeric requirement_value"
                ) from exc
            if requirement_value < 0:
                raise BadgeConfigError(f"Badge {badge_id} requirement_value must be >= 0")

            badges.append(
                BadgeDefinition(
                    id=badge_id,
                    name_en=name_en,
                    name_hi=str(entry.get("name_hi") or name_en).strip(),
                    description_en=str(entry.get("description_en", "")).strip(),
                    description_hi=str(entry.get("description_hi", "")).strip(),
                    icon=str(entry.get("icon", "")),
                    category=category,
                    requirement_type=requirement_type,
                    requirement_value=requirement_value,
                )
            )

        self._badges = badges

    # ------------------------------------------------------------------
    @property
    def badges(self) -> List[BadgeDefinition]:
        """Return a shallow copy of the known badges."""

        return list(self._badges)

    def get(self, badge_id: str) -> Optional[BadgeDefinition]:
        for badge in self._badges:
            if badge.id == badge_id:
                return badge
        return None

    def __iter__(self) -> Iterable[BadgeDefinition]:
        return iter(self._badges)

    def __len__(self) -> int:
        return len(self._badges)


BADGES = BadgeRegistry()
"""Singleton registry used throughout the application."""
