"""Phishing simulator attempts and their statistics.

Each attempt is judged against the stored scenario: reporting a phishing
message is correct, and so is any action other than reporting on a genuine
one. Correct attempts earn a flat XP award. Every attempt, right or wrong,
counts as daily activity for the streak.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

import db
from engines.grading import round_half_up
from engines.investigation import ProgressPersistenceError
from engines.progression import ProgressionEngine
from schemas import PhishingAttempt, PhishingScenario, PhishingStats, Profile

_LOGGER = logging.getLogger(__name__)

PHISHING_ACTIONS = frozenset({"report", "ignore", "click"})


class PhishingScenarioNotFoundError(LookupError):
    pass


class InvalidPhishingActionError(ValueError):
    pass


@dataclass
class PhishingAttemptResult:
    attempt: PhishingAttempt
    scenario: PhishingScenario
    profile: Profile

    @property
    def is_correct(self) -> bool:
        return self.attempt.is_correct

    @property
    def xp_earned(self) -> int:
        return self.attempt.xp_earned


def is_correct_action(scenario: PhishingScenario, action: str) -> bool:
    if scenario.is_phishing:
        return action == "report"
    return action != "report"


def phishing_stats(attempts: Iterable[PhishingAttempt]) -> PhishingStats:
    """Totals, rounded accuracy and per-channel counts over ``attempts``."""

    stats = PhishingStats()
    for attempt in attempts:
        stats.total_scenarios += 1
        if attempt.is_correct:
            stats.correct_identifications += 1
        stats.total_xp_earned += attempt.xp_earned
        if attempt.scenario_type in stats.scenarios_by_type:
            stats.scenarios_by_type[attempt.scenario_type] += 1
    if stats.total_scenarios:
        stats.accuracy_percentage = round_half_up(
            100 * stats.correct_identifications, stats.total_scenarios
        )
    return stats


class PhishingService:
    def __init__(self, progression: Optional[ProgressionEngine] = None) -> None:
        self.progression = progression or ProgressionEngine()

    def scenarios(self, scenario_type: Optional[str] = None) -> List[PhishingScenario]:
        return db.list_phishing_scenarios(scenario_type)

    def record_attempt(
        self,
        user_id: str,
        scenario_id: str,
        action: str,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> PhishingAttemptResult:
        if action not in PHISHING_ACTIONS:
            raise InvalidPhishingActionError(f"Unknown phishing action: {action!r}")
        scenario = db.get_phishing_scenario(scenario_id)
        if scenario is None:
            raise PhishingScenarioNotFoundError(f"Unknown phishing scenario: {scenario_id}")

        now = now or datetime.now(timezone.utc)
        correct = is_correct_action(scenario, action)
        attempt = PhishingAttempt(
            user_id=user_id,
            scenario_id=scenario.id,
            scenario_type=scenario.scenario_type,
            is_correct=correct,
            action_taken=action,
            xp_earned=self.progression.rules.phishing_xp if correct else 0,
            completed_at=now,
        )

        def fold(profile: Profile) -> Profile:
            return self.progression.fold_phishing_attempt(
                profile, attempt.xp_earned, today=today, now=now
            ).profile

        try:
            profile = db.record_phishing_attempt(attempt, fold)
        except sqlite3.Error as exc:
            _LOGGER.error("Saving phishing attempt failed for %s/%s: %s", user_id, scenario_id, exc)
            raise ProgressPersistenceError("Could not save attempt; please retry") from exc

        _LOGGER.info(
            "Phishing attempt: user=%s scenario=%s action=%s correct=%s",
            user_id,
            scenario_id,
            action,
            correct,
        )
        return PhishingAttemptResult(attempt=attempt, scenario=scenario, profile=profile)

    def stats(self, user_id: str) -> PhishingStats:
        return phishing_stats(db.list_phishing_attempts(user_id))

    def completed_scenarios(self, user_id: str) -> List[str]:
        seen: List[str] = []
        for attempt in db.list_phishing_attempts(user_id):
            if attempt.scenario_id not in seen:
                seen.append(attempt.scenario_id)
        return seen
