"""Profile progression after a graded case, a completed mission or a phishing attempt.

The aggregator folds one completion event into the learner's durable
profile. For cases, derived fields (``cases_solved``,
``accuracy_percentage`` and ``normicyte_score``) are recomputed from the
full progress history that the caller passes in, while ``total_xp`` is
incremented. Streaks and badge unlocks are derived from the updated
profile; only graded cases fill the weekly buckets.

Everything here is deterministic and store-free: callers pass ``today`` and
``now`` explicitly and persist the returned profile themselves, which keeps
the fold testable and lets the store commit it atomically with the graded
progress record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from badge_definitions import BADGES, BadgeDefinition
from engines.grading import round_half_up
from env_validation import get_env_int, get_score_change_tiers
from schemas import InvestigationProgress, Profile, StreakData, UserBadge, WeeklyProgress

_LOGGER = logging.getLogger(__name__)

DEFAULT_SCORE_CHANGE_TIERS: Tuple[Tuple[int, int], ...] = ((80, 50), (50, 30))


@dataclass(frozen=True)
class ScoringRules:
    """Game-balance constants for the NormiCyte score and weekly credit."""

    case_points: int = 50
    accuracy_weight: int = 2
    weekly_window: int = 12
    score_change_tiers: Tuple[Tuple[int, int], ...] = DEFAULT_SCORE_CHANGE_TIERS
    score_change_floor: int = 10
    phishing_xp: int = 10

    def __post_init__(self) -> None:
        if self.case_points < 0 or self.accuracy_weight < 0 or self.phishing_xp < 0:
            raise ValueError("score weights must be non-negative")
        if self.weekly_window <= 0:
            raise ValueError("weekly_window must be positive")

    @classmethod
    def from_env(cls) -> "ScoringRules":
        defaults = cls()
        return cls(
            case_points=get_env_int("NORMICYTE_CASE_POINTS", defaults.case_points),
            accuracy_weight=get_env_int("NORMICYTE_ACCURACY_WEIGHT", defaults.accuracy_weight),
            weekly_window=get_env_int("NORMICYTE_WEEKLY_WINDOW", defaults.weekly_window),
            score_change_tiers=get_score_change_tiers(
                "NORMICYTE_SCORE_CHANGE_TIERS", defaults.score_change_tiers
            ),
            score_change_floor=get_env_int(
                "NORMICYTE_SCORE_CHANGE_FLOOR", defaults.score_change_floor
            ),
            phishing_xp=get_env_int("NORMICYTE_PHISHING_XP", defaults.phishing_xp),
        )


@dataclass
class CaseStatistics:
    cases_solved: int
    accuracy_percentage: int


@dataclass
class ProgressionResult:
    """Outcome of folding one completion into a profile."""

    profile: Profile
    new_badges: List[str] = field(default_factory=list)
    score_change: int = 0
    xp_earned: int = 0


@dataclass
class ProgressSummary:
    total_cases: int
    completed_cases: int
    in_progress_cases: int
    total_xp: int
    weekly_xp: int
    weekly_score_change: int
    current_streak: int
    accuracy: int


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


# ----- pure helpers ------------------------------------------------------
def case_statistics(progress_records: Iterable[InvestigationProgress]) -> CaseStatistics:
    """Count completed cases and average their scores (rounded half up)."""

    completed = [record for record in progress_records if record.is_completed]
    if not completed:
        return CaseStatistics(cases_solved=0, accuracy_percentage=0)
    total_score = sum(record.score or 0 for record in completed)
    return CaseStatistics(
        cases_solved=len(completed),
        accuracy_percentage=round_half_up(total_score, len(completed)),
    )


def normicyte_score(
    cases_solved: int, accuracy_percentage: int, rules: ScoringRules = ScoringRules()
) -> int:
    return rules.case_points * cases_solved + rules.accuracy_weight * int(accuracy_percentage)


def score_change_for(score: int, rules: ScoringRules = ScoringRules()) -> int:
    """Coarse weekly effort credit for a graded case."""

    for threshold, points in rules.score_change_tiers:
        if score >= threshold:
            return points
    return rules.score_change_floor


def advance_streak(streak: StreakData, today: date) -> StreakData:
    """Continue, keep or restart a daily streak for activity on ``today``."""

    last = streak.last_activity_date
    if last == today:
        return streak.model_copy()
    if last == today - timedelta(days=1):
        current = streak.current_streak + 1
    else:
        current = 1
    return StreakData(
        current_streak=current,
        longest_streak=max(streak.longest_streak, current),
        last_activity_date=today,
    )


def week_start(day: date) -> date:
    """Return the Sunday on or before ``day``."""

    return day - timedelta(days=(day.weekday() + 1) % 7)


def merge_weekly_progress(
    buckets: Sequence[WeeklyProgress],
    start: date,
    *,
    score_change: int = 0,
    cases_completed: int = 0,
    missions_completed: int = 0,
    xp_earned: int = 0,
    window: int = 12,
) -> List[WeeklyProgress]:
    """Add one event to the bucket for ``start`` and keep the latest ``window`` buckets."""

    merged = [bucket.model_copy() for bucket in buckets]
    for bucket in merged:
        if bucket.week_start == start:
            bucket.score_change += score_change
            bucket.cases_completed += cases_completed
            bucket.missions_completed += missions_completed
            bucket.xp_earned += xp_earned
            break
    else:
        merged.append(
            WeeklyProgress(
                week_start=start,
                score_change=score_change,
                cases_completed=cases_completed,
                missions_completed=missions_completed,
                xp_earned=xp_earned,
            )
        )
    return merged[-window:]


def badge_requirement_met(profile: Profile, badge: BadgeDefinition) -> bool:
    requirement = badge.requirement_type
    if requirement == "cases_solved":
        value = profile.cases_solved
    elif requirement == "accuracy":
        value = profile.accuracy_percentage
    elif requirement == "streak_days":
        value = profile.streak.current_streak
    elif requirement == "score_reached":
        value = profile.normicyte_score
    else:
        # "special" badges are granted by hand.
        return False
    return value >= badge.requirement_value


def evaluate_badges(
    profile: Profile,
    definitions: Iterable[BadgeDefinition],
    earned_at: datetime,
) -> List[UserBadge]:
    """Return the badges ``profile`` newly qualifies for, all stamped ``earned_at``."""

    earned = profile.badge_ids()
    awarded: List[UserBadge] = []
    for badge in definitions:
        if badge.id in earned:
            continue
        if badge_requirement_met(profile, badge):
            awarded.append(UserBadge(badge_id=badge.id, earned_at=earned_at))
            earned.add(badge.id)
    return awarded


def weekly_score_change(profile: Profile, today: Optional[date] = None) -> int:
    current = _current_week_bucket(profile, today or utc_today())
    return current.score_change if current else 0


def summarize_progress(
    progress_records: Sequence[InvestigationProgress],
    profile: Optional[Profile],
    today: Optional[date] = None,
) -> ProgressSummary:
    """Dashboard counters derived from progress records and the profile."""

    stats = case_statistics(progress_records)
    in_progress = sum(1 for record in progress_records if record.status == "in_progress")
    current = _current_week_bucket(profile, today or utc_today()) if profile else None
    return ProgressSummary(
        total_cases=len(progress_records),
        completed_cases=stats.cases_solved,
        in_progress_cases=in_progress,
        total_xp=profile.total_xp if profile else 0,
        weekly_xp=current.xp_earned if current else 0,
        weekly_score_change=current.score_change if current else 0,
        current_streak=profile.streak.current_streak if profile else 0,
        accuracy=stats.accuracy_percentage,
    )


def _current_week_bucket(profile: Profile, today: date) -> Optional[WeeklyProgress]:
    start = week_start(today)
    for bucket in profile.weekly_progress:
        if bucket.week_start == start:
            return bucket
    return None


# ----- engine --------------------------------------------------------------
class ProgressionEngine:
    """Fold completion events into a learner profile.

    Parameters
    ----------
    rules:
        Scoring constants; read from the environment when omitted.
    badges:
        Badge definitions to evaluate; defaults to the shared registry.
    """

    def __init__(
        self,
        rules: Optional[ScoringRules] = None,
        badges: Optional[Iterable[BadgeDefinition]] = None,
    ) -> None:
        self.rules = rules or ScoringRules.from_env()
        self._badges = list(badges) if badges is not None else None

    @property
    def badges(self) -> List[BadgeDefinition]:
        return self._badges if self._badges is not None else BADGES.badges

    # ----- public API --------------------------------------------------
    def fold_case_completion(
        self,
        profile: Profile,
        progress_history: Sequence[InvestigationProgress],
        xp_earned: int,
        score: int,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> ProgressionResult:
        """Apply a graded case to ``profile``.

        ``progress_history`` must already contain the graded record for the
        case being completed.
        """

        today = today or utc_today()
        now = now or datetime.now(timezone.utc)
        updated = profile.model_copy(deep=True)

        stats = case_statistics(progress_history)
        updated.cases_solved = stats.cases_solved
        updated.accuracy_percentage = stats.accuracy_percentage
        updated.normicyte_score = normicyte_score(
            stats.cases_solved, stats.accuracy_percentage, self.rules
        )
        updated.total_xp += int(xp_earned)
        updated.streak = advance_streak(updated.streak, today)

        score_change = score_change_for(score, self.rules)
        updated.weekly_progress = merge_weekly_progress(
            updated.weekly_progress,
            week_start(today),
            score_change=score_change,
            cases_completed=1,
            xp_earned=int(xp_earned),
            window=self.rules.weekly_window,
        )

        new_badges = self._award_badges(updated, now)
        updated.updated_at = now
        return ProgressionResult(
            profile=updated,
            new_badges=new_badges,
            score_change=score_change,
            xp_earned=int(xp_earned),
        )

    def fold_mission_completion(
        self,
        profile: Profile,
        xp_earned: int,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> ProgressionResult:
        today = today or utc_today()
        now = now or datetime.now(timezone.utc)
        updated = profile.model_copy(deep=True)

        updated.missions_completed += 1
        updated.total_xp += int(xp_earned)
        updated.streak = advance_streak(updated.streak, today)

        new_badges = self._award_badges(updated, now)
        updated.updated_at = now
        return ProgressionResult(profile=updated, new_badges=new_badges, xp_earned=int(xp_earned))

    def fold_phishing_attempt(
        self,
        profile: Profile,
        xp_earned: int,
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> ProgressionResult:
        """Credit a phishing-simulator attempt: XP and streak only, no badges."""

        updated = profile.model_copy(deep=True)
        updated.total_xp += int(xp_earned)
        updated.streak = advance_streak(updated.streak, today or utc_today())
        updated.updated_at = now or datetime.now(timezone.utc)
        return ProgressionResult(profile=updated, xp_earned=int(xp_earned))

    def award_badges(self, profile: Profile, now: Optional[datetime] = None) -> ProgressionResult:
        """Re-run badge evaluation alone; a no-op when nothing changed."""

        updated = profile.model_copy(deep=True)
        new_badges = self._award_badges(updated, now or datetime.now(timezone.utc))
        return ProgressionResult(profile=updated, new_badges=new_badges)

    # ----- helpers -----------------------------------------------------
    def _award_badges(self, profile: Profile, now: datetime) -> List[str]:
        awarded = evaluate_badges(profile, self.badges, now)
        if awarded:
            profile.badges.extend(awarded)
            _LOGGER.info(
                "Awarded badges %s to %s",
                ", ".join(badge.badge_id for badge in awarded),
                profile.user_id,
            )
        return [badge.badge_id for badge in awarded]
