"""Training mission completion."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence

import db
from activity import mission_completed_activity
from engines.grading import round_half_up, xp_earned
from engines.investigation import ProgressPersistenceError
from engines.progression import ProgressionEngine, ProgressionResult
from schemas import MissionQuizItem, Profile, UserMissionProgress

_LOGGER = logging.getLogger(__name__)


class MissionNotFoundError(LookupError):
    pass


class MissionAlreadyCompletedError(RuntimeError):
    pass


@dataclass
class MissionCompletion:
    progress: UserMissionProgress
    quiz_score: int
    xp_earned: int
    profile: Profile
    new_badges: List[str] = field(default_factory=list)


def grade_quiz(quiz: Sequence[MissionQuizItem], responses: Sequence[Optional[int]]) -> int:
    """Percentage of quiz items answered with their ``correct_index``.

    Reading-only missions have no quiz and count as fully completed.
    """
    if not quiz:
        return 100
    correct = sum(
        1
        for index, item in enumerate(quiz)
        if index < len(responses) and responses[index] == item.correct_index
    )
    return round_half_up(100 * correct, len(quiz))


class MissionService:
    def __init__(self, progression: Optional[ProgressionEngine] = None) -> None:
        self.progression = progression or ProgressionEngine()

    def start(self, user_id: str, mission_id: str) -> UserMissionProgress:
        if db.get_mission(mission_id) is None:
            raise MissionNotFoundError(f"Unknown mission: {mission_id}")
        return db.create_mission_progress(user_id, mission_id)

    def complete(
        self,
        user_id: str,
        mission_id: str,
        quiz_responses: Sequence[Optional[int]],
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> MissionCompletion:
        mission = db.get_mission(mission_id)
        if mission is None:
            raise MissionNotFoundError(f"Unknown mission: {mission_id}")
        progress = db.get_mission_progress(user_id, mission_id) or db.create_mission_progress(
            user_id, mission_id
        )
        if progress.status == "completed":
            raise MissionAlreadyCompletedError(f"Mission {mission_id} was already completed")

        now = now or datetime.now(timezone.utc)
        score = grade_quiz(mission.quiz, quiz_responses)
        earned = xp_earned(mission.xp_reward, score)
        completed = progress.model_copy(
            update={
                "status": "completed",
                "quiz_score": score,
                "quiz_responses": list(quiz_responses),
                "xp_earned": earned,
                "completed_at": now,
            }
        )
        activity = mission_completed_activity(user_id, mission, earned, now=now)
        folds: List[ProgressionResult] = []

        def fold(profile: Profile) -> Profile:
            folds.append(
                self.progression.fold_mission_completion(profile, earned, today=today, now=now)
            )
            return folds[-1].profile

        try:
            stored, profile = db.commit_mission_completion(
                completed, progress.version, fold, activity
            )
        except db.StaleProgressError as exc:
            current = db.get_mission_progress(user_id, mission_id)
            if current is not None and current.status == "completed":
                raise MissionAlreadyCompletedError(
                    f"Mission {mission_id} was already completed"
                ) from exc
            raise
        except sqlite3.Error as exc:
            raise ProgressPersistenceError("Could not complete mission; please retry") from exc

        _LOGGER.info("Mission completed: user=%s mission=%s score=%s xp=%s", user_id, mission_id, score, earned)
        folded = folds[-1]
        return MissionCompletion(
            progress=stored,
            quiz_score=score,
            xp_earned=earned,
            profile=profile,
            new_badges=folded.new_badges,
        )
