"""Bilingual activity-feed records for completed cases and missions.

Records are immutable once written; the store appends them in the same
transaction as the profile update they describe.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from schemas import Case, Mission, UserActivity


def case_completed_activity(
    user_id: str, case: Case, xp_earned: int, *, now: Optional[datetime] = None
) -> UserActivity:
    return UserActivity(
        user_id=user_id,
        activity_type="case_completed",
        title_en=f"Completed {case.case_number}: {case.title_en}",
        title_hi=f"{case.case_number} पूर्ण: {case.title_hi or case.title_en}",
        xp_earned=int(xp_earned),
        created_at=now or datetime.now(timezone.utc),
    )


def mission_completed_activity(
    user_id: str, mission: Mission, xp_earned: int, *, now: Optional[datetime] = None
) -> UserActivity:
    return UserActivity(
        user_id=user_id,
        activity_type="mission_completed",
        title_en=f"Completed mission: {mission.title_en}",
        title_hi=f"मिशन पूरा: {mission.title_hi or mission.title_en}",
        xp_earned=int(xp_earned),
        created_at=now or datetime.now(timezone.utc),
    )
