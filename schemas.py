"""Pydantic schemas for catalog records, investigation state and profiles."""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field

__all__ = [
    "Case",
    "CaseEvidence",
    "CorrectAnswer",
    "CaseQuestion",
    "SingleChoice",
    "MultiChoice",
    "FreeText",
    "Unanswered",
    "Answer",
    "FeedbackEntry",
    "GradeResult",
    "InvestigationProgress",
    "UserBadge",
    "StreakData",
    "WeeklyProgress",
    "Profile",
    "UserActivity",
    "MissionQuizItem",
    "Mission",
    "UserMissionProgress",
    "PhishingScenario",
    "PhishingAttempt",
    "PhishingStats",
    "answer_to_raw",
]

Difficulty = Literal["beginner", "intermediate", "advanced"]
EvidenceType = Literal["email", "chat", "url", "transaction", "document"]
QuestionType = Literal["multiple_choice", "multi_select", "yes_no_reasoning", "short_answer"]
ProgressStatus = Literal["in_progress", "submitted", "reviewed"]
Verdict = Literal["solved", "partially_solved", "needs_improvement"]
ScenarioType = Literal["email", "chat", "website", "upi"]
PhishingAction = Literal["report", "ignore", "click"]

COMPLETED_STATUSES = frozenset({"submitted", "reviewed"})


# ---------- catalog ----------
class Case(BaseModel):
    id: str
    case_number: str
    title_en: str
    title_hi: str = ""
    description_en: str = ""
    description_hi: str = ""
    brief_en: str = ""
    brief_hi: str = ""
    difficulty: Difficulty = "beginner"
    threat_type: str = ""
    xp_reward: int = Field(default=100, gt=0)


class CaseEvidence(BaseModel):
    id: str
    case_id: str
    evidence_type: EvidenceType
    content_en: str
    content_hi: str = ""
    display_order: int = 0


class CorrectAnswer(BaseModel):
    """Answer key; which field is populated depends on the question type."""

    answer: str | None = None
    answers: List[str] | None = None
    keywords: List[str] | None = None


class CaseQuestion(BaseModel):
    id: str
    case_id: str
    question_en: str
    question_hi: str = ""
    question_type: QuestionType
    options: List[str] | None = None
    correct_answer: CorrectAnswer
    explanation_en: str = ""
    explanation_hi: str = ""
    display_order: int = 0


# ---------- answers ----------
class SingleChoice(BaseModel):
    kind: Literal["single"] = "single"
    value: str


class MultiChoice(BaseModel):
    kind: Literal["multi"] = "multi"
    values: List[str]


class FreeText(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class Unanswered(BaseModel):
    kind: Literal["unanswered"] = "unanswered"


Answer = Annotated[
    Union[SingleChoice, MultiChoice, FreeText, Unanswered],
    Field(discriminator="kind"),
]


def answer_to_raw(answer: Any) -> Any:
    """Return the plain value a learner entered (string, list or ``None``)."""

    if isinstance(answer, (SingleChoice, FreeText)):
        return answer.value
    if isinstance(answer, MultiChoice):
        return list(answer.values)
    return None


# ---------- grading ----------
class FeedbackEntry(BaseModel):
    question_id: str
    user_answer: Any = None
    correct_answer: CorrectAnswer
    is_correct: bool
    explanation: str = ""


class GradeResult(BaseModel):
    score: int = Field(ge=0, le=100)
    verdict: Verdict
    feedback: List[FeedbackEntry] = Field(default_factory=list)
    correct_count: int = 0
    total_questions: int = 0


class InvestigationProgress(BaseModel):
    user_id: str
    case_id: str
    status: ProgressStatus = "in_progress"
    current_question_index: int = Field(default=0, ge=0)
    responses: Dict[int, Answer] = Field(
        default_factory=dict,
        description="Answers keyed by question index; missing indices are unanswered.",
    )
    score: int | None = None
    verdict: Verdict | None = None
    feedback: List[FeedbackEntry] = Field(default_factory=list)
    started_at: datetime | None = None
    submitted_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = Field(
        default=0,
        description="Bumped on every write; guarded writes compare against it.",
    )

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES


# ---------- profile ----------
class UserBadge(BaseModel):
    badge_id: str
    earned_at: datetime


class StreakData(BaseModel):
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: date | None = None


class WeeklyProgress(BaseModel):
    week_start: date
    score_change: int = 0
    cases_completed: int = 0
    missions_completed: int = 0
    xp_earned: int = 0


class Profile(BaseModel):
    user_id: str
    display_name: str | None = None
    language_preference: str = "en"
    normicyte_score: int = 0
    cases_solved: int = 0
    missions_completed: int = 0
    accuracy_percentage: int = 0
    total_xp: int = 0
    badges: List[UserBadge] = Field(default_factory=list)
    streak: StreakData = Field(default_factory=StreakData)
    weekly_progress: List[WeeklyProgress] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def badge_ids(self) -> set[str]:
        return {badge.badge_id for badge in self.badges}


class UserActivity(BaseModel):
    user_id: str
    activity_type: str
    title_en: str
    title_hi: str = ""
    xp_earned: int = 0
    created_at: datetime | None = None


# ---------- missions ----------
class MissionQuizItem(BaseModel):
    question_en: str
    question_hi: str = ""
    options: List[str]
    correct_index: int = Field(ge=0)
    explanation_en: str = ""
    explanation_hi: str = ""


class Mission(BaseModel):
    id: str
    title_en: str
    title_hi: str = ""
    description_en: str = ""
    description_hi: str = ""
    xp_reward: int = Field(default=50, gt=0)
    difficulty: Literal["easy", "medium", "hard"] = "easy"
    category: str = ""
    quiz: List[MissionQuizItem] = Field(default_factory=list)
    is_active: bool = True
    display_order: int = 0


class UserMissionProgress(BaseModel):
    user_id: str
    mission_id: str
    status: Literal["not_started", "in_progress", "completed"] = "in_progress"
    quiz_score: int | None = None
    quiz_responses: List[int | None] = Field(default_factory=list)
    xp_earned: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0


# ---------- phishing simulator ----------
class PhishingScenario(BaseModel):
    id: str
    scenario_type: ScenarioType
    sender: str = ""
    subject: str = ""
    content: str
    is_phishing: bool
    red_flags_en: List[str] = Field(default_factory=list)
    red_flags_hi: List[str] = Field(default_factory=list)


class PhishingAttempt(BaseModel):
    user_id: str
    scenario_id: str
    scenario_type: ScenarioType
    is_correct: bool
    action_taken: PhishingAction
    xp_earned: int = 0
    completed_at: datetime | None = None


class PhishingStats(BaseModel):
    total_scenarios: int = 0
    correct_identifications: int = 0
    accuracy_percentage: int = 0
    total_xp_earned: int = 0
    scenarios_by_type: Dict[str, int] = Field(
        default_factory=lambda: {"email": 0, "chat": 0, "website": 0, "upi": 0}
    )
