# app.py: NormiCyte case progression API
# - Digital Detective investigations (start / answer / review / submit)
# - Profile, progress summary and activity feed
# - Training mission completion
# - Phishing simulator attempts and stats

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Literal, Optional, Union

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import db
from engines.grading import CatalogIntegrityError, GradingEngine
from engines.investigation import (
    AlreadyReviewedError,
    CaseNotFoundError,
    EmptyAnswerError,
    InvalidAnswerError,
    InvestigationClosedError,
    InvestigationError,
    InvestigationNotStartedError,
    InvestigationStateMachine,
    ProgressPersistenceError,
    QuestionIndexError,
)
from engines.missions import MissionAlreadyCompletedError, MissionNotFoundError, MissionService
from engines.phishing import (
    InvalidPhishingActionError,
    PhishingScenarioNotFoundError,
    PhishingService,
)
from engines.progression import ProgressionEngine, summarize_progress
from env_validation import get_env_int

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.configure(os.environ["DB_PATH"])
        db.init()
        logger.info("NormiCyte store ready at %s", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="NormiCyte Case Progression", version="1.0.0", lifespan=_lifespan)

_PROGRESSION_ENGINE = ProgressionEngine()
_GRADING_ENGINE = GradingEngine(
    solved_threshold=get_env_int("NORMICYTE_SOLVED_THRESHOLD", 80),
    partial_threshold=get_env_int("NORMICYTE_PARTIAL_THRESHOLD", 50),
)
INVESTIGATIONS = InvestigationStateMachine(grading=_GRADING_ENGINE, progression=_PROGRESSION_ENGINE)
MISSIONS = MissionService(progression=_PROGRESSION_ENGINE)
PHISHING = PhishingService(progression=_PROGRESSION_ENGINE)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(
        exc,
        (CaseNotFoundError, MissionNotFoundError, InvestigationNotStartedError, PhishingScenarioNotFoundError),
    ):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(
        exc,
        (QuestionIndexError, EmptyAnswerError, InvalidAnswerError, InvalidPhishingActionError),
    ):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(
        exc,
        (AlreadyReviewedError, InvestigationClosedError, MissionAlreadyCompletedError, db.StaleProgressError),
    ):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, CatalogIntegrityError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ProgressPersistenceError):
        return HTTPException(status_code=503, detail=str(exc))
    logger.error("Unexpected investigation error: %s", exc)
    return HTTPException(status_code=500, detail="Internal server error")


_HANDLED = (
    InvestigationError,
    CatalogIntegrityError,
    MissionNotFoundError,
    MissionAlreadyCompletedError,
    PhishingScenarioNotFoundError,
    InvalidPhishingActionError,
    db.StaleProgressError,
)


class StartBody(BaseModel):
    user_id: str


class AnswerBody(BaseModel):
    user_id: str
    index: int = Field(ge=0)
    answer: Union[str, List[str], None] = None


class SubmitBody(BaseModel):
    user_id: str
    language: Literal["en", "hi"] = "en"


class MissionCompleteBody(BaseModel):
    user_id: str
    quiz_responses: List[Optional[int]] = Field(default_factory=list)


class PhishingAttemptBody(BaseModel):
    user_id: str
    action: Literal["report", "ignore", "click"]
    language: Literal["en", "hi"] = "en"


def _require_user(user_id: Optional[str]) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    return user_id


# ---------- Cases ----------
@app.get("/cases")
def list_cases():
    return {"cases": [case.model_dump() for case in db.list_cases()]}


@app.get("/cases/{case_id}")
def get_case(case_id: str):
    case = db.get_case(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="case not found")
    questions = [
        question.model_dump(exclude={"correct_answer", "explanation_en", "explanation_hi"})
        for question in db.get_case_questions(case_id)
    ]
    return {
        "case": case.model_dump(),
        "evidence": [item.model_dump() for item in db.get_case_evidence(case_id)],
        "questions": questions,
    }


@app.post("/cases/{case_id}/start")
def start_case(case_id: str, body: StartBody):
    user_id = _require_user(body.user_id)
    try:
        progress = INVESTIGATIONS.start(user_id, case_id)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return {"progress": progress.model_dump(mode="json")}


@app.post("/cases/{case_id}/answer")
def answer_question(case_id: str, body: AnswerBody):
    user_id = _require_user(body.user_id)
    try:
        progress = INVESTIGATIONS.record_answer(user_id, case_id, body.index, body.answer)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return {"progress": progress.model_dump(mode="json")}


@app.get("/cases/{case_id}/review")
def review_case(case_id: str, user_id: str):
    user_id = _require_user(user_id)
    try:
        summary = INVESTIGATIONS.review(user_id, case_id)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    items = [asdict(item) for item in summary]
    return {
        "questions": items,
        "answered": sum(1 for item in summary if item.answered),
        "skipped": sum(1 for item in summary if not item.answered),
    }


@app.post("/cases/{case_id}/submit")
def submit_case(case_id: str, body: SubmitBody):
    user_id = _require_user(body.user_id)
    try:
        result = INVESTIGATIONS.submit(user_id, case_id, body.language)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return {
        "score": result.grade.score,
        "verdict": result.grade.verdict,
        "feedback": [entry.model_dump(mode="json") for entry in result.grade.feedback],
        "xp_earned": result.xp_earned,
        "score_change": result.score_change,
        "new_badges": result.new_badges,
        "profile": result.profile.model_dump(mode="json"),
    }


# ---------- Profile ----------
@app.get("/profile")
def profile(user_id: str):
    user_id = _require_user(user_id)
    return db.ensure_profile(user_id).model_dump(mode="json")


@app.get("/progress/summary")
def progress_summary(user_id: str):
    user_id = _require_user(user_id)
    summary = summarize_progress(db.list_case_progress(user_id), db.get_profile(user_id))
    return asdict(summary)


@app.get("/activities")
def activities(user_id: str, limit: int = 10):
    user_id = _require_user(user_id)
    limit = max(1, min(int(limit), 100))
    return {
        "activities": [
            item.model_dump(mode="json") for item in db.list_user_activities(user_id, limit=limit)
        ]
    }


# ---------- Missions ----------
@app.get("/missions")
def list_missions():
    return {"missions": [mission.model_dump(exclude={"quiz"}) for mission in db.list_missions()]}


@app.post("/missions/{mission_id}/start")
def start_mission(mission_id: str, body: StartBody):
    user_id = _require_user(body.user_id)
    try:
        progress = MISSIONS.start(user_id, mission_id)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return {"progress": progress.model_dump(mode="json")}


@app.post("/missions/{mission_id}/complete")
def complete_mission(mission_id: str, body: MissionCompleteBody):
    user_id = _require_user(body.user_id)
    try:
        completion = MISSIONS.complete(user_id, mission_id, body.quiz_responses)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    return {
        "quiz_score": completion.quiz_score,
        "xp_earned": completion.xp_earned,
        "new_badges": completion.new_badges,
        "profile": completion.profile.model_dump(mode="json"),
    }


# ---------- Phishing simulator ----------
@app.get("/phishing/scenarios")
def list_phishing_scenarios(scenario_type: Optional[str] = None):
    scenarios = PHISHING.scenarios(scenario_type)
    return {
        "scenarios": [
            scenario.model_dump(exclude={"is_phishing", "red_flags_en", "red_flags_hi"})
            for scenario in scenarios
        ]
    }


@app.post("/phishing/scenarios/{scenario_id}/attempt")
def attempt_phishing_scenario(scenario_id: str, body: PhishingAttemptBody):
    user_id = _require_user(body.user_id)
    try:
        result = PHISHING.record_attempt(user_id, scenario_id, body.action)
    except _HANDLED as exc:
        raise _http_error(exc) from exc
    scenario = result.scenario
    red_flags = scenario.red_flags_hi if body.language == "hi" else scenario.red_flags_en
    return {
        "is_correct": result.is_correct,
        "is_phishing": scenario.is_phishing,
        "xp_earned": result.xp_earned,
        "red_flags": red_flags or scenario.red_flags_en,
        "profile": result.profile.model_dump(mode="json"),
    }


@app.get("/phishing/stats")
def phishing_stats(user_id: str):
    user_id = _require_user(user_id)
    stats = PHISHING.stats(user_id)
    return {**stats.model_dump(), "completed_scenarios": PHISHING.completed_scenarios(user_id)}
