"""Investigation state machine for Digital Detective cases.

A learner's progress on one case moves ``in_progress -> reviewed``. Answers
are recorded one question at a time and every forward step persists the full
responses mapping together with the cursor. Grading happens only on explicit
submission, after a review step, and the terminal ``reviewed`` transition is
a guarded write so duplicate submissions can never credit XP twice.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

import db
from activity import case_completed_activity
from engines.grading import CatalogIntegrityError, GradingEngine, validate_question, xp_earned
from engines.progression import ProgressionEngine, ProgressionResult
from schemas import (
    Case,
    CaseQuestion,
    FreeText,
    GradeResult,
    InvestigationProgress,
    MultiChoice,
    Profile,
    SingleChoice,
    Unanswered,
)

_LOGGER = logging.getLogger(__name__)


class InvestigationError(Exception):
    """Base class for investigation failures surfaced to callers."""


class CaseNotFoundError(InvestigationError, LookupError):
    pass


class InvestigationNotStartedError(InvestigationError):
    pass


class QuestionIndexError(InvestigationError, IndexError):
    pass


class EmptyAnswerError(InvestigationError, ValueError):
    pass


class InvalidAnswerError(InvestigationError, ValueError):
    pass


class InvestigationClosedError(InvestigationError):
    """The case was already reviewed; its progress can no longer change."""


class AlreadyReviewedError(InvestigationClosedError):
    pass


class ProgressPersistenceError(InvestigationError):
    """The store rejected a write; local state was not advanced. Safe to retry."""


def build_answer(question: CaseQuestion, raw: Any):
    """Coerce a raw UI value into the answer variant ``question`` expects."""

    if isinstance(raw, (SingleChoice, MultiChoice, FreeText)):
        return raw
    if raw is None or isinstance(raw, Unanswered):
        raise EmptyAnswerError(f"Question {question.id} requires an answer")

    qtype = question.question_type
    if qtype == "multi_select":
        if isinstance(raw, str) or not isinstance(raw, (list, tuple, set, frozenset)):
            raise InvalidAnswerError(f"Question {question.id} expects a list of options")
        selected: List[str] = []
        for value in raw:
            text = str(value)
            if text.strip() and text not in selected:
                selected.append(text)
        if not selected:
            raise EmptyAnswerError(f"Question {question.id} requires at least one option")
        _check_options(question, selected)
        return MultiChoice(values=selected)

    if not isinstance(raw, str):
        raise InvalidAnswerError(f"Question {question.id} expects a text answer")
    if not raw.strip():
        raise EmptyAnswerError(f"Question {question.id} requires an answer")
    if qtype == "short_answer":
        return FreeText(value=raw)
    _check_options(question, [raw])
    return SingleChoice(value=raw)


def _check_options(question: CaseQuestion, values: Sequence[str]) -> None:
    if not question.options:
        return
    unknown = [value for value in values if value not in question.options]
    if unknown:
        raise InvalidAnswerError(
            f"Question {question.id} has no option(s) {', '.join(repr(v) for v in unknown)}"
        )


@dataclass
class QuestionReview:
    index: int
    question_id: str
    answered: bool


@dataclass
class SubmissionResult:
    progress: InvestigationProgress
    grade: GradeResult
    xp_earned: int
    score_change: int
    profile: Profile
    new_badges: List[str] = field(default_factory=list)


class InvestigationStateMachine:
    """Drive one learner through a case and commit the graded outcome."""

    def __init__(
        self,
        grading: Optional[GradingEngine] = None,
        progression: Optional[ProgressionEngine] = None,
    ) -> None:
        self.grading = grading or GradingEngine()
        self.progression = progression or ProgressionEngine()

    # ----- public API --------------------------------------------------
    def load_case(self, case_id: str) -> Tuple[Case, List[CaseQuestion]]:
        case = db.get_case(case_id)
        if case is None:
            raise CaseNotFoundError(f"Unknown case: {case_id}")
        questions = db.get_case_questions(case_id)
        if not questions:
            raise CatalogIntegrityError(f"Case {case_id} has no questions")
        for question in questions:
            validate_question(question)
        return case, questions

    def start(self, user_id: str, case_id: str) -> InvestigationProgress:
        """Open (or resume) the learner's investigation of ``case_id``."""

        self.load_case(case_id)
        existing = db.get_case_progress(user_id, case_id)
        if existing is not None:
            return existing
        progress = db.create_case_progress(user_id, case_id)
        _LOGGER.info("Investigation started: user=%s case=%s", user_id, case_id)
        return progress

    def record_answer(
        self, user_id: str, case_id: str, index: int, raw_answer: Any
    ) -> InvestigationProgress:
        """Store the answer for question ``index`` and advance the cursor."""

        _, questions = self.load_case(case_id)
        progress = self._require_progress(user_id, case_id)
        if progress.status == "reviewed":
            raise InvestigationClosedError(f"Case {case_id} was already reviewed")
        if not 0 <= index < len(questions):
            raise QuestionIndexError(
                f"Question index {index} outside [0, {len(questions)}) for case {case_id}"
            )

        responses = dict(progress.responses)
        responses[index] = build_answer(questions[index], raw_answer)
        next_index = min(index + 1, len(questions) - 1)
        try:
            return db.save_case_responses(user_id, case_id, responses, next_index)
        except db.StaleProgressError as exc:
            raise InvestigationClosedError(f"Case {case_id} was already reviewed") from exc
        except sqlite3.Error as exc:
            _LOGGER.error("Saving responses failed for %s/%s: %s", user_id, case_id, exc)
            raise ProgressPersistenceError("Could not save progress; please retry") from exc

    def review(self, user_id: str, case_id: str) -> List[QuestionReview]:
        """Answered/skipped status per question before committing."""

        _, questions = self.load_case(case_id)
        progress = self._require_progress(user_id, case_id)
        return [
            QuestionReview(
                index=index,
                question_id=question.id,
                answered=_is_answered(progress.responses.get(index)),
            )
            for index, question in enumerate(questions)
        ]

    def submit(
        self,
        user_id: str,
        case_id: str,
        language: str = "en",
        *,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> SubmissionResult:
        """Grade the case once and commit the terminal ``reviewed`` state."""

        case, questions = self.load_case(case_id)
        progress = self._require_progress(user_id, case_id)
        if progress.status == "reviewed":
            _LOGGER.warning("Rejected duplicate submission: user=%s case=%s", user_id, case_id)
            raise AlreadyReviewedError(f"Case {case_id} was already reviewed")

        now = now or datetime.now(timezone.utc)
        grade = self.grading.grade(questions, progress.responses, language)
        earned = xp_earned(case.xp_reward, grade.score)
        graded = progress.model_copy(
            update={
                "status": "reviewed",
                "score": grade.score,
                "verdict": grade.verdict,
                "feedback": grade.feedback,
                "submitted_at": now,
            }
        )
        activity = case_completed_activity(user_id, case, earned, now=now)

        folds: List[ProgressionResult] = []

        def fold(profile: Profile, history: List[InvestigationProgress]) -> Profile:
            folds.append(
                self.progression.fold_case_completion(
                    profile, history, earned, grade.score, today=today, now=now
                )
            )
            return folds[-1].profile

        try:
            stored, profile = db.commit_case_review(graded, progress.version, fold, activity)
        except db.StaleProgressError as exc:
            current = db.get_case_progress(user_id, case_id)
            if current is not None and current.status == "reviewed":
                _LOGGER.warning("Rejected concurrent submission: user=%s case=%s", user_id, case_id)
                raise AlreadyReviewedError(f"Case {case_id} was already reviewed") from exc
            raise
        except sqlite3.Error as exc:
            _LOGGER.error("Committing review failed for %s/%s: %s", user_id, case_id, exc)
            raise ProgressPersistenceError("Could not submit analysis; please retry") from exc

        _LOGGER.info(
            "Case reviewed: user=%s case=%s score=%s verdict=%s xp=%s",
            user_id,
            case_id,
            grade.score,
            grade.verdict,
            earned,
        )
        folded = folds[-1]
        return SubmissionResult(
            progress=stored,
            grade=grade,
            xp_earned=earned,
            score_change=folded.score_change,
            profile=profile,
            new_badges=folded.new_badges,
        )

    # ----- helpers -----------------------------------------------------
    def _require_progress(self, user_id: str, case_id: str) -> InvestigationProgress:
        progress = db.get_case_progress(user_id, case_id)
        if progress is None:
            raise InvestigationNotStartedError(f"Case {case_id} has not been started by {user_id}")
        return progress


def _is_answered(answer: Any) -> bool:
    return answer is not None and not isinstance(answer, Unanswered)


class InvestigationSession:
    """In-memory cursor over one learner's investigation.

    Moving forward persists through the state machine; moving back only
    changes the local cursor. A failed write leaves the cursor and the local
    responses exactly where they were.
    """

    def __init__(
        self,
        machine: InvestigationStateMachine,
        progress: InvestigationProgress,
        questions: Sequence[CaseQuestion],
    ) -> None:
        self.machine = machine
        self.progress = progress
        self.questions = list(questions)
        self.responses = dict(progress.responses)
        self.cursor = min(progress.current_question_index, len(self.questions) - 1)

    @classmethod
    def open(
        cls, machine: InvestigationStateMachine, user_id: str, case_id: str
    ) -> "InvestigationSession":
        progress = machine.start(user_id, case_id)
        _, questions = machine.load_case(case_id)
        return cls(machine, progress, questions)

    @property
    def question_count(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> CaseQuestion:
        return self.questions[self.cursor]

    @property
    def current_answer(self):
        """Previously stored answer for the current question, if any."""
        return self.responses.get(self.cursor)

    @property
    def at_last_question(self) -> bool:
        return self.cursor == self.question_count - 1

    @property
    def ready_for_review(self) -> bool:
        return self.at_last_question and _is_answered(self.responses.get(self.cursor))

    def answer(self, raw_answer: Any) -> InvestigationProgress:
        progress = self.machine.record_answer(
            self.progress.user_id, self.progress.case_id, self.cursor, raw_answer
        )
        self.progress = progress
        self.responses = dict(progress.responses)
        self.cursor = progress.current_question_index
        return progress

    def back(self) -> int:
        if self.cursor > 0:
            self.cursor -= 1
        return self.cursor

    def review(self) -> List[QuestionReview]:
        return self.machine.review(self.progress.user_id, self.progress.case_id)

    def submit(self, language: str = "en", **kwargs: Any) -> SubmissionResult:
        result = self.machine.submit(self.progress.user_id, self.progress.case_id, language, **kwargs)
        self.progress = result.progress
        return result
