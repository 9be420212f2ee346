"""Answer grading for Digital Detective cases.

Grading is a pure function of the case questions and the learner's stored
responses. It never touches the store; callers are responsible for making
sure a case is graded once per learner (XP accumulation is an increment).
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from schemas import (
    CaseQuestion,
    FeedbackEntry,
    FreeText,
    GradeResult,
    MultiChoice,
    SingleChoice,
    answer_to_raw,
)

_LOGGER = logging.getLogger(__name__)

SINGLE_ANSWER_TYPES = frozenset({"multiple_choice", "yes_no_reasoning"})
QUESTION_TYPES = SINGLE_ANSWER_TYPES | {"multi_select", "short_answer"}


class CatalogIntegrityError(ValueError):
    """Raised when case content cannot be graded (authoring bug)."""


def round_half_up(numerator: int, denominator: int) -> int:
    """Round ``numerator / denominator`` half away from zero for non-negative ints."""

    if denominator <= 0:
        raise ValueError("denominator must be positive")
    return (2 * numerator + denominator) // (2 * denominator)


def xp_earned(xp_reward: int, score: int) -> int:
    """Proportional XP for a graded case: ``round(xp_reward * score / 100)``."""

    return round_half_up(int(xp_reward) * int(score), 100)


def validate_question(question: CaseQuestion) -> None:
    """Ensure the answer key is present and reachable for its question type.

    A key that names an option the learner cannot pick, or a keyword list
    with blank entries, makes the question impossible to answer correctly.
    """

    key = question.correct_answer
    qtype = question.question_type
    options = set(question.options or [])
    if qtype in SINGLE_ANSWER_TYPES:
        if key.answer is None:
            raise CatalogIntegrityError(
                f"Question {question.id} ({qtype}) has no correct_answer.answer"
            )
        if options and key.answer not in options:
            raise CatalogIntegrityError(
                f"Question {question.id} answer {key.answer!r} is not one of its options"
            )
    elif qtype == "multi_select":
        if not key.answers:
            raise CatalogIntegrityError(
                f"Question {question.id} (multi_select) has no correct_answer.answers"
            )
        missing = [answer for answer in key.answers if options and answer not in options]
        if missing:
            raise CatalogIntegrityError(
                f"Question {question.id} answers {missing!r} are not among its options"
            )
    elif qtype == "short_answer":
        if not key.keywords:
            raise CatalogIntegrityError(
                f"Question {question.id} (short_answer) has no correct_answer.keywords"
            )
        if any(not keyword.strip() for keyword in key.keywords):
            raise CatalogIntegrityError(f"Question {question.id} has a blank keyword")
    else:
        raise CatalogIntegrityError(f"Question {question.id} has unknown type {qtype!r}")


def is_correct(question: CaseQuestion, answer: Any) -> bool:
    """Apply the matching rule for ``question.question_type`` to ``answer``.

    ``answer`` is one of the answer variants from :mod:`schemas`. Unanswered
    or mismatched variants are simply incorrect.
    """

    key = question.correct_answer
    qtype = question.question_type
    if qtype in SINGLE_ANSWER_TYPES:
        return isinstance(answer, SingleChoice) and answer.value == key.answer
    if qtype == "multi_select":
        if not isinstance(answer, MultiChoice):
            return False
        selected = set(answer.values)
        expected = set(key.answers or [])
        return len(selected) == len(expected) and selected == expected
    if qtype == "short_answer":
        if not isinstance(answer, FreeText):
            return False
        text = answer.value.lower()
        if not text:
            return False
        return any(keyword.lower() in text for keyword in key.keywords or [] if keyword.strip())
    return False


class GradingEngine:
    """Score a case submission and bucket it into a verdict.

    Parameters
    ----------
    solved_threshold:
        Minimum score (inclusive) for the ``solved`` verdict.
    partial_threshold:
        Minimum score (inclusive) for ``partially_solved``; anything lower is
        ``needs_improvement``.
    """

    def __init__(self, solved_threshold: int = 80, partial_threshold: int = 50) -> None:
        if not 0 < solved_threshold <= 100:
            raise ValueError("solved_threshold must be in (0, 100]")
        if not 0 < partial_threshold < solved_threshold:
            raise ValueError("partial_threshold must be positive and lower than solved_threshold")
        self.solved_threshold = int(solved_threshold)
        self.partial_threshold = int(partial_threshold)

    def verdict_for(self, score: int) -> str:
        if score >= self.solved_threshold:
            return "solved"
        if score >= self.partial_threshold:
            return "partially_solved"
        return "needs_improvement"

    def grade(
        self,
        questions: Sequence[CaseQuestion],
        responses: Mapping[int, Any],
        language: str = "en",
    ) -> GradeResult:
        """Grade ``responses`` (keyed by question index) against ``questions``."""

        if not questions:
            raise CatalogIntegrityError("Cannot grade a case without questions")

        feedback: list[FeedbackEntry] = []
        correct = 0
        for index, question in enumerate(questions):
            validate_question(question)
            answer = responses.get(index)
            ok = is_correct(question, answer)
            if ok:
                correct += 1
            explanation = question.explanation_hi if language == "hi" else question.explanation_en
            feedback.append(
                FeedbackEntry(
                    question_id=question.id,
                    user_answer=answer_to_raw(answer),
                    correct_answer=question.correct_answer,
                    is_correct=ok,
                    explanation=explanation or question.explanation_en,
                )
            )

        total = len(questions)
        score = round_half_up(100 * correct, total)
        verdict = self.verdict_for(score)
        _LOGGER.debug("Graded %s/%s correct -> score=%s verdict=%s", correct, total, score, verdict)
        return GradeResult(
            score=score,
            verdict=verdict,
            feedback=feedback,
            correct_count=correct,
            total_questions=total,
        )
