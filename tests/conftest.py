import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

CASE_ID = "case-001"

# Raw answers that are correct for every question of the seeded case.
CORRECT_ANSWERS = [
    "Phishing",
    ["D", "C", "B", "A"],
    "No",
    "The sender DOMAIN is spoofed",
    "Report",
]


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DB_PATH", str(db_path))

    # Fresh pool per test so no connection outlives its database file.
    db.configure(str(db_path))
    db.init()
    yield str(db_path)
    db._pool.close_all()


def build_questions(case_id: str = CASE_ID):
    from schemas import CaseQuestion, CorrectAnswer

    return [
        CaseQuestion(
            id=f"{case_id}-q1",
            case_id=case_id,
            question_en="What kind of attack is shown in the email?",
            question_type="multiple_choice",
            options=["Phishing", "Vishing", "Smishing"],
            correct_answer=CorrectAnswer(answer="Phishing"),
            explanation_en="The email imitates a bank to harvest credentials.",
            explanation_hi="ईमेल बैंक की नकल करता है।",
            display_order=1,
        ),
        CaseQuestion(
            id=f"{case_id}-q2",
            case_id=case_id,
            question_en="Which red flags are present?",
            question_type="multi_select",
            options=["A", "B", "C", "D"],
            correct_answer=CorrectAnswer(answers=["A", "B", "C", "D"]),
            explanation_en="All four indicators appear in the evidence.",
            display_order=2,
        ),
        CaseQuestion(
            id=f"{case_id}-q3",
            case_id=case_id,
            question_en="Should the victim click the link?",
            question_type="yes_no_reasoning",
            options=["Yes", "No"],
            correct_answer=CorrectAnswer(answer="No"),
            explanation_en="Never follow links from unverified senders.",
            display_order=3,
        ),
        CaseQuestion(
            id=f"{case_id}-q4",
            case_id=case_id,
            question_en="What gave the attacker away?",
            question_type="short_answer",
            correct_answer=CorrectAnswer(keywords=["sender", "domain"]),
            explanation_en="The sender domain does not match the bank.",
            display_order=4,
        ),
        CaseQuestion(
            id=f"{case_id}-q5",
            case_id=case_id,
            question_en="What is the right response?",
            question_type="multiple_choice",
            options=["Report", "Click", "Ignore"],
            correct_answer=CorrectAnswer(answer="Report"),
            explanation_en="Reporting protects other users.",
            display_order=5,
        ),
    ]


def build_case(case_id: str = CASE_ID, xp_reward: int = 150):
    from schemas import Case

    return Case(
        id=case_id,
        case_number="C-001",
        title_en="The Fake Bank Alert",
        title_hi="नकली बैंक अलर्ट",
        description_en="A suspicious bank email.",
        brief_en="Investigate the email sent to Priya.",
        difficulty="beginner",
        threat_type="phishing",
        xp_reward=xp_reward,
    )


@pytest.fixture
def seeded_case(temp_db):
    import db
    from schemas import CaseEvidence

    case = build_case()
    db.upsert_case(case)
    db.add_case_evidence(
        CaseEvidence(
            id="ev-1",
            case_id=case.id,
            evidence_type="email",
            content_en="From: support@bank-secure-login.example",
            display_order=1,
        )
    )
    # Inserted out of order to prove the store sorts by display_order.
    for question in reversed(build_questions(case.id)):
        db.add_case_question(question)
    return case
