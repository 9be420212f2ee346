import sqlite3
from datetime import date, datetime, timezone

import pytest

import db
from engines.investigation import ProgressPersistenceError
from engines.phishing import (
    InvalidPhishingActionError,
    PhishingScenarioNotFoundError,
    PhishingService,
    is_correct_action,
    phishing_stats,
)
from engines.progression import ProgressionEngine, ScoringRules
from schemas import PhishingAttempt, PhishingScenario

TODAY = date(2026, 10, 21)
NOW = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)

FAKE_BANK = PhishingScenario(
    id="sc-email-1",
    scenario_type="email",
    sender="alerts@sbi-kyc-update.example",
    subject="Your account will be blocked",
    content="Update your KYC within 24 hours",
    is_phishing=True,
    red_flags_en=["Urgent deadline", "Look-alike domain"],
    red_flags_hi=["तत्काल समय सीमा", "मिलता-जुलता डोमेन"],
)
FRIEND_CHAT = PhishingScenario(
    id="sc-chat-1",
    scenario_type="chat",
    sender="Rahul",
    content="See you at the library at 5?",
    is_phishing=False,
)


def _attempt(scenario_type, correct, xp):
    return PhishingAttempt(
        user_id="alice",
        scenario_id=f"sc-{scenario_type}",
        scenario_type=scenario_type,
        is_correct=correct,
        action_taken="report",
        xp_earned=xp,
    )


@pytest.fixture
def service(temp_db):
    db.upsert_phishing_scenario(FAKE_BANK)
    db.upsert_phishing_scenario(FRIEND_CHAT)
    return PhishingService(progression=ProgressionEngine(rules=ScoringRules()))


def test_correct_action_rule():
    assert is_correct_action(FAKE_BANK, "report")
    assert not is_correct_action(FAKE_BANK, "ignore")
    assert not is_correct_action(FAKE_BANK, "click")
    assert is_correct_action(FRIEND_CHAT, "ignore")
    assert is_correct_action(FRIEND_CHAT, "click")
    assert not is_correct_action(FRIEND_CHAT, "report")


def test_stats_without_attempts():
    stats = phishing_stats([])
    assert stats.total_scenarios == 0
    assert stats.accuracy_percentage == 0
    assert stats.scenarios_by_type == {"email": 0, "chat": 0, "website": 0, "upi": 0}


def test_stats_round_accuracy_and_count_by_type():
    attempts = [
        _attempt("email", True, 10),
        _attempt("email", False, 0),
        _attempt("upi", True, 10),
    ]
    stats = phishing_stats(attempts)
    assert stats.total_scenarios == 3
    assert stats.correct_identifications == 2
    # 2 / 3 = 66.67
    assert stats.accuracy_percentage == 67
    assert stats.total_xp_earned == 20
    assert stats.scenarios_by_type == {"email": 2, "chat": 0, "website": 0, "upi": 1}


def test_reporting_phishing_earns_xp_and_streak(service):
    result = service.record_attempt("alice", FAKE_BANK.id, "report", today=TODAY, now=NOW)

    assert result.is_correct
    assert result.xp_earned == 10
    assert result.profile.total_xp == 10
    assert result.profile.streak.current_streak == 1

    profile = db.get_profile("alice")
    assert profile.total_xp == 10
    assert profile.streak.last_activity_date == TODAY
    assert profile.badges == []
    assert db.list_user_activities("alice") == []


def test_wrong_action_earns_nothing_but_keeps_the_streak(service):
    result = service.record_attempt("alice", FRIEND_CHAT.id, "report", today=TODAY, now=NOW)

    assert not result.is_correct
    assert result.xp_earned == 0
    profile = db.get_profile("alice")
    assert profile.total_xp == 0
    assert profile.streak.current_streak == 1


def test_repeat_attempts_are_all_recorded(service):
    service.record_attempt("alice", FAKE_BANK.id, "click", today=TODAY, now=NOW)
    service.record_attempt("alice", FAKE_BANK.id, "report", today=TODAY, now=NOW)
    service.record_attempt("alice", FRIEND_CHAT.id, "ignore", today=TODAY, now=NOW)

    stats = service.stats("alice")
    assert stats.total_scenarios == 3
    assert stats.correct_identifications == 2
    assert stats.accuracy_percentage == 67
    assert stats.total_xp_earned == 20
    assert stats.scenarios_by_type["email"] == 2
    assert stats.scenarios_by_type["chat"] == 1
    assert service.completed_scenarios("alice") == [FAKE_BANK.id, FRIEND_CHAT.id]
    assert db.get_profile("alice").total_xp == 20


def test_phishing_xp_follows_rules(temp_db):
    db.upsert_phishing_scenario(FAKE_BANK)
    service = PhishingService(progression=ProgressionEngine(rules=ScoringRules(phishing_xp=25)))
    result = service.record_attempt("alice", FAKE_BANK.id, "report", today=TODAY, now=NOW)
    assert result.xp_earned == 25


def test_unknown_scenario_and_action(service):
    with pytest.raises(PhishingScenarioNotFoundError):
        service.record_attempt("alice", "missing", "report")
    with pytest.raises(InvalidPhishingActionError):
        service.record_attempt("alice", FAKE_BANK.id, "forward")
    assert db.list_phishing_attempts("alice") == []


def test_write_failure_is_retryable(service, monkeypatch):
    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    with monkeypatch.context() as patched:
        patched.setattr(db, "record_phishing_attempt", _boom)
        with pytest.raises(ProgressPersistenceError):
            service.record_attempt("alice", FAKE_BANK.id, "report", today=TODAY, now=NOW)

    assert db.list_phishing_attempts("alice") == []
    result = service.record_attempt("alice", FAKE_BANK.id, "report", today=TODAY, now=NOW)
    assert result.xp_earned == 10
