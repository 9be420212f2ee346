from datetime import datetime, timezone

import activity
from conftest import build_case
from schemas import Mission

NOW = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)


def test_case_activity_titles():
    record = activity.case_completed_activity("alice", build_case(), 120, now=NOW)
    assert record.activity_type == "case_completed"
    assert record.title_en == "Completed C-001: The Fake Bank Alert"
    assert record.title_hi == "C-001 पूर्ण: नकली बैंक अलर्ट"
    assert record.xp_earned == 120
    assert record.created_at == NOW


def test_mission_activity_falls_back_to_english_title():
    mission = Mission(id="m-1", title_en="Spot the Scam")
    record = activity.mission_completed_activity("alice", mission, 40, now=NOW)
    assert record.title_en == "Completed mission: Spot the Scam"
    assert record.title_hi == "मिशन पूरा: Spot the Scam"
