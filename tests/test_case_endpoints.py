import asyncio
import json
from urllib.parse import urlencode

import pytest

import app
import db
from conftest import CASE_ID, CORRECT_ANSWERS


def _request(method: str, path: str, payload: dict | None = None, query: dict | None = None) -> tuple[int, dict]:
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [(b"host", b"testserver")]
        if payload is not None:
            headers += [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": urlencode(query or {}).encode(),
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post_json(path: str, payload: dict) -> tuple[int, dict]:
    return _request("POST", path, payload)


def _get_json(path: str, **query) -> tuple[int, dict]:
    return _request("GET", path, query=query)


def test_case_detail_hides_answer_key(seeded_case):
    status, payload = _get_json(f"/cases/{CASE_ID}")
    assert status == 200
    assert payload["case"]["case_number"] == "C-001"
    assert len(payload["questions"]) == 5
    assert "correct_answer" not in payload["questions"][0]
    assert "explanation_en" not in payload["questions"][0]
    assert payload["evidence"][0]["evidence_type"] == "email"

    status, payload = _get_json("/cases")
    assert [case["id"] for case in payload["cases"]] == [CASE_ID]

    status, _ = _get_json("/cases/missing")
    assert status == 404


def test_full_investigation_over_http(seeded_case):
    status, payload = _post_json(f"/cases/{CASE_ID}/start", {"user_id": "alice"})
    assert status == 200
    assert payload["progress"]["status"] == "in_progress"

    for index, raw in enumerate(CORRECT_ANSWERS):
        status, payload = _post_json(
            f"/cases/{CASE_ID}/answer", {"user_id": "alice", "index": index, "answer": raw}
        )
        assert status == 200

    status, review = _get_json(f"/cases/{CASE_ID}/review", user_id="alice")
    assert status == 200
    assert (review["answered"], review["skipped"]) == (5, 0)

    status, result = _post_json(f"/cases/{CASE_ID}/submit", {"user_id": "alice"})
    assert status == 200
    assert result["score"] == 100
    assert result["verdict"] == "solved"
    assert result["xp_earned"] == 150
    assert "first_case" in result["new_badges"]
    assert result["profile"]["normicyte_score"] == 250

    status, payload = _post_json(f"/cases/{CASE_ID}/submit", {"user_id": "alice"})
    assert status == 409

    status, profile = _get_json("/profile", user_id="alice")
    assert profile["total_xp"] == 150

    status, summary = _get_json("/progress/summary", user_id="alice")
    assert summary["completed_cases"] == 1
    assert summary["accuracy"] == 100

    status, feed = _get_json("/activities", user_id="alice", limit=5)
    assert [item["activity_type"] for item in feed["activities"]] == ["case_completed"]


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"user_id": "alice", "index": 9, "answer": "Phishing"}, 400),
        ({"user_id": "alice", "index": 0, "answer": ""}, 400),
        ({"user_id": "alice", "index": 0, "answer": "Ransomware"}, 400),
        ({"user_id": "  ", "index": 0, "answer": "Phishing"}, 400),
        ({"user_id": "alice", "index": -1, "answer": "Phishing"}, 422),
    ],
)
def test_answer_validation_errors(seeded_case, body, expected):
    _post_json(f"/cases/{CASE_ID}/start", {"user_id": "alice"})
    status, payload = _post_json(f"/cases/{CASE_ID}/answer", body)
    assert status == expected
    assert db.get_case_progress("alice", CASE_ID).responses == {}


def test_answer_before_start_is_not_found(seeded_case):
    status, payload = _post_json(
        f"/cases/{CASE_ID}/answer", {"user_id": "bob", "index": 0, "answer": "Phishing"}
    )
    assert status == 404


def test_store_failure_maps_to_service_unavailable(seeded_case, monkeypatch):
    import sqlite3

    _post_json(f"/cases/{CASE_ID}/start", {"user_id": "alice"})

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "save_case_responses", _boom)
    status, payload = _post_json(
        f"/cases/{CASE_ID}/answer", {"user_id": "alice", "index": 0, "answer": "Phishing"}
    )
    assert status == 503


def test_mission_endpoints(temp_db):
    from schemas import Mission, MissionQuizItem

    db.upsert_mission(
        Mission(
            id="m-1",
            title_en="Spot the Scam",
            quiz=[MissionQuizItem(question_en="Safe?", options=["Yes", "No"], correct_index=1)],
        )
    )
    status, _ = _post_json("/missions/m-1/start", {"user_id": "alice"})
    assert status == 200

    status, payload = _post_json("/missions/m-1/complete", {"user_id": "alice", "quiz_responses": [1]})
    assert status == 200
    assert payload["quiz_score"] == 100
    assert payload["xp_earned"] == 50
    assert payload["profile"]["missions_completed"] == 1

    status, _ = _post_json("/missions/m-1/complete", {"user_id": "alice", "quiz_responses": [1]})
    assert status == 409

    status, _ = _post_json("/missions/missing/start", {"user_id": "alice"})
    assert status == 404


def test_mission_listing_hides_quiz(temp_db):
    from schemas import Mission, MissionQuizItem

    db.upsert_mission(
        Mission(
            id="m-1",
            title_en="Spot the Scam",
            quiz=[MissionQuizItem(question_en="Safe?", options=["Yes", "No"], correct_index=1)],
        )
    )
    db.upsert_mission(Mission(id="m-2", title_en="Retired", is_active=False))

    status, payload = _get_json("/missions")
    assert status == 200
    assert [mission["id"] for mission in payload["missions"]] == ["m-1"]
    assert "quiz" not in payload["missions"][0]


def test_phishing_endpoints(temp_db):
    from schemas import PhishingScenario

    db.upsert_phishing_scenario(
        PhishingScenario(
            id="sc-upi-1",
            scenario_type="upi",
            sender="cashback@upi-rewards.example",
            content="Scan to receive Rs 500 cashback",
            is_phishing=True,
            red_flags_en=["Scanning a QR code sends money"],
            red_flags_hi=["QR कोड स्कैन करने से पैसे जाते हैं"],
        )
    )

    status, payload = _get_json("/phishing/scenarios")
    assert status == 200
    assert [scenario["id"] for scenario in payload["scenarios"]] == ["sc-upi-1"]
    assert "is_phishing" not in payload["scenarios"][0]
    assert "red_flags_en" not in payload["scenarios"][0]

    status, payload = _post_json(
        "/phishing/scenarios/sc-upi-1/attempt", {"user_id": "alice", "action": "report", "language": "hi"}
    )
    assert status == 200
    assert payload["is_correct"] is True
    assert payload["is_phishing"] is True
    assert payload["xp_earned"] == 10
    assert payload["red_flags"] == ["QR कोड स्कैन करने से पैसे जाते हैं"]
    assert payload["profile"]["total_xp"] == 10

    status, payload = _post_json("/phishing/scenarios/sc-upi-1/attempt", {"user_id": "alice", "action": "click"})
    assert status == 200
    assert payload["is_correct"] is False
    assert payload["xp_earned"] == 0

    status, payload = _get_json("/phishing/stats", user_id="alice")
    assert status == 200
    assert payload["total_scenarios"] == 2
    assert payload["correct_identifications"] == 1
    assert payload["accuracy_percentage"] == 50
    assert payload["total_xp_earned"] == 10
    assert payload["scenarios_by_type"] == {"email": 0, "chat": 0, "website": 0, "upi": 2}
    assert payload["completed_scenarios"] == ["sc-upi-1"]

    status, _ = _post_json("/phishing/scenarios/missing/attempt", {"user_id": "alice", "action": "report"})
    assert status == 404
    status, _ = _post_json("/phishing/scenarios/sc-upi-1/attempt", {"user_id": "alice", "action": "forward"})
    assert status == 422
