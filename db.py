import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from db_pool import SQLiteConnectionPool
from schemas import (
    Case,
    CaseEvidence,
    CaseQuestion,
    InvestigationProgress,
    Mission,
    PhishingAttempt,
    PhishingScenario,
    Profile,
    UserActivity,
    UserMissionProgress,
)

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


class StaleProgressError(RuntimeError):
    """Raised when a guarded write finds the record changed or already terminal."""


def configure(path: str) -> None:
    """Point the module at another database file (tests, CLI tools)."""
    global DB_PATH, _pool
    _pool.close_all()
    DB_PATH = path
    _pool = SQLiteConnectionPool(path, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str], default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable JSON column value: %.80s", value)
        return default


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS cases (
              id              TEXT PRIMARY KEY,
              case_number     TEXT NOT NULL,
              title_en        TEXT NOT NULL,
              title_hi        TEXT NOT NULL DEFAULT '',
              description_en  TEXT NOT NULL DEFAULT '',
              description_hi  TEXT NOT NULL DEFAULT '',
              brief_en        TEXT NOT NULL DEFAULT '',
              brief_hi        TEXT NOT NULL DEFAULT '',
              difficulty      TEXT NOT NULL CHECK (difficulty IN ('beginner','intermediate','advanced')),
              threat_type     TEXT NOT NULL DEFAULT '',
              xp_reward       INTEGER NOT NULL CHECK (xp_reward > 0),
              created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS case_evidence (
              id             TEXT PRIMARY KEY,
              case_id        TEXT NOT NULL,
              evidence_type  TEXT NOT NULL CHECK (evidence_type IN ('email','chat','url','transaction','document')),
              content_en     TEXT NOT NULL,
              content_hi     TEXT NOT NULL DEFAULT '',
              display_order  INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY(case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_case_evidence_case ON case_evidence(case_id, display_order);

            CREATE TABLE IF NOT EXISTS case_questions (
              id              TEXT PRIMARY KEY,
              case_id         TEXT NOT NULL,
              question_en     TEXT NOT NULL,
              question_hi     TEXT NOT NULL DEFAULT '',
              question_type   TEXT NOT NULL,
              options         TEXT,
              correct_answer  TEXT NOT NULL,
              explanation_en  TEXT NOT NULL DEFAULT '',
              explanation_hi  TEXT NOT NULL DEFAULT '',
              display_order   INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY(case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_case_questions_case ON case_questions(case_id, display_order);

            CREATE TABLE IF NOT EXISTS user_case_progress (
              user_id                 TEXT NOT NULL,
              case_id                 TEXT NOT NULL,
              status                  TEXT NOT NULL CHECK (status IN ('in_progress','submitted','reviewed')),
              current_question_index  INTEGER NOT NULL DEFAULT 0,
              responses               TEXT NOT NULL DEFAULT '{}',
              score                   INTEGER,
              verdict                 TEXT,
              feedback                TEXT NOT NULL DEFAULT '[]',
              started_at              TEXT,
              submitted_at            TEXT,
              updated_at              TEXT,
              version                 INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY (user_id, case_id),
              FOREIGN KEY(case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS profiles (
              user_id              TEXT PRIMARY KEY,
              display_name         TEXT,
              language_preference  TEXT NOT NULL DEFAULT 'en',
              normicyte_score      INTEGER NOT NULL DEFAULT 0,
              cases_solved         INTEGER NOT NULL DEFAULT 0,
              missions_completed   INTEGER NOT NULL DEFAULT 0,
              accuracy_percentage  INTEGER NOT NULL DEFAULT 0,
              total_xp             INTEGER NOT NULL DEFAULT 0,
              badges               TEXT NOT NULL DEFAULT '[]',
              streak               TEXT NOT NULL DEFAULT '{}',
              weekly_progress      TEXT NOT NULL DEFAULT '[]',
              created_at           TEXT,
              updated_at           TEXT
            );

            CREATE TABLE IF NOT EXISTS user_activity (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              activity_type  TEXT NOT NULL,
              title_en       TEXT NOT NULL,
              title_hi       TEXT NOT NULL DEFAULT '',
              xp_earned      INTEGER NOT NULL DEFAULT 0,
              created_at     TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_user_activity_user ON user_activity(user_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS missions (
              id             TEXT PRIMARY KEY,
              data           TEXT NOT NULL,
              is_active      INTEGER NOT NULL DEFAULT 1,
              display_order  INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS user_missions (
              user_id         TEXT NOT NULL,
              mission_id      TEXT NOT NULL,
              status          TEXT NOT NULL CHECK (status IN ('not_started','in_progress','completed')),
              quiz_score      INTEGER,
              quiz_responses  TEXT NOT NULL DEFAULT '[]',
              xp_earned       INTEGER NOT NULL DEFAULT 0,
              started_at      TEXT,
              completed_at    TEXT,
              updated_at      TEXT,
              version         INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY (user_id, mission_id),
              FOREIGN KEY(mission_id) REFERENCES missions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS phishing_scenarios (
              id             TEXT PRIMARY KEY,
              scenario_type  TEXT NOT NULL CHECK (scenario_type IN ('email','chat','website','upi')),
              sender         TEXT NOT NULL DEFAULT '',
              subject        TEXT NOT NULL DEFAULT '',
              content        TEXT NOT NULL,
              is_phishing    INTEGER NOT NULL,
              red_flags      TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS user_phishing_attempts (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              scenario_id    TEXT NOT NULL,
              scenario_type  TEXT NOT NULL,
              is_correct     INTEGER NOT NULL,
              action_taken   TEXT NOT NULL CHECK (action_taken IN ('report','ignore','click')),
              xp_earned      INTEGER NOT NULL DEFAULT 0,
              completed_at   TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_user_phishing_attempts_user ON user_phishing_attempts(user_id, id);
            """
        )
        con.commit()


# -------------- case catalog --------------
def upsert_case(case: Case) -> None:
    _exec(
        """
        INSERT INTO cases(
          id, case_number, title_en, title_hi, description_en, description_hi,
          brief_en, brief_hi, difficulty, threat_type, xp_reward
        )
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          case_number=excluded.case_number,
          title_en=excluded.title_en,
          title_hi=excluded.title_hi,
          description_en=excluded.description_en,
          description_hi=excluded.description_hi,
          brief_en=excluded.brief_en,
          brief_hi=excluded.brief_hi,
          difficulty=excluded.difficulty,
          threat_type=excluded.threat_type,
          xp_reward=excluded.xp_reward
        """,
        (
            case.id,
            case.case_number,
            case.title_en,
            case.title_hi,
            case.description_en,
            case.description_hi,
            case.brief_en,
            case.brief_hi,
            case.difficulty,
            case.threat_type,
            int(case.xp_reward),
        ),
    )


_CASE_COLUMNS = (
    "id, case_number, title_en, title_hi, description_en, description_hi, "
    "brief_en, brief_hi, difficulty, threat_type, xp_reward"
)


def get_case(case_id: str) -> Optional[Case]:
    rows = _query(f"SELECT {_CASE_COLUMNS} FROM cases WHERE id = ?", (case_id,))
    return Case(**dict(rows[0])) if rows else None


def list_cases(limit: int = 100) -> list[Case]:
    rows = _query(
        f"SELECT {_CASE_COLUMNS} FROM cases ORDER BY case_number LIMIT ?",
        (int(limit),),
    )
    return [Case(**dict(row)) for row in rows]


def add_case_evidence(evidence: CaseEvidence) -> None:
    _exec(
        """
        INSERT OR REPLACE INTO case_evidence(id, case_id, evidence_type, content_en, content_hi, display_order)
        VALUES (?,?,?,?,?,?)
        """,
        (
            evidence.id,
            evidence.case_id,
            evidence.evidence_type,
            evidence.content_en,
            evidence.content_hi,
            int(evidence.display_order),
        ),
    )


def get_case_evidence(case_id: str) -> list[CaseEvidence]:
    rows = _query(
        """
        SELECT id, case_id, evidence_type, content_en, content_hi, display_order
        FROM case_evidence
        WHERE case_id = ?
        ORDER BY display_order, id
        """,
        (case_id,),
    )
    return [CaseEvidence(**dict(row)) for row in rows]


def add_case_question(question: CaseQuestion) -> None:
    _exec(
        """
        INSERT OR REPLACE INTO case_questions(
          id, case_id, question_en, question_hi, question_type, options,
          correct_answer, explanation_en, explanation_hi, display_order
        )
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            question.id,
            question.case_id,
            question.question_en,
            question.question_hi,
            question.question_type,
            None if question.options is None else json_dumps(question.options),
            json_dumps(question.correct_answer.model_dump(exclude_none=True)),
            question.explanation_en,
            question.explanation_hi,
            int(question.display_order),
        ),
    )


def get_case_questions(case_id: str) -> list[CaseQuestion]:
    rows = _query(
        """
        SELECT id, case_id, question_en, question_hi, question_type, options,
               correct_answer, explanation_en, explanation_hi, display_order
        FROM case_questions
        WHERE case_id = ?
        ORDER BY display_order, id
        """,
        (case_id,),
    )
    questions = []
    for row in rows:
        data = dict(row)
        data["options"] = _decode_json_field(data["options"], None)
        data["correct_answer"] = _decode_json_field(data["correct_answer"], {})
        questions.append(CaseQuestion(**data))
    return questions


# -------------- investigation progress --------------
_PROGRESS_COLUMNS = (
    "user_id, case_id, status, current_question_index, responses, score, verdict, "
    "feedback, started_at, submitted_at, updated_at, version"
)


def _progress_from_row(row: sqlite3.Row) -> InvestigationProgress:
    data = dict(row)
    data["responses"] = _decode_json_field(data["responses"], {})
    data["feedback"] = _decode_json_field(data["feedback"], [])
    return InvestigationProgress(**data)


def _dump_responses(responses: Mapping[int, Any]) -> str:
    return json_dumps(
        {str(index): answer.model_dump(mode="json") for index, answer in sorted(responses.items())}
    )


def get_case_progress(user_id: str, case_id: str) -> Optional[InvestigationProgress]:
    rows = _query(
        f"SELECT {_PROGRESS_COLUMNS} FROM user_case_progress WHERE user_id = ? AND case_id = ?",
        (user_id, case_id),
    )
    return _progress_from_row(rows[0]) if rows else None


_LIST_PROGRESS_SQL = f"""
    SELECT {_PROGRESS_COLUMNS}
    FROM user_case_progress
    WHERE user_id = ?
    ORDER BY started_at, case_id
"""


def list_case_progress(user_id: str) -> list[InvestigationProgress]:
    return [_progress_from_row(row) for row in _query(_LIST_PROGRESS_SQL, (user_id,))]


def _require_progress(user_id: str, case_id: str) -> InvestigationProgress:
    progress = get_case_progress(user_id, case_id)
    if progress is None:
        raise sqlite3.IntegrityError(f"progress for {user_id}/{case_id} is missing")
    return progress


def create_case_progress(user_id: str, case_id: str) -> InvestigationProgress:
    """Create an ``in_progress`` record unless one exists; return the stored record."""
    now = _now()
    _exec(
        """
        INSERT INTO user_case_progress(user_id, case_id, status, current_question_index,
                                       responses, feedback, started_at, updated_at, version)
        VALUES (?, ?, 'in_progress', 0, '{}', '[]', ?, ?, 0)
        ON CONFLICT(user_id, case_id) DO NOTHING
        """,
        (user_id, case_id, now, now),
    )
    return _require_progress(user_id, case_id)


def save_case_responses(
    user_id: str,
    case_id: str,
    responses: Mapping[int, Any],
    current_question_index: int,
) -> InvestigationProgress:
    """Write the whole responses mapping and cursor in one statement.

    Raises :class:`StaleProgressError` when the record is missing or already
    reviewed.
    """
    with _conn() as con:
        cur = con.execute(
            """
            UPDATE user_case_progress
            SET responses = ?,
                current_question_index = ?,
                updated_at = ?,
                version = version + 1
            WHERE user_id = ? AND case_id = ? AND status != 'reviewed'
            """,
            (_dump_responses(responses), int(current_question_index), _now(), user_id, case_id),
        )
        if cur.rowcount != 1:
            raise StaleProgressError(f"progress for {user_id}/{case_id} is missing or closed")
        con.commit()
    return _require_progress(user_id, case_id)


def commit_case_review(
    graded: InvestigationProgress,
    expected_version: int,
    fold: Callable[[Profile, list[InvestigationProgress]], Profile],
    activity: Optional[UserActivity] = None,
) -> tuple[InvestigationProgress, Profile]:
    """Persist the graded record, the folded profile and the activity atomically.

    The progress update only applies when the stored record is not yet
    ``reviewed`` and still carries ``expected_version``; otherwise nothing is
    written and :class:`StaleProgressError` is raised. ``fold`` receives the
    profile and the learner's progress history as read inside the same
    transaction (the history already holds the graded record) and returns the
    profile to store.
    """
    submitted_at = (graded.submitted_at or datetime.now(timezone.utc)).isoformat()
    with _conn() as con:
        cur = con.execute(
            """
            UPDATE user_case_progress
            SET status = 'reviewed',
                score = ?,
                verdict = ?,
                feedback = ?,
                submitted_at = ?,
                updated_at = ?,
                version = version + 1
            WHERE user_id = ? AND case_id = ? AND status != 'reviewed' AND version = ?
            """,
            (
                graded.score,
                graded.verdict,
                json_dumps([entry.model_dump(mode="json") for entry in graded.feedback]),
                submitted_at,
                submitted_at,
                graded.user_id,
                graded.case_id,
                int(expected_version),
            ),
        )
        if cur.rowcount != 1:
            raise StaleProgressError(
                f"progress for {graded.user_id}/{graded.case_id} was already reviewed or changed"
            )
        history = [
            _progress_from_row(row)
            for row in con.execute(_LIST_PROGRESS_SQL, (graded.user_id,)).fetchall()
        ]
        profile = _fold_profile(con, graded.user_id, lambda current: fold(current, history))
        if activity is not None:
            _insert_activity(con, activity)
        con.commit()
    return _require_progress(graded.user_id, graded.case_id), profile


# -------------- profiles --------------
_PROFILE_COLUMNS = (
    "user_id, display_name, language_preference, normicyte_score, cases_solved, "
    "missions_completed, accuracy_percentage, total_xp, badges, streak, weekly_progress, "
    "created_at, updated_at"
)


def _profile_from_row(row: sqlite3.Row) -> Profile:
    data = dict(row)
    data["badges"] = _decode_json_field(data["badges"], [])
    data["streak"] = _decode_json_field(data["streak"], {})
    data["weekly_progress"] = _decode_json_field(data["weekly_progress"], [])
    return Profile(**data)


def _write_profile(con: sqlite3.Connection, profile: Profile) -> None:
    now = _now()
    con.execute(
        """
        INSERT INTO profiles(
          user_id, display_name, language_preference, normicyte_score, cases_solved,
          missions_completed, accuracy_percentage, total_xp, badges, streak,
          weekly_progress, created_at, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
          display_name=excluded.display_name,
          language_preference=excluded.language_preference,
          normicyte_score=excluded.normicyte_score,
          cases_solved=excluded.cases_solved,
          missions_completed=excluded.missions_completed,
          accuracy_percentage=excluded.accuracy_percentage,
          total_xp=excluded.total_xp,
          badges=excluded.badges,
          streak=excluded.streak,
          weekly_progress=excluded.weekly_progress,
          updated_at=excluded.updated_at
        """,
        (
            profile.user_id,
            profile.display_name,
            profile.language_preference,
            int(profile.normicyte_score),
            int(profile.cases_solved),
            int(profile.missions_completed),
            int(profile.accuracy_percentage),
            int(profile.total_xp),
            json_dumps([badge.model_dump(mode="json") for badge in profile.badges]),
            json_dumps(profile.streak.model_dump(mode="json")),
            json_dumps([bucket.model_dump(mode="json") for bucket in profile.weekly_progress]),
            (profile.created_at.isoformat() if profile.created_at else now),
            now,
        ),
    )


def _fold_profile(
    con: sqlite3.Connection, user_id: str, fold: Callable[[Profile], Profile]
) -> Profile:
    """Read, fold and write the profile on ``con`` inside the caller's transaction."""
    now = _now()
    con.execute(
        """
        INSERT INTO profiles(user_id, created_at, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO NOTHING
        """,
        (user_id, now, now),
    )
    row = con.execute(
        f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE user_id = ?", (user_id,)
    ).fetchone()
    folded = fold(_profile_from_row(row))
    _write_profile(con, folded)
    return folded


def get_profile(user_id: str) -> Optional[Profile]:
    rows = _query(f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE user_id = ?", (user_id,))
    return _profile_from_row(rows[0]) if rows else None


def ensure_profile(user_id: str, display_name: Optional[str] = None) -> Profile:
    existing = get_profile(user_id)
    if existing is not None:
        return existing
    now = _now()
    _exec(
        """
        INSERT INTO profiles(user_id, display_name, created_at, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id) DO NOTHING
        """,
        (user_id, display_name, now, now),
    )
    profile = get_profile(user_id)
    if profile is None:
        raise sqlite3.IntegrityError(f"profile for {user_id} is missing")
    return profile


def update_profile(profile: Profile) -> None:
    with _conn() as con:
        _write_profile(con, profile)
        con.commit()


# -------------- activity log --------------
def _insert_activity(con: sqlite3.Connection, activity: UserActivity) -> int:
    created_at = (activity.created_at or datetime.now(timezone.utc)).isoformat()
    cur = con.execute(
        """
        INSERT INTO user_activity(user_id, activity_type, title_en, title_hi, xp_earned, created_at)
        VALUES (?,?,?,?,?,?)
        """,
        (
            activity.user_id,
            activity.activity_type,
            activity.title_en,
            activity.title_hi,
            int(activity.xp_earned),
            created_at,
        ),
    )
    return int(cur.lastrowid)


def add_user_activity(activity: UserActivity) -> int:
    with _conn() as con:
        activity_id = _insert_activity(con, activity)
        con.commit()
    return activity_id


def list_user_activities(user_id: str, limit: int = 10) -> list[UserActivity]:
    rows = _query(
        """
        SELECT user_id, activity_type, title_en, title_hi, xp_earned, created_at
        FROM user_activity
        WHERE user_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (user_id, int(limit)),
    )
    return [UserActivity(**dict(row)) for row in rows]


# -------------- missions --------------
def upsert_mission(mission: Mission) -> None:
    _exec(
        """
        INSERT INTO missions(id, data, is_active, display_order)
        VALUES (?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          data=excluded.data,
          is_active=excluded.is_active,
          display_order=excluded.display_order
        """,
        (
            mission.id,
            json_dumps(mission.model_dump(mode="json")),
            1 if mission.is_active else 0,
            int(mission.display_order),
        ),
    )


def get_mission(mission_id: str) -> Optional[Mission]:
    rows = _query("SELECT data FROM missions WHERE id = ?", (mission_id,))
    if not rows:
        return None
    return Mission(**_decode_json_field(rows[0]["data"], {}))


def list_missions(active_only: bool = True) -> list[Mission]:
    sql = "SELECT data FROM missions"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY display_order, id"
    return [Mission(**_decode_json_field(row["data"], {})) for row in _query(sql)]


_MISSION_PROGRESS_COLUMNS = (
    "user_id, mission_id, status, quiz_score, quiz_responses, xp_earned, "
    "started_at, completed_at, updated_at, version"
)


def get_mission_progress(user_id: str, mission_id: str) -> Optional[UserMissionProgress]:
    rows = _query(
        f"SELECT {_MISSION_PROGRESS_COLUMNS} FROM user_missions WHERE user_id = ? AND mission_id = ?",
        (user_id, mission_id),
    )
    if not rows:
        return None
    data = dict(rows[0])
    data["quiz_responses"] = _decode_json_field(data["quiz_responses"], [])
    return UserMissionProgress(**data)


def _require_mission_progress(user_id: str, mission_id: str) -> UserMissionProgress:
    progress = get_mission_progress(user_id, mission_id)
    if progress is None:
        raise sqlite3.IntegrityError(f"mission progress for {user_id}/{mission_id} is missing")
    return progress


def create_mission_progress(user_id: str, mission_id: str) -> UserMissionProgress:
    now = _now()
    _exec(
        """
        INSERT INTO user_missions(user_id, mission_id, status, started_at, updated_at)
        VALUES (?, ?, 'in_progress', ?, ?)
        ON CONFLICT(user_id, mission_id) DO UPDATE SET
          status = CASE WHEN user_missions.status = 'not_started' THEN 'in_progress'
                        ELSE user_missions.status END,
          started_at = COALESCE(user_missions.started_at, excluded.started_at)
        """,
        (user_id, mission_id, now, now),
    )
    return _require_mission_progress(user_id, mission_id)


def commit_mission_completion(
    completed: UserMissionProgress,
    expected_version: int,
    fold: Callable[[Profile], Profile],
    activity: Optional[UserActivity] = None,
) -> tuple[UserMissionProgress, Profile]:
    """Guarded terminal write for a mission, atomically with the folded profile and activity."""
    completed_at = (completed.completed_at or datetime.now(timezone.utc)).isoformat()
    with _conn() as con:
        cur = con.execute(
            """
            UPDATE user_missions
            SET status = 'completed',
                quiz_score = ?,
                quiz_responses = ?,
                xp_earned = ?,
                completed_at = ?,
                updated_at = ?,
                version = version + 1
            WHERE user_id = ? AND mission_id = ? AND status != 'completed' AND version = ?
            """,
            (
                completed.quiz_score,
                json_dumps(list(completed.quiz_responses)),
                int(completed.xp_earned),
                completed_at,
                completed_at,
                completed.user_id,
                completed.mission_id,
                int(expected_version),
            ),
        )
        if cur.rowcount != 1:
            raise StaleProgressError(
                f"mission {completed.mission_id} for {completed.user_id} was already completed or changed"
            )
        profile = _fold_profile(con, completed.user_id, fold)
        if activity is not None:
            _insert_activity(con, activity)
        con.commit()
    return _require_mission_progress(completed.user_id, completed.mission_id), profile



# -------------- phishing simulator --------------
def upsert_phishing_scenario(scenario: PhishingScenario) -> None:
    _exec(
        """
        INSERT INTO phishing_scenarios(id, scenario_type, sender, subject, content, is_phishing, red_flags)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          scenario_type=excluded.scenario_type,
          sender=excluded.sender,
          subject=excluded.subject,
          content=excluded.content,
          is_phishing=excluded.is_phishing,
          red_flags=excluded.red_flags
        """,
        (
            scenario.id,
            scenario.scenario_type,
            scenario.sender,
            scenario.subject,
            scenario.content,
            1 if scenario.is_phishing else 0,
            json_dumps({"en": scenario.red_flags_en, "hi": scenario.red_flags_hi}),
        ),
    )


def _scenario_from_row(row: sqlite3.Row) -> PhishingScenario:
    data = dict(row)
    flags = _decode_json_field(data.pop("red_flags"), {})
    data["is_phishing"] = bool(data["is_phishing"])
    data["red_flags_en"] = flags.get("en", [])
    data["red_flags_hi"] = flags.get("hi", [])
    return PhishingScenario(**data)


_SCENARIO_COLUMNS = "id, scenario_type, sender, subject, content, is_phishing, red_flags"


def get_phishing_scenario(scenario_id: str) -> Optional[PhishingScenario]:
    rows = _query(f"SELECT {_SCENARIO_COLUMNS} FROM phishing_scenarios WHERE id = ?", (scenario_id,))
    return _scenario_from_row(rows[0]) if rows else None


def list_phishing_scenarios(scenario_type: Optional[str] = None) -> list[PhishingScenario]:
    sql = f"SELECT {_SCENARIO_COLUMNS} FROM phishing_scenarios"
    params: tuple = ()
    if scenario_type:
        sql += " WHERE scenario_type = ?"
        params = (scenario_type,)
    sql += " ORDER BY id"
    return [_scenario_from_row(row) for row in _query(sql, params)]


def record_phishing_attempt(
    attempt: PhishingAttempt, fold: Callable[[Profile], Profile]
) -> Profile:
    """Append the attempt and fold the learner's profile in one transaction."""
    completed_at = (attempt.completed_at or datetime.now(timezone.utc)).isoformat()
    with _conn() as con:
        con.execute(
            """
            INSERT INTO user_phishing_attempts(
              user_id, scenario_id, scenario_type, is_correct, action_taken, xp_earned, completed_at
            )
            VALUES (?,?,?,?,?,?,?)
            """,
            (
                attempt.user_id,
                attempt.scenario_id,
                attempt.scenario_type,
                1 if attempt.is_correct else 0,
                attempt.action_taken,
                int(attempt.xp_earned),
                completed_at,
            ),
        )
        profile = _fold_profile(con, attempt.user_id, fold)
        con.commit()
    return profile


def list_phishing_attempts(user_id: str) -> list[PhishingAttempt]:
    rows = _query(
        """
        SELECT user_id, scenario_id, scenario_type, is_correct, action_taken, xp_earned, completed_at
        FROM user_phishing_attempts
        WHERE user_id = ?
        ORDER BY id
        """,
        (user_id,),
    )
    return [PhishingAttempt(**{**dict(row), "is_correct": bool(row["is_correct"])}) for row in rows]
