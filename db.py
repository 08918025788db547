import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from db_pool import SQLiteConnectionPool
from schemas import Answer, Question, SessionInfo, StatDelta, StatRecord, stat_id_for

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


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


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learners (
              user_id     TEXT PRIMARY KEY,
              name        TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS questions (
              q_id             TEXT PRIMARY KEY,
              subject          TEXT NOT NULL,
              type             TEXT NOT NULL,
              core_topic       TEXT,
              statement        TEXT NOT NULL,
              answer_key       TEXT,
              explanation      TEXT,
              teacher_priority REAL DEFAULT 0,
              force_repeat     INTEGER DEFAULT 0,
              active           INTEGER DEFAULT 1,
              updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_questions_subject ON questions(active, subject);

            CREATE TABLE IF NOT EXISTS user_question_stats (
              stat_id              TEXT PRIMARY KEY,
              user_id              TEXT NOT NULL,
              q_id                 TEXT NOT NULL,
              subject              TEXT NOT NULL,
              core_topic           TEXT,
              attempts             INTEGER NOT NULL DEFAULT 0,
              wrong                INTEGER NOT NULL DEFAULT 0,
              familiarity          TEXT NOT NULL DEFAULT 'unknown',
              needs_practice_until TEXT,
              last_result          TEXT NOT NULL DEFAULT 'n/a',
              updated_at           TEXT,
              CHECK (wrong >= 0 AND wrong <= attempts)
            );

            CREATE INDEX IF NOT EXISTS idx_stats_user_subject ON user_question_stats(user_id, subject);

            CREATE TABLE IF NOT EXISTS sessions (
              session_id      TEXT PRIMARY KEY,
              user_id         TEXT NOT NULL,
              user_name       TEXT,
              subject         TEXT NOT NULL,
              started_at      TEXT NOT NULL,
              total_questions INTEGER NOT NULL,
              status          TEXT NOT NULL DEFAULT 'in_progress',
              ended_at        TEXT,
              total_seconds   INTEGER,
              correct_count   INTEGER,
              accuracy        REAL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id, started_at DESC);

            CREATE TABLE IF NOT EXISTS answers (
              id                 INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id         TEXT NOT NULL,
              user_id            TEXT NOT NULL,
              user_name          TEXT,
              subject            TEXT NOT NULL,
              q_id               TEXT NOT NULL,
              type               TEXT NOT NULL,
              core_topic         TEXT,
              user_answer        TEXT,
              is_correct         INTEGER NOT NULL,
              familiarity_choice TEXT NOT NULL,
              time_ms            INTEGER NOT NULL,
              read_time_ms       INTEGER NOT NULL,
              answer_time_ms     INTEGER NOT NULL,
              created_at         TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_answers_session ON answers(session_id);
            """
        )
        con.commit()


# -------------- learners --------------
def ensure_learner(user_id: str, name: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO learners(user_id, name) VALUES (?, ?)
        ON CONFLICT(user_id) DO UPDATE SET name = COALESCE(excluded.name, learners.name)
        """,
        (user_id, name),
    )


def list_learners(limit: int = 100) -> list[Dict[str, Any]]:
    rows = _query("SELECT user_id, name FROM learners ORDER BY created_at, user_id LIMIT ?", (int(limit),))
    return [dict(row) for row in rows]


# -------------- questions --------------
def _question_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["force_repeat"] = bool(data.get("force_repeat"))
    data["active"] = bool(data.get("active"))
    data.pop("updated_at", None)
    return data


def upsert_questions(questions: Iterable[Question]) -> int:
    to_store = list(questions)
    if not to_store:
        return 0

    with _pool.transaction() as con:
        for q in to_store:
            con.execute(
                """
                INSERT INTO questions(
                  q_id, subject, type, core_topic, statement, answer_key,
                  explanation, teacher_priority, force_repeat, active, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,CURRENT_TIMESTAMP)
                ON CONFLICT(q_id) DO UPDATE SET
                  subject=excluded.subject,
                  type=excluded.type,
                  core_topic=excluded.core_topic,
                  statement=excluded.statement,
                  answer_key=excluded.answer_key,
                  explanation=excluded.explanation,
                  teacher_priority=excluded.teacher_priority,
                  force_repeat=excluded.force_repeat,
                  active=excluded.active,
                  updated_at=CURRENT_TIMESTAMP
                """,
                (
                    q.q_id,
                    q.subject,
                    q.type,
                    q.core_topic,
                    q.statement,
                    q.answer_key,
                    q.explanation,
                    float(q.teacher_priority),
                    int(q.force_repeat),
                    int(q.active),
                ),
            )
    return len(to_store)


def list_questions(
    subject: Optional[str] = None,
    *,
    active: Optional[bool] = True,
    limit: int = 800,
) -> list[Dict[str, Any]]:
    """Raw question documents; callers validate them at ingestion."""
    clauses: list[str] = []
    params: list[Any] = []
    if active is not None:
        clauses.append("active = ?")
        params.append(int(active))
    if subject:
        clauses.append("subject = ?")
        params.append(subject)

    where = ""
    if clauses:
        where = " WHERE " + " AND ".join(clauses)

    params.append(int(limit))
    rows = _query(f"SELECT * FROM questions{where} ORDER BY q_id LIMIT ?", params)
    return [_question_row(row) for row in rows]


def get_question(q_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM questions WHERE q_id = ?", (q_id,))
    return _question_row(rows[0]) if rows else None


def list_subjects() -> list[str]:
    rows = _query("SELECT DISTINCT subject FROM questions WHERE active = 1 ORDER BY subject")
    return [row["subject"] for row in rows]


# -------------- user_question_stats --------------
def list_user_stats(user_id: str, subject: Optional[str] = None, limit: int = 2000) -> list[Dict[str, Any]]:
    if subject:
        rows = _query(
            "SELECT * FROM user_question_stats WHERE user_id = ? AND subject = ? LIMIT ?",
            (user_id, subject, int(limit)),
        )
    else:
        rows = _query(
            "SELECT * FROM user_question_stats WHERE user_id = ? LIMIT ?",
            (user_id, int(limit)),
        )
    return [dict(row) for row in rows]


def get_user_stat(user_id: str, q_id: str) -> Optional[StatRecord]:
    rows = _query("SELECT * FROM user_question_stats WHERE stat_id = ?", (stat_id_for(user_id, q_id),))
    return StatRecord.model_validate(dict(rows[0])) if rows else None


_MERGE_STAT_SQL = """
    INSERT INTO user_question_stats(
      stat_id, user_id, q_id, subject, core_topic, attempts, wrong,
      familiarity, needs_practice_until, last_result, updated_at
    ) VALUES (?,?,?,?,?,1,?,?,?,?,?)
    ON CONFLICT(stat_id) DO UPDATE SET
      subject = excluded.subject,
      core_topic = excluded.core_topic,
      attempts = user_question_stats.attempts + 1,
      wrong = MIN(user_question_stats.wrong + excluded.wrong, user_question_stats.attempts + 1),
      familiarity = excluded.familiarity,
      needs_practice_until = excluded.needs_practice_until,
      last_result = excluded.last_result,
      updated_at = excluded.updated_at
"""


def _merge_stat(con: sqlite3.Connection, delta: StatDelta) -> None:
    con.execute(
        _MERGE_STAT_SQL,
        (
            delta.stat_id,
            delta.user_id,
            delta.q_id,
            delta.subject,
            delta.core_topic,
            int(delta.wrong_increment),
            delta.familiarity,
            _iso(delta.needs_practice_until),
            delta.last_result,
            _iso(delta.updated_at),
        ),
    )


def merge_user_stat(delta: StatDelta) -> StatRecord:
    """Apply ``delta`` as a single atomic upsert and return the stored record."""
    with _pool.transaction() as con:
        _merge_stat(con, delta)
    stored = get_user_stat(delta.user_id, delta.q_id)
    if stored is None:
        raise sqlite3.DatabaseError(f"stat {delta.stat_id} missing after merge")
    return stored


# -------------- sessions --------------
def create_session(session: SessionInfo) -> None:
    _exec(
        """
        INSERT INTO sessions(
          session_id, user_id, user_name, subject, started_at, total_questions, status
        ) VALUES (?,?,?,?,?,?,?)
        """,
        (
            session.session_id,
            session.user_id,
            session.user_name,
            session.subject,
            _iso(session.started_at),
            int(session.total_questions),
            session.status,
        ),
    )


def complete_session(session: SessionInfo) -> None:
    cur = _exec(
        """
        UPDATE sessions SET
          status = 'completed',
          ended_at = ?,
          total_seconds = ?,
          correct_count = ?,
          accuracy = ?
        WHERE session_id = ?
        """,
        (
            _iso(session.ended_at) or _now_iso(),
            session.total_seconds,
            session.correct_count,
            session.accuracy,
            session.session_id,
        ),
    )
    if cur.rowcount == 0:
        raise LookupError(f"session {session.session_id} not found")


def get_session(session_id: str) -> Optional[SessionInfo]:
    rows = _query("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
    return SessionInfo.model_validate(dict(rows[0])) if rows else None


def list_sessions(user_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> list[SessionInfo]:
    clauses: list[str] = []
    params: list[Any] = []
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = " WHERE " + " AND ".join(clauses) if clauses else ""
    params.append(int(limit))
    rows = _query(f"SELECT * FROM sessions{where} ORDER BY started_at DESC LIMIT ?", params)
    return [SessionInfo.model_validate(dict(row)) for row in rows]


# -------------- answers --------------
def _insert_answer(con: sqlite3.Connection, answer: Answer) -> int:
    cur = con.execute(
        """
        INSERT INTO answers(
          session_id, user_id, user_name, subject, q_id, type, core_topic,
          user_answer, is_correct, familiarity_choice, time_ms,
          read_time_ms, answer_time_ms, created_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            answer.session_id,
            answer.user_id,
            answer.user_name,
            answer.subject,
            answer.q_id,
            answer.type,
            answer.core_topic,
            answer.user_answer,
            int(answer.is_correct),
            answer.familiarity_choice,
            int(answer.time_ms),
            int(answer.read_time_ms),
            int(answer.answer_time_ms),
            _iso(answer.created_at),
        ),
    )
    return int(cur.lastrowid)


def record_feedback(answer: Answer, delta: StatDelta) -> int:
    """Append ``answer`` and merge ``delta`` in one transaction; both land or neither does."""
    with _pool.transaction() as con:
        answer_id = _insert_answer(con, answer)
        _merge_stat(con, delta)
    return answer_id


def list_answers(session_id: str) -> list[Dict[str, Any]]:
    rows = _query("SELECT * FROM answers WHERE session_id = ? ORDER BY id", (session_id,))
    answers = []
    for row in rows:
        data = dict(row)
        data["is_correct"] = bool(data["is_correct"])
        answers.append(data)
    return answers


class SqliteTrainerStore:
    """Store adapter handed to ``SessionRunner``."""

    def create_session(self, session: SessionInfo) -> None:
        create_session(session)

    def record_feedback(self, answer: Answer, delta: StatDelta) -> None:
        record_feedback(answer, delta)

    def complete_session(self, session: SessionInfo) -> None:
        complete_session(session)

    def load_catalog(self, subject: str, limit: int = 800) -> list[Dict[str, Any]]:
        return list_questions(subject, active=True, limit=limit)

    def load_stats(self, user_id: str, subject: str, limit: int = 2000) -> list[Dict[str, Any]]:
        return list_user_stats(user_id, subject, limit=limit)
