"""Test cases for db operations."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import db
from schemas import Answer, Question, SessionInfo, StatDelta

NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def _delta(wrong=0, familiarity="familiar", **overrides):
    data = {
        "user_id": "ashley",
        "q_id": "phy-001",
        "subject": "physics",
        "core_topic": "optics",
        "wrong_increment": wrong,
        "familiarity": familiarity,
        "last_result": "wrong" if wrong else "correct",
        "updated_at": NOW,
    }
    data.update(overrides)
    return StatDelta(**data)


def _answer(session_id, q_id="phy-001", **overrides):
    data = {
        "session_id": session_id,
        "user_id": "ashley",
        "user_name": "Ashley",
        "subject": "physics",
        "q_id": q_id,
        "type": "TF",
        "core_topic": "optics",
        "user_answer": "TRUE",
        "is_correct": True,
        "familiarity_choice": "familiar",
        "time_ms": 2100,
        "read_time_ms": 2100,
        "answer_time_ms": 0,
        "created_at": NOW,
    }
    data.update(overrides)
    return Answer(**data)


def test_upsert_and_list_questions(temp_db, question_doc):
    questions = [
        Question.model_validate(question_doc("phy-001")),
        Question.model_validate(question_doc("phy-002", qtype="CARD", force_repeat=True)),
        Question.model_validate(question_doc("phy-003", active=False)),
        Question.model_validate(question_doc("chem-001", subject="chemistry")),
    ]
    assert db.upsert_questions(questions) == 4

    rows = db.list_questions("physics")
    assert [row["q_id"] for row in rows] == ["phy-001", "phy-002"]
    assert rows[1]["force_repeat"] is True
    assert rows[1]["type"] == "CARD"
    assert db.list_subjects() == ["chemistry", "physics"]
    assert len(db.list_questions("physics", active=None)) == 3

    updated = Question.model_validate(question_doc("phy-001", statement="Edited"))
    db.upsert_questions([updated])
    assert db.get_question("phy-001")["statement"] == "Edited"
    assert db.get_question("missing") is None


def test_list_questions_respects_limit(temp_db, question_doc):
    db.upsert_questions([Question.model_validate(question_doc(f"phy-{i:03d}")) for i in range(6)])
    assert len(db.list_questions("physics", limit=4)) == 4


def test_merge_creates_then_accumulates(temp_db):
    first = db.merge_user_stat(_delta(wrong=1, familiarity="needs_practice",
                                      needs_practice_until=NOW + timedelta(hours=24)))
    assert first.attempts == 1
    assert first.wrong == 1
    assert first.familiarity == "needs_practice"
    assert first.needs_practice_until == NOW + timedelta(hours=24)

    second = db.merge_user_stat(_delta(wrong=0, familiarity="mastered"))
    assert second.attempts == 2
    assert second.wrong == 1
    assert second.familiarity == "mastered"
    assert second.needs_practice_until is None
    assert second.last_result == "correct"
    assert second.stat_id == "ashley__phy-001"


def test_wrong_never_exceeds_attempts(temp_db):
    for _ in range(3):
        stored = db.merge_user_stat(_delta(wrong=1))
    assert stored.attempts == 3
    assert stored.wrong == 3

    with db._conn() as con:
        con.execute("UPDATE user_question_stats SET attempts = 1, wrong = 1")
        con.commit()
    stored = db.merge_user_stat(_delta(wrong=1))
    assert stored.attempts == 2
    assert stored.wrong == 2

    with pytest.raises(sqlite3.IntegrityError):
        with db._conn() as con:
            con.execute("UPDATE user_question_stats SET wrong = attempts + 1")


def test_list_user_stats_filters_by_subject(temp_db):
    db.merge_user_stat(_delta())
    db.merge_user_stat(_delta(q_id="chem-001", subject="chemistry"))
    db.merge_user_stat(_delta(user_id="chiao"))

    assert [row["q_id"] for row in db.list_user_stats("ashley", "physics")] == ["phy-001"]
    assert len(db.list_user_stats("ashley")) == 2


def test_session_lifecycle(temp_db):
    session = SessionInfo(
        session_id="ashley:abc",
        user_id="ashley",
        user_name="Ashley",
        subject="physics",
        started_at=NOW,
        total_questions=3,
    )
    db.create_session(session)
    stored = db.get_session("ashley:abc")
    assert stored.status == "in_progress"
    assert stored.total_questions == 3
    assert stored.ended_at is None

    db.complete_session(
        session.model_copy(
            update={
                "status": "completed",
                "ended_at": NOW + timedelta(minutes=2),
                "total_seconds": 95,
                "correct_count": 2,
                "accuracy": 1.0,
            }
        )
    )
    stored = db.get_session("ashley:abc")
    assert stored.status == "completed"
    assert stored.total_seconds == 95
    assert stored.ended_at == NOW + timedelta(minutes=2)
    assert [s.session_id for s in db.list_sessions("ashley", status="completed")] == ["ashley:abc"]


def test_complete_unknown_session_raises(temp_db):
    ghost = SessionInfo(session_id="nobody:1", user_id="nobody", subject="physics", total_questions=1)
    with pytest.raises(LookupError):
        db.complete_session(ghost)


def test_record_feedback_writes_answer_and_stat(temp_db):
    answer_id = db.record_feedback(_answer("ashley:abc"), _delta())
    assert answer_id > 0

    answers = db.list_answers("ashley:abc")
    assert len(answers) == 1
    assert answers[0]["is_correct"] is True
    assert answers[0]["familiarity_choice"] == "familiar"
    assert db.get_user_stat("ashley", "phy-001").attempts == 1


def test_record_feedback_is_atomic(temp_db, monkeypatch):
    def _broken_merge(con, delta):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "_merge_stat", _broken_merge)
    with pytest.raises(sqlite3.OperationalError):
        db.record_feedback(_answer("ashley:abc"), _delta())

    assert db.list_answers("ashley:abc") == []
    assert db.get_user_stat("ashley", "phy-001") is None


def test_learners_are_upserted(temp_db):
    db.ensure_learner("chiao", "Chiao")
    db.ensure_learner("chiao")
    db.ensure_learner("ashley", "Ashley")
    learners = {row["user_id"]: row["name"] for row in db.list_learners()}
    assert learners == {"chiao": "Chiao", "ashley": "Ashley"}


def test_trainer_store_loads_catalog_and_stats(temp_db, question_doc):
    db.upsert_questions([Question.model_validate(question_doc("phy-001"))])
    db.merge_user_stat(_delta())
    store = db.SqliteTrainerStore()
    assert [doc["q_id"] for doc in store.load_catalog("physics")] == ["phy-001"]
    assert [doc["q_id"] for doc in store.load_stats("ashley", "physics")] == ["phy-001"]
