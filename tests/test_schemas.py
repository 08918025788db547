from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from engines.stats_index import StatsIndex
from schemas import (
    Question,
    Record,
    SessionSummary,
    StatDelta,
    StatRecord,
    TopicTiming,
    normalize_question_type,
    stat_id_for,
)


def test_question_coerces_loose_documents():
    question = Question.model_validate(
        {
            "q_id": " phy-010 ",
            "subject": "physics",
            "type": "Flashcard",
            "statement": "Define inertia.",
            "core_topic": None,
            "teacher_priority": "abc",
            "force_repeat": "yes",
            "active": 0,
        }
    )
    assert question.q_id == "phy-010"
    assert question.type == "CARD"
    assert question.core_topic == ""
    assert question.teacher_priority == 0.0
    assert question.force_repeat is True
    assert question.active is False
    assert question.is_tf is False


def test_question_requires_statement():
    with pytest.raises(ValidationError):
        Question.model_validate({"q_id": "x", "subject": "physics", "type": "TF", "statement": "  "})


def test_question_is_immutable():
    question = Question(q_id="x", subject="physics", type="TF", statement="s", answer_key="TRUE")
    with pytest.raises(ValidationError):
        question.statement = "changed"


def test_normalize_question_type():
    assert normalize_question_type(" tf ") == "TF"
    assert normalize_question_type("flashcard") == "CARD"
    assert normalize_question_type(None) == ""


def test_stat_record_tolerates_store_payloads():
    record = StatRecord.model_validate(
        {
            "user_id": "chiao",
            "q_id": "phy-001",
            "attempts": None,
            "wrong": "3",
            "familiarity": "Unsure",
            "last_result": None,
            "needs_practice_until": "2024-03-02T09:00:00Z",
            "updated_at": "not a date",
        }
    )
    assert record.attempts == 0
    assert record.wrong == 0
    assert record.familiarity == "unknown"
    assert record.last_result == "n/a"
    assert record.needs_practice_until == datetime(2024, 3, 2, 9, tzinfo=timezone.utc)
    assert record.updated_at is None
    assert record.wrong_rate == 0.0
    assert record.stat_id == stat_id_for("chiao", "phy-001") == "chiao__phy-001"


def test_stat_record_requires_q_id():
    with pytest.raises(ValidationError):
        StatRecord.model_validate({"q_id": "  "})


def test_stat_delta_apply_accumulates():
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    delta = StatDelta(
        user_id="chiao",
        q_id="phy-001",
        subject="physics",
        wrong_increment=1,
        familiarity="needs_practice",
        needs_practice_until=now + timedelta(hours=24),
        last_result="wrong",
        updated_at=now,
    )
    first = delta.apply()
    assert (first.attempts, first.wrong) == (1, 1)

    previous = StatRecord(q_id="phy-001", attempts=4, wrong=1, familiarity="mastered")
    merged = delta.apply(previous)
    assert (merged.attempts, merged.wrong) == (5, 2)
    assert merged.familiarity == "needs_practice"
    assert merged.wrong_rate == pytest.approx(0.4)


def test_record_rejects_unknown_answer():
    with pytest.raises(ValidationError):
        Record(q_id="x", is_correct=True, user_answer="MAYBE", type="TF")


def test_summary_as_dict_adds_topic_seconds():
    topic = TopicTiming(core_topic="optics", total_ms=2600, read_ms=2600, count=2)
    summary = SessionSummary(
        total_ms=2600,
        total_seconds=3,
        answered=2,
        tf_count=1,
        correct_count=1,
        accuracy=1.0,
        accuracy_pct=100,
        topics=[topic],
        slowest_topics=[topic],
    )
    payload = summary.as_dict()
    assert payload["topics"][0]["total_seconds"] == 3
    assert payload["slowest_topics"][0]["core_topic"] == "optics"


def test_stats_index_skips_unusable_documents():
    index = StatsIndex.from_documents(
        [
            {"q_id": "phy-001", "attempts": 1, "familiarity": "familiar"},
            {"attempts": 3},
            "garbage",
            {"q_id": "phy-001", "attempts": 2, "familiarity": "mastered"},
            StatRecord(q_id="phy-002", attempts=1),
        ]
    )
    assert len(index) == 2
    assert "phy-001" in index
    assert index.get("phy-001").attempts == 2
    assert index.is_mastered("phy-001") is True
    assert index.is_mastered("phy-002") is False
    assert index.get("missing") is None
    assert {record.q_id for record in index} == {"phy-001", "phy-002"}
