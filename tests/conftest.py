import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    previous_pool = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous_pool


@pytest.fixture
def rng():
    return random.Random(1234)


class FakeClock:
    """Deterministic clock advancing by ``step_ms`` on every call."""

    def __init__(self, start=None, step_ms=1500):
        self.now = start or datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
        self.step = timedelta(milliseconds=step_ms)

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def clock():
    return FakeClock()


def make_question(q_id, subject="physics", qtype="TF", **overrides):
    doc = {
        "q_id": q_id,
        "subject": subject,
        "type": qtype,
        "core_topic": overrides.pop("core_topic", "mechanics"),
        "statement": overrides.pop("statement", f"Statement {q_id}"),
        "answer_key": overrides.pop("answer_key", "TRUE" if qtype.upper() == "TF" else "Newton's first law"),
        "explanation": overrides.pop("explanation", f"Because {q_id}."),
        "active": overrides.pop("active", True),
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def question_doc():
    return make_question
