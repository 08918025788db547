"""Pydantic schemas for the trainer's documents and helper utilities.

Documents coming back from the store are loosely typed (fields may be missing,
stringly typed or ``None``).  The models below validate them once at the
ingestion boundary and give every optional field an explicit default, so the
engines never have to null-check store payloads.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

__all__ = [
    "QUESTION_TYPES",
    "FAMILIARITY_VALUES",
    "FAMILIARITY_CHOICES",
    "Question",
    "StatRecord",
    "StatDelta",
    "Record",
    "Answer",
    "SessionInfo",
    "TopicTiming",
    "SessionSummary",
    "normalize_question_type",
    "stat_id_for",
]

QUESTION_TYPES = ("TF", "CARD")
_TYPE_ALIASES = {"FLASHCARD": "CARD"}

FAMILIARITY_VALUES = ("unknown", "familiar", "needs_practice", "mastered")
FAMILIARITY_CHOICES = ("familiar", "needs_practice", "mastered")

Familiarity = Literal["unknown", "familiar", "needs_practice", "mastered"]
FamiliarityChoice = Literal["familiar", "needs_practice", "mastered"]
LastResult = Literal["correct", "wrong", "n/a"]
SessionStatus = Literal["in_progress", "completed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_question_type(value: Any) -> str:
    """Upper-case a raw type tag and fold known aliases (``FLASHCARD`` -> ``CARD``)."""

    key = str(value if value is not None else "").strip().upper()
    return _TYPE_ALIASES.get(key, key)


def stat_id_for(user_id: str, q_id: str) -> str:
    return f"{user_id}__{q_id}"


def _as_count(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(number)


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


class Question(BaseModel):
    """A catalogue entry; immutable from the trainer's point of view."""

    model_config = {"frozen": True}

    q_id: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    type: str = Field(description="Normalised type tag; TF and CARD are servable.")
    core_topic: str = ""
    statement: str = Field(min_length=1)
    answer_key: str = ""
    explanation: str = ""
    teacher_priority: float = Field(default=0.0, ge=0.0)
    force_repeat: bool = False
    active: bool = True

    @field_validator("q_id", "subject", "statement", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> Any:
        if value is None:
            return value
        return str(value).strip()

    @field_validator("core_topic", "answer_key", "explanation", mode="before")
    @classmethod
    def _strip_optional(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> str:
        return normalize_question_type(value)

    @field_validator("teacher_priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(number) or number < 0:
            return 0.0
        return number

    @field_validator("force_repeat", "active", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_flag(value)

    @property
    def is_tf(self) -> bool:
        return self.type == "TF"

    @property
    def expects_true(self) -> bool:
        """True when the TF answer key reads ``TRUE`` after normalisation."""

        return self.answer_key.strip().upper() == "TRUE"


class StatRecord(BaseModel):
    """Historical performance of one learner on one question."""

    user_id: str = ""
    q_id: str
    subject: str = ""
    core_topic: str = ""
    attempts: int = 0
    wrong: int = 0
    familiarity: Familiarity = "unknown"
    needs_practice_until: Optional[datetime] = None
    last_result: LastResult = "n/a"
    updated_at: Optional[datetime] = None

    @field_validator("q_id", mode="before")
    @classmethod
    def _require_q_id(cls, value: Any) -> str:
        text = str(value if value is not None else "").strip()
        if not text:
            raise ValueError("q_id is required")
        return text

    @field_validator("user_id", "subject", "core_topic", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("attempts", "wrong", mode="before")
    @classmethod
    def _counts(cls, value: Any) -> int:
        return _as_count(value)

    @field_validator("familiarity", mode="before")
    @classmethod
    def _familiarity(cls, value: Any) -> str:
        key = str(value if value is not None else "").strip().lower()
        return key if key in FAMILIARITY_VALUES else "unknown"

    @field_validator("last_result", mode="before")
    @classmethod
    def _last_result(cls, value: Any) -> str:
        key = str(value if value is not None else "").strip().lower()
        return key if key in {"correct", "wrong"} else "n/a"

    @field_validator("needs_practice_until", "updated_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None

    @model_validator(mode="after")
    def _clamp_wrong(self) -> "StatRecord":
        if self.wrong > self.attempts:
            self.wrong = self.attempts
        return self

    @property
    def stat_id(self) -> str:
        return stat_id_for(self.user_id, self.q_id)

    @property
    def wrong_rate(self) -> float:
        return self.wrong / self.attempts if self.attempts > 0 else 0.0


class StatDelta(BaseModel):
    """One verdict's worth of change to a StatRecord, merged atomically by the store."""

    user_id: str
    q_id: str
    subject: str
    core_topic: str = ""
    wrong_increment: Literal[0, 1] = 0
    familiarity: FamiliarityChoice
    needs_practice_until: Optional[datetime] = None
    last_result: LastResult
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def stat_id(self) -> str:
        return stat_id_for(self.user_id, self.q_id)

    def apply(self, previous: Optional[StatRecord] = None) -> StatRecord:
        """Return the StatRecord that results from merging this delta into ``previous``."""

        attempts = (previous.attempts if previous else 0) + 1
        wrong = min((previous.wrong if previous else 0) + self.wrong_increment, attempts)
        return StatRecord(
            user_id=self.user_id,
            q_id=self.q_id,
            subject=self.subject,
            core_topic=self.core_topic,
            attempts=attempts,
            wrong=wrong,
            familiarity=self.familiarity,
            needs_practice_until=self.needs_practice_until,
            last_result=self.last_result,
            updated_at=self.updated_at,
        )


class Record(BaseModel):
    """In-memory trace of one answered question inside a session."""

    model_config = {"frozen": True}

    q_id: str
    core_topic: str = ""
    read_ms: int = Field(default=0, ge=0)
    answer_ms: int = Field(default=0, ge=0)
    is_correct: bool
    user_answer: Literal["TRUE", "FALSE", "REVEALED"]
    answer_key: str = ""
    explanation: str = ""
    type: Literal["TF", "CARD"]

    @property
    def time_ms(self) -> int:
        return self.read_ms + self.answer_ms


class Answer(BaseModel):
    """Durable, append-only copy of a Record plus its session context."""

    model_config = {"frozen": True}

    session_id: str
    user_id: str
    user_name: Optional[str] = None
    subject: str
    q_id: str
    type: Literal["TF", "CARD"]
    core_topic: Optional[str] = None
    user_answer: str
    is_correct: bool
    familiarity_choice: FamiliarityChoice
    time_ms: int
    read_time_ms: int
    answer_time_ms: int
    created_at: datetime = Field(default_factory=_utcnow)


class SessionInfo(BaseModel):
    session_id: str
    user_id: str
    user_name: Optional[str] = None
    subject: str
    started_at: datetime = Field(default_factory=_utcnow)
    total_questions: int = Field(ge=0)
    status: SessionStatus = "in_progress"
    ended_at: Optional[datetime] = None
    total_seconds: Optional[int] = None
    correct_count: Optional[int] = None
    accuracy: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class TopicTiming(BaseModel):
    core_topic: str
    total_ms: int = 0
    read_ms: int = 0
    answer_ms: int = 0
    count: int = 0

    @property
    def total_seconds(self) -> int:
        return round(self.total_ms / 1000)


class SessionSummary(BaseModel):
    total_ms: int
    total_seconds: int
    answered: int
    tf_count: int
    correct_count: int = Field(description="Correct TF answers; CARD reveals never count.")
    accuracy: float = Field(ge=0.0, le=1.0, description="TF-only accuracy, 0 without TF answers.")
    accuracy_pct: int
    topics: List[TopicTiming] = Field(default_factory=list)
    slowest_topics: List[TopicTiming] = Field(default_factory=list)
    message: str = ""

    def as_dict(self) -> Dict[str, Any]:
        payload = self.model_dump()
        for key in ("topics", "slowest_topics"):
            for entry in payload[key]:
                entry["total_seconds"] = round(entry["total_ms"] / 1000)
        return payload
