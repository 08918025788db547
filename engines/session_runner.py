"""Per-question state machine for one practice round.

Phases run ``answer -> feedback -> (answer | summary)``. A familiarity verdict
is the only way out of ``feedback``; it persists the Answer together with the
StatRecord merge and only then advances, so a failed write leaves the learner
on the same question.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from engines.encouragement import EncouragementCatalog
from engines.round_builder import Round
from schemas import (
    FAMILIARITY_CHOICES,
    Answer,
    Question,
    Record,
    SessionInfo,
    SessionSummary,
    StatDelta,
    TopicTiming,
)

logger = logging.getLogger(__name__)

NEEDS_PRACTICE_HORIZON = timedelta(hours=24)
SLOWEST_TOPIC_COUNT = 3
UNCATEGORISED_TOPIC = "(uncategorised)"


class Phase(str, Enum):
    ANSWER = "answer"
    FEEDBACK = "feedback"
    SUMMARY = "summary"


class InvalidTransitionError(RuntimeError):
    """Raised when an action is not allowed in the runner's current phase."""


class PersistenceError(RuntimeError):
    """Raised when the store rejects a write the flow depends on."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class TrainerStore(Protocol):
    def create_session(self, session: SessionInfo) -> None: ...

    def record_feedback(self, answer: Answer, delta: StatDelta) -> None: ...

    def complete_session(self, session: SessionInfo) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int(round((end - start).total_seconds() * 1000)))


def build_stat_delta(
    question: Question,
    record: Record,
    choice: str,
    *,
    user_id: str,
    subject: str,
    now: datetime,
) -> StatDelta:
    is_tf = record.type == "TF"
    return StatDelta(
        user_id=user_id,
        q_id=question.q_id,
        subject=subject,
        core_topic=question.core_topic,
        wrong_increment=1 if is_tf and not record.is_correct else 0,
        familiarity=choice,
        needs_practice_until=now + NEEDS_PRACTICE_HORIZON if choice == "needs_practice" else None,
        last_result=("correct" if record.is_correct else "wrong") if is_tf else "n/a",
        updated_at=now,
    )


def topic_timings(records: Sequence[Record]) -> List[TopicTiming]:
    """Aggregate durations per topic, slowest first."""

    by_topic: Dict[str, TopicTiming] = {}
    for record in records:
        topic = record.core_topic or UNCATEGORISED_TOPIC
        entry = by_topic.setdefault(topic, TopicTiming(core_topic=topic))
        entry.total_ms += record.time_ms
        entry.read_ms += record.read_ms
        entry.answer_ms += record.answer_ms
        entry.count += 1
    return sorted(by_topic.values(), key=lambda t: t.total_ms, reverse=True)


def summarize(
    records: Sequence[Record],
    encouragement: Optional[EncouragementCatalog] = None,
) -> SessionSummary:
    """Session totals; accuracy only looks at TF records."""

    total_ms = sum(r.time_ms for r in records)
    tf_records = [r for r in records if r.type == "TF"]
    correct = sum(1 for r in tf_records if r.is_correct)
    accuracy = correct / len(tf_records) if tf_records else 0.0
    accuracy_pct = round(accuracy * 100) if tf_records else 0
    topics = topic_timings(records)

    catalog = encouragement or EncouragementCatalog()
    try:
        message = catalog.message_for(accuracy_pct, has_tf=bool(tf_records))
    except Exception:
        logger.warning("Encouragement lookup failed; using default message", exc_info=True)
        message = EncouragementCatalog().message_for(accuracy_pct, has_tf=bool(tf_records))

    return SessionSummary(
        total_ms=total_ms,
        total_seconds=round(total_ms / 1000),
        answered=len(records),
        tf_count=len(tf_records),
        correct_count=correct,
        accuracy=accuracy,
        accuracy_pct=accuracy_pct,
        topics=topics,
        slowest_topics=topics[:SLOWEST_TOPIC_COUNT],
        message=message,
    )


class SessionRunner:
    """Drives one learner through one Round."""

    def __init__(
        self,
        round_: Round,
        *,
        user_id: str,
        store: TrainerStore,
        user_name: Optional[str] = None,
        session_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        encouragement: Optional[EncouragementCatalog] = None,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required to run a session")
        if round_.is_empty:
            raise ValueError("cannot run a session for an empty round")
        self.round = round_
        self.user_id = user_id
        self.user_name = user_name
        self.subject = round_.subject
        self.store = store
        self.clock = clock or _utcnow
        self.encouragement = encouragement
        self.session = SessionInfo(
            session_id=session_id or f"{user_id}:{uuid.uuid4().hex}",
            user_id=user_id,
            user_name=user_name,
            subject=round_.subject,
            started_at=self.clock(),
            total_questions=len(round_),
        )
        self._index = 0
        self._phase = Phase.ANSWER
        self._records: List[Record] = []
        self._pending: Optional[Record] = None
        self._shown_at: Optional[datetime] = None
        self._first_action_at: Optional[datetime] = None
        self._summary: Optional[SessionSummary] = None
        self._started = False
        self.finalized = False
        # one action at a time; a second submit for the same question must see the new phase
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def index(self) -> int:
        return self._index

    @property
    def current_question(self) -> Optional[Question]:
        if self._phase is Phase.SUMMARY:
            return None
        return self.round[self._index]

    @property
    def records(self) -> Tuple[Record, ...]:
        return tuple(self._records)

    @property
    def pending_record(self) -> Optional[Record]:
        return self._pending

    @property
    def summary(self) -> Optional[SessionSummary]:
        return self._summary

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self) -> SessionInfo:
        """Persist the new Session and show the first question."""

        with self._lock:
            if self._started:
                return self.session
            try:
                self.store.create_session(self.session)
            except Exception as exc:
                logger.exception("Failed to create session %s", self.session_id)
                raise PersistenceError("create_session", str(exc)) from exc
            self._started = True
            self._enter_answer()
            return self.session

    def _enter_answer(self) -> None:
        self._phase = Phase.ANSWER
        self._pending = None
        self._shown_at = self.clock()
        self._first_action_at = None

    def _require(self, phase: Phase) -> None:
        if not self._started:
            raise InvalidTransitionError("session has not been started")
        if self._phase is not phase:
            raise InvalidTransitionError(f"expected phase '{phase.value}', runner is in '{self._phase.value}'")

    def _read_ms(self) -> int:
        if self._first_action_at is None:
            self._first_action_at = self.clock()
        return _elapsed_ms(self._shown_at or self._first_action_at, self._first_action_at)

    # ------------------------------------------------------------------
    # answer phase
    # ------------------------------------------------------------------
    def answer_tf(self, response: bool) -> Record:
        with self._lock:
            self._require(Phase.ANSWER)
            question = self.round[self._index]
            if not question.is_tf:
                raise InvalidTransitionError(f"question {question.q_id} is a {question.type}; reveal it instead")
            record = Record(
                q_id=question.q_id,
                core_topic=question.core_topic,
                read_ms=self._read_ms(),
                answer_ms=0,
                is_correct=bool(response) == question.expects_true,
                user_answer="TRUE" if response else "FALSE",
                answer_key=question.answer_key,
                explanation=question.explanation,
                type="TF",
            )
            return self._to_feedback(record)

    def reveal(self) -> Record:
        with self._lock:
            self._require(Phase.ANSWER)
            question = self.round[self._index]
            if question.is_tf:
                raise InvalidTransitionError(f"question {question.q_id} is TF; answer true or false")
            record = Record(
                q_id=question.q_id,
                core_topic=question.core_topic,
                read_ms=self._read_ms(),
                answer_ms=0,
                is_correct=True,
                user_answer="REVEALED",
                answer_key=question.answer_key,
                explanation=question.explanation,
                type="CARD",
            )
            return self._to_feedback(record)

    def _to_feedback(self, record: Record) -> Record:
        self._records.append(record)
        self._pending = record
        self._phase = Phase.FEEDBACK
        return record

    # ------------------------------------------------------------------
    # feedback phase
    # ------------------------------------------------------------------
    def choose_familiarity(self, choice: str) -> Phase:
        """Persist the verdict for the current question and advance."""

        with self._lock:
            self._require(Phase.FEEDBACK)
            verdict = str(choice or "").strip().lower()
            if verdict not in FAMILIARITY_CHOICES:
                raise ValueError(f"familiarity must be one of {', '.join(FAMILIARITY_CHOICES)}")

            question = self.round[self._index]
            record = self._pending
            if record is None:
                raise InvalidTransitionError("no pending answer to rate")
            now = self.clock()
            answer = Answer(
                session_id=self.session_id,
                user_id=self.user_id,
                user_name=self.user_name,
                subject=self.subject,
                q_id=question.q_id,
                type=record.type,
                core_topic=question.core_topic or None,
                user_answer=record.user_answer,
                is_correct=record.is_correct,
                familiarity_choice=verdict,
                time_ms=record.time_ms,
                read_time_ms=record.read_ms,
                answer_time_ms=record.answer_ms,
                created_at=now,
            )
            delta = build_stat_delta(question, record, verdict, user_id=self.user_id, subject=self.subject, now=now)
            try:
                self.store.record_feedback(answer, delta)
            except Exception as exc:
                logger.exception("Failed to record feedback for %s in session %s", question.q_id, self.session_id)
                raise PersistenceError("record_feedback", str(exc)) from exc

            return self._advance()

    def _advance(self) -> Phase:
        if self._index + 1 < len(self.round):
            self._index += 1
            self._enter_answer()
            return self._phase

        self._pending = None
        self._summary = summarize(self._records, self.encouragement)
        self._phase = Phase.SUMMARY
        self.finalize()
        return self._phase

    def finalize(self) -> bool:
        """Mark the Session completed in the store; safe to call again after a failure."""

        with self._lock:
            if self._phase is not Phase.SUMMARY or self._summary is None:
                raise InvalidTransitionError("session can only be finalized from the summary phase")
            if self.finalized:
                return True
            completed = self.session.model_copy(
                update={
                    "status": "completed",
                    "ended_at": self.clock(),
                    "total_seconds": self._summary.total_seconds,
                    "correct_count": self._summary.correct_count,
                    "accuracy": self._summary.accuracy,
                }
            )
            try:
                self.store.complete_session(completed)
            except Exception:
                logger.exception("Failed to finalize session %s", self.session_id)
                return False
            self.session = completed
            self.finalized = True
            return True

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            question = self.current_question
            payload: Dict[str, Any] = {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "subject": self.subject,
                "phase": self._phase.value,
                "index": self._index,
                "total": len(self.round),
                "status": self.session.status,
            }
            if question is not None:
                payload["question"] = {
                    "q_id": question.q_id,
                    "type": question.type,
                    "core_topic": question.core_topic,
                    "statement": question.statement,
                }
            if self._phase is Phase.FEEDBACK and self._pending is not None and question is not None:
                payload["feedback"] = {
                    **self._pending.model_dump(),
                    "choices": list(FAMILIARITY_CHOICES),
                }
            if self._summary is not None:
                payload["summary"] = self._summary.as_dict()
                payload["finalized"] = self.finalized
            return payload
