"""Question catalogue loading, validation and coverage helpers."""
from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

import db
from schemas import QUESTION_TYPES, Question

logger = logging.getLogger(__name__)


class ItemValidationError(ValueError):
    """Raised when a question from the JSON bank fails validation in strict mode."""


REQUIRED_FIELDS = ("q_id", "subject", "type", "statement")


def _has_tf_key(question: Question) -> bool:
    return question.answer_key.strip().upper() in {"TRUE", "FALSE"}


def _missing_fields(doc: Mapping[str, Any]) -> List[str]:
    missing = []
    for field in REQUIRED_FIELDS:
        value = doc.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field)
    return missing


def validate_question(doc: Any) -> Question:
    """Return ``doc`` as a ``Question`` or raise ``ItemValidationError``."""

    if isinstance(doc, Question):
        return doc
    if not isinstance(doc, Mapping):
        raise ItemValidationError("Each question must be an object")

    missing = _missing_fields(doc)
    if missing:
        raise ItemValidationError(f"Question {doc.get('q_id')} missing required field(s): {', '.join(missing)}")

    try:
        question = Question.model_validate(dict(doc))
    except ValidationError as exc:
        raise ItemValidationError(f"Question {doc.get('q_id')} is malformed: {exc.errors()[0]['msg']}") from exc

    return question


def parse_question(doc: Any) -> Optional[Question]:
    """Lenient variant of ``validate_question``: malformed documents yield ``None``."""

    try:
        return validate_question(doc)
    except ItemValidationError as exc:
        logger.debug("Excluding malformed question: %s", exc)
        return None


def parse_questions(docs: Iterable[Any]) -> List[Question]:
    questions: List[Question] = []
    dropped = 0
    for doc in docs:
        question = parse_question(doc)
        if question is None:
            dropped += 1
            continue
        questions.append(question)
    if dropped:
        logger.warning("Excluded %d malformed question document(s)", dropped)
    return questions


class QuestionBank:
    """In-memory catalogue loaded from a JSON list and optionally synced to the store."""

    def __init__(self, path: str | Path = "questions.json", *, auto_sync: bool = True, strict: bool = False) -> None:
        self.path = Path(path)
        self.strict = strict
        self._questions: List[Question] = []
        self.rejected: List[str] = []
        self._load(auto_sync=auto_sync)

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    def _load(self, *, auto_sync: bool) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Question bank file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if isinstance(raw, dict) and isinstance(raw.get("questions"), list):
            raw = raw["questions"]
        if not isinstance(raw, list):
            raise ItemValidationError("Question bank root must be a JSON list")

        questions: List[Question] = []
        seen_ids: set[str] = set()
        for entry in raw:
            try:
                question = validate_question(entry)
                if question.q_id in seen_ids:
                    raise ItemValidationError(f"Duplicate question id detected: {question.q_id}")
            except ItemValidationError as exc:
                if self.strict:
                    raise
                self.rejected.append(str(exc))
                continue
            seen_ids.add(question.q_id)
            questions.append(question)

        if self.rejected:
            logger.warning("Question bank %s: %d entries rejected", self.path, len(self.rejected))
        unkeyed = [q.q_id for q in questions if q.is_tf and not _has_tf_key(q)]
        if unkeyed:
            logger.warning(
                "Question bank %s: %d TF question(s) without a TRUE/FALSE key are graded as FALSE: %s",
                self.path,
                len(unkeyed),
                ", ".join(unkeyed[:10]),
            )
        self._questions = questions

        if auto_sync and questions:
            db.upsert_questions(questions)

    @property
    def questions(self) -> List[Question]:
        return list(self._questions)

    # ------------------------------------------------------------------
    # selection helpers
    # ------------------------------------------------------------------
    def filter_questions(
        self,
        *,
        subject: Optional[str] = None,
        core_topic: Optional[str] = None,
        question_type: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Question]:
        results = self._questions
        if active_only:
            results = [q for q in results if q.active]
        if subject:
            results = [q for q in results if q.subject == subject]
        if core_topic:
            results = [q for q in results if q.core_topic == core_topic]
        if question_type:
            wanted = question_type.upper()
            results = [q for q in results if q.type == wanted]
        return list(results)

    def subjects(self) -> List[str]:
        return sorted({q.subject for q in self._questions})

    def coverage(self) -> Dict[str, Dict[str, Any]]:
        """Per-subject counts of servable questions by type and topic."""

        report: Dict[str, Dict[str, Any]] = {}
        for question in self._questions:
            entry = report.setdefault(
                question.subject,
                {
                    "total": 0,
                    "active": 0,
                    "servable": 0,
                    "force_repeat": 0,
                    "unkeyed_tf": 0,
                    "types": Counter(),
                    "topics": Counter(),
                },
            )
            entry["total"] += 1
            if not question.active:
                continue
            entry["active"] += 1
            entry["types"][question.type] += 1
            if question.type in QUESTION_TYPES:
                entry["servable"] += 1
                entry["topics"][question.core_topic or "(uncategorised)"] += 1
                if question.force_repeat:
                    entry["force_repeat"] += 1
                if question.is_tf and not _has_tf_key(question):
                    entry["unkeyed_tf"] += 1
        for entry in report.values():
            entry["types"] = dict(sorted(entry["types"].items()))
            entry["topics"] = dict(sorted(entry["topics"].items()))
        return report

    # ------------------------------------------------------------------
    # alternative constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_questions(cls, questions: Sequence[Any]) -> "QuestionBank":
        bank = cls.__new__(cls)
        bank.path = Path("<in-memory>")
        bank.strict = False
        bank.rejected = []
        bank._questions = parse_questions(questions)
        return bank
