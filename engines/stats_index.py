"""Lookup from question id to a learner's historical StatRecord."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Union

from pydantic import ValidationError

from schemas import StatRecord

logger = logging.getLogger(__name__)

StatLike = Union[StatRecord, Mapping[str, Any]]


class StatsIndex:
    """Read-only ``q_id -> StatRecord`` map built from store documents."""

    def __init__(self, records: Optional[Mapping[str, StatRecord]] = None) -> None:
        self._records: Dict[str, StatRecord] = dict(records or {})

    @classmethod
    def from_documents(cls, documents: Iterable[StatLike]) -> "StatsIndex":
        """Index ``documents``; entries without a ``q_id`` are skipped, later duplicates win."""

        records: Dict[str, StatRecord] = {}
        skipped = 0
        for doc in documents:
            if isinstance(doc, StatRecord):
                records[doc.q_id] = doc
                continue
            if not isinstance(doc, Mapping) or not doc.get("q_id"):
                skipped += 1
                continue
            try:
                record = StatRecord.model_validate(dict(doc))
            except ValidationError:
                skipped += 1
                continue
            records[record.q_id] = record
        if skipped:
            logger.debug("Skipped %d stat documents without a usable q_id", skipped)
        return cls(records)

    def get(self, q_id: Any) -> Optional[StatRecord]:
        return self._records.get(str(q_id))

    def is_mastered(self, q_id: Any) -> bool:
        record = self.get(q_id)
        return record is not None and record.familiarity == "mastered"

    def __contains__(self, q_id: object) -> bool:
        return str(q_id) in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[StatRecord]:
        return iter(self._records.values())
