"""Builds the ordered set of questions served in one practice round."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from engines.sampler import WeightedSampler
from engines.stats_index import StatsIndex
from engines.weighting import WeightFunction
from item_bank import parse_question
from schemas import QUESTION_TYPES, Question

logger = logging.getLogger(__name__)
_ROUND_LOGGER = logging.getLogger("trainer.rounds")

DEFAULT_ROUND_SIZE = 10


class MasteredPolicy(str, Enum):
    """How questions the learner marked ``mastered`` enter the weighted pool."""

    EXCLUDE = "exclude"
    DOWNWEIGHT = "downweight"

    @classmethod
    def parse(cls, value: Any) -> "MasteredPolicy":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        for policy in cls:
            if policy.value == key:
                return policy
        raise ValueError(f"Unknown mastered policy: {value!r}")


@dataclass(frozen=True)
class Round:
    subject: str
    questions: Tuple[Question, ...] = ()
    forced_q_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self.questions)

    def __iter__(self) -> Iterator[Question]:
        return iter(self.questions)

    def __getitem__(self, index: int) -> Question:
        return self.questions[index]

    @property
    def is_empty(self) -> bool:
        return not self.questions

    @property
    def q_ids(self) -> List[str]:
        return [q.q_id for q in self.questions]


class RoundBuilder:
    """Filter candidates, insert at most one forced question, fill the rest by weight."""

    def __init__(
        self,
        *,
        round_size: int = DEFAULT_ROUND_SIZE,
        rng: Optional[random.Random] = None,
        weight_fn: Optional[WeightFunction] = None,
        sampler: Optional[WeightedSampler] = None,
        mastered_policy: MasteredPolicy | str = MasteredPolicy.EXCLUDE,
    ) -> None:
        if round_size < 1:
            raise ValueError("round_size must be at least 1")
        self.round_size = int(round_size)
        self.rng = rng or random.Random()
        self.weight_fn = weight_fn or WeightFunction(self.rng)
        self.sampler = sampler or WeightedSampler(self.rng)
        self.mastered_policy = MasteredPolicy.parse(mastered_policy)

    def candidates(self, catalog: Iterable[Any], subject: str) -> List[Question]:
        target = str(subject or "").strip()
        eligible: List[Question] = []
        seen: set[str] = set()
        for entry in catalog:
            question = parse_question(entry)
            if question is None or question.q_id in seen:
                continue
            if not question.active or question.subject != target:
                continue
            if question.type not in QUESTION_TYPES:
                continue
            seen.add(question.q_id)
            eligible.append(question)
        return eligible

    def build(self, catalog: Iterable[Any], stats_index: StatsIndex, subject: str) -> Round:
        candidates = self.candidates(catalog, subject)
        if not candidates:
            logger.info("No eligible questions for subject %s", subject)
            return Round(subject=subject)

        forced: List[Question] = []
        force_list = [q for q in candidates if q.force_repeat]
        if force_list:
            forced.append(self.rng.choice(force_list))
        forced_ids = {q.q_id for q in forced}

        # the forced slot is the only way a force_repeat question enters a round
        remainder = [q for q in candidates if q.q_id not in forced_ids and not q.force_repeat]
        if self.mastered_policy is MasteredPolicy.EXCLUDE:
            remainder = [q for q in remainder if not stats_index.is_mastered(q.q_id)]

        need = max(0, self.round_size - len(forced))
        picked = self.sampler.sample(
            remainder,
            need,
            lambda q: self.weight_fn(q, stats_index.get(q.q_id)),
        )

        combined = forced + picked
        self.rng.shuffle(combined)
        round_ = Round(
            subject=subject,
            questions=tuple(combined[: self.round_size]),
            forced_q_id=forced[0].q_id if forced else None,
        )
        logger.info(
            "Built round for %s: %d questions from %d candidates (forced=%s, policy=%s)",
            subject,
            len(round_),
            len(candidates),
            round_.forced_q_id,
            self.mastered_policy.value,
        )
        if _ROUND_LOGGER.isEnabledFor(logging.DEBUG):
            for row in self.describe(round_, stats_index):
                _ROUND_LOGGER.debug("round row %s", row)
        return round_

    def describe(self, round_: Round, stats_index: StatsIndex) -> List[Dict[str, Any]]:
        """Per-question weight breakdown for inspection; each call redraws jitter."""

        rows: List[Dict[str, Any]] = []
        for question in round_:
            detail = self.weight_fn.breakdown(question, stats_index.get(question.q_id))
            rows.append(
                {
                    "q_id": question.q_id,
                    "type": question.type,
                    "core_topic": question.core_topic,
                    "forced": question.q_id == round_.forced_q_id,
                    **detail.as_dict(),
                }
            )
        return rows
