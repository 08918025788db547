"""Selection weight for a question given the learner's history with it."""

from __future__ import annotations

import math
import random
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Union

from schemas import Question, StatRecord

BASE_WEIGHT = 1.0
WRONG_RATE_FACTOR = 4.0
NEEDS_PRACTICE_BONUS = 3.0
TEACHER_PRIORITY_FACTOR = 2.0
FORCE_REPEAT_BONUS = 2.0
MASTERED_MULTIPLIER = 0.25
DEFAULT_JITTER = 0.5

StatLike = Union[StatRecord, Mapping[str, Any], None]


def _field(stat: StatLike, name: str) -> Any:
    if stat is None:
        return None
    if isinstance(stat, Mapping):
        return stat.get(name)
    return getattr(stat, name, None)


def _non_negative(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


@dataclass(frozen=True)
class WeightBreakdown:
    attempts: int
    wrong: int
    wrong_rate: float
    familiarity: str
    teacher_priority: float
    force_repeat: bool
    jitter: float
    weight: float

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["wrong_rate"] = round(self.wrong_rate, 2)
        return data


class WeightFunction:
    """Scores how much a learner needs to see a question again.

    ``1 + 4*wrong_rate + 3*needs_practice + 2*teacher_priority + 2*force_repeat
    + jitter``, scaled by 0.25 when the learner marked the question mastered.
    A never-attempted question has a wrong rate of 0.
    """

    def __init__(self, rng: Optional[random.Random] = None, jitter_scale: float = DEFAULT_JITTER) -> None:
        self.rng = rng or random.Random()
        self.jitter_scale = max(0.0, min(1.0, float(jitter_scale)))

    def __call__(self, question: Question, stat: StatLike = None) -> float:
        return self.breakdown(question, stat).weight

    def breakdown(self, question: Question, stat: StatLike = None) -> WeightBreakdown:
        attempts = int(_non_negative(_field(stat, "attempts")))
        wrong = min(int(_non_negative(_field(stat, "wrong"))), attempts)
        wrong_rate = wrong / attempts if attempts > 0 else 0.0
        familiarity = str(_field(stat, "familiarity") or "unknown").strip().lower()

        teacher_priority = _non_negative(getattr(question, "teacher_priority", 0))
        force_repeat = bool(getattr(question, "force_repeat", False))
        jitter = self.rng.random() * self.jitter_scale

        weight = (
            BASE_WEIGHT
            + WRONG_RATE_FACTOR * wrong_rate
            + (NEEDS_PRACTICE_BONUS if familiarity == "needs_practice" else 0.0)
            + TEACHER_PRIORITY_FACTOR * teacher_priority
            + (FORCE_REPEAT_BONUS if force_repeat else 0.0)
            + jitter
        )
        if familiarity == "mastered":
            weight *= MASTERED_MULTIPLIER

        return WeightBreakdown(
            attempts=attempts,
            wrong=wrong,
            wrong_rate=wrong_rate,
            familiarity=familiarity,
            teacher_priority=teacher_priority,
            force_repeat=force_repeat,
            jitter=jitter,
            weight=max(0.0, weight),
        )
