import random

import pytest

from engines.weighting import WeightFunction
from schemas import Question, StatRecord


def _question(**overrides):
    doc = {
        "q_id": "phy-001",
        "subject": "physics",
        "type": "TF",
        "statement": "Mass is conserved in a closed system.",
        "answer_key": "TRUE",
    }
    doc.update(overrides)
    return Question.model_validate(doc)


@pytest.fixture
def flat_weight():
    return WeightFunction(random.Random(0), jitter_scale=0.0)


def test_unseen_question_has_base_weight(flat_weight):
    assert flat_weight(_question()) == pytest.approx(1.0)


def test_wrong_rate_contributes_four_times(flat_weight):
    stat = StatRecord(q_id="phy-001", attempts=4, wrong=2)
    assert flat_weight(_question(), stat) == pytest.approx(3.0)


def test_all_bonuses_stack(flat_weight):
    stat = StatRecord(q_id="phy-001", attempts=2, wrong=2, familiarity="needs_practice")
    question = _question(teacher_priority=1.5, force_repeat=True)
    # 1 + 4*1.0 + 3 + 2*1.5 + 2
    assert flat_weight(question, stat) == pytest.approx(13.0)


def test_mastered_is_scaled_down(flat_weight):
    stat = StatRecord(q_id="phy-001", attempts=3, wrong=0, familiarity="mastered")
    assert flat_weight(_question(), stat) == pytest.approx(0.25)


def test_mapping_stats_are_accepted(flat_weight):
    stat = {"q_id": "phy-001", "attempts": "5", "wrong": 5, "familiarity": "familiar"}
    assert flat_weight(_question(), stat) == pytest.approx(5.0)


def test_garbage_history_never_goes_negative(flat_weight):
    stat = {"attempts": -4, "wrong": "lots", "familiarity": None}
    weight = flat_weight(_question(), stat)
    assert weight == pytest.approx(1.0)
    assert weight >= 0


def test_wrong_is_clamped_to_attempts(flat_weight):
    stat = {"attempts": 2, "wrong": 9}
    breakdown = flat_weight.breakdown(_question(), stat)
    assert breakdown.wrong == 2
    assert breakdown.wrong_rate == pytest.approx(1.0)


def test_jitter_stays_within_half_a_point():
    weight_fn = WeightFunction(random.Random(7))
    weights = [weight_fn(_question()) for _ in range(200)]
    assert all(1.0 <= w < 1.5 for w in weights)
    assert len(set(weights)) > 1


def test_jitter_scale_is_clamped():
    weight_fn = WeightFunction(random.Random(1), jitter_scale=5)
    assert weight_fn.jitter_scale == 1.0


def test_breakdown_as_dict_rounds_wrong_rate(flat_weight):
    stat = StatRecord(q_id="phy-001", attempts=3, wrong=1)
    data = flat_weight.breakdown(_question(), stat).as_dict()
    assert data["wrong_rate"] == 0.33
    assert data["attempts"] == 3
    assert data["weight"] == pytest.approx(1 + 4 / 3)
