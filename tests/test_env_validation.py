import os

import pytest

import env_validation
from env_validation import (
    DEFAULTS,
    EnvironmentError,
    get_env_bool,
    get_env_int,
    get_env_list,
    get_learner_roster,
    validate_environment,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for var in DEFAULTS:
        monkeypatch.setenv(var, "")
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_defaults_are_applied(clean_env):
    validate_environment()
    assert os.environ["ROUND_SIZE"] == "10"
    assert os.environ["MASTERED_POLICY"] == "exclude"
    assert get_env_list("TRAINER_SUBJECTS") == ["physics", "chemistry", "biology", "earth"]


def test_missing_optional_files_only_warn(clean_env, caplog):
    with caplog.at_level("WARNING", logger=env_validation.__name__):
        validate_environment()
    assert "QUESTION_BANK_PATH" in caplog.text


@pytest.mark.parametrize(
    "var, value",
    [
        ("ROUND_SIZE", "ten"),
        ("ROUND_SIZE", "0"),
        ("STATS_FETCH_LIMIT", "-5"),
        ("MASTERED_POLICY", "ignore"),
        ("TRAINER_SUBJECTS", " , "),
    ],
)
def test_invalid_values_raise(clean_env, var, value):
    clean_env.setenv(var, value)
    with pytest.raises(EnvironmentError) as excinfo:
        validate_environment()
    assert var in str(excinfo.value)


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("ROUND_DEBUG", "Yes")
    monkeypatch.setenv("ROUND_SIZE", "abc")
    monkeypatch.delenv("SOME_UNSET_FLAG", raising=False)
    assert get_env_bool("ROUND_DEBUG") is True
    assert get_env_bool("SOME_UNSET_FLAG", default=True) is True
    assert get_env_int("ROUND_SIZE", 7) == 7


def test_learner_roster_parsing(monkeypatch):
    monkeypatch.setenv("TRAINER_LEARNERS", "chiao:Chiao, ashley , :Nobody,tester:Tester (for dev)")
    assert get_learner_roster() == [
        ("chiao", "Chiao"),
        ("ashley", "ashley"),
        ("tester", "Tester (for dev)"),
    ]
