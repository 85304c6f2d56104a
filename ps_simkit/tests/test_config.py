from __future__ import annotations

import json
from pathlib import Path

import pytest

from ps_simkit.config import (
    SimulationConfig,
    apply_scenario_profile,
    get_scenario_profile,
    list_scenario_profiles,
    load_scenario_profile,
)


def test_copy_with_overrides_does_not_mutate_original() -> None:
    base = SimulationConfig(verbose=False)
    updated = base.copy_with_overrides({"N_OBS": 500, "OUTCOME_COEFFICIENTS.x1": 1.5})
    assert updated.N_OBS == 500
    assert updated.OUTCOME_COEFFICIENTS["x1"] == 1.5
    assert base.N_OBS == 10_000
    assert base.OUTCOME_COEFFICIENTS["x1"] == 0.4


def test_coefficient_overrides_replace_whole_model() -> None:
    updated = SimulationConfig(verbose=False).copy_with_overrides({"TREATMENT_COEFFICIENTS": {"x2": 1.0}})
    assert updated.TREATMENT_COEFFICIENTS == {"x2": 1.0}


def test_unknown_override_key_raises() -> None:
    with pytest.raises(KeyError):
        SimulationConfig(verbose=False).copy_with_overrides({"NOT_A_SETTING": 1})
    with pytest.raises(KeyError):
        SimulationConfig(verbose=False).copy_with_overrides({"N_OBS.x": 1})


@pytest.mark.parametrize(
    "overrides",
    [
        {"TARGET_PREVALENCE": 1.2},
        {"TARGET_HAZARD_RATIO": 0.0},
        {"N_BINARY": 9},
        {"MAX_ITERATIONS": 0},
        {"OUTCOME_COEFFICIENTS": {"x7": 1.0}},
    ],
)
def test_invalid_overrides_fail_validation(overrides) -> None:
    with pytest.raises(ValueError):
        SimulationConfig(verbose=False).copy_with_overrides(overrides)


def test_snapshot_is_json_serialisable() -> None:
    payload = json.dumps(SimulationConfig(verbose=False).snapshot())
    assert "TARGET_HAZARD_RATIO" in payload


def test_builtin_profiles_apply() -> None:
    names = {profile.name for profile in list_scenario_profiles()}
    assert {"intercept_only", "moderate_confounding", "strong_confounding"} <= names
    config = apply_scenario_profile(SimulationConfig(verbose=False), get_scenario_profile("Intercept_Only"))
    assert config.TREATMENT_COEFFICIENTS == {}
    assert config.TARGET_PREVALENCE == 0.5
    with pytest.raises(KeyError):
        get_scenario_profile("missing")


def test_load_profile_from_file(tmp_path: Path) -> None:
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"overrides": {"TARGET_HAZARD_RATIO": 0.5}}), encoding="utf-8")
    profile = load_scenario_profile(path)
    assert profile.name == "custom"
    assert apply_scenario_profile(SimulationConfig(verbose=False), profile).TARGET_HAZARD_RATIO == 0.5

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"overrides": [1, 2]}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_scenario_profile(bad)
    with pytest.raises(FileNotFoundError):
        load_scenario_profile(tmp_path / "absent.json")
