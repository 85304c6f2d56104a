from __future__ import annotations

import json
import math
from pathlib import Path

import numpy as np
import pytest

from ps_simkit.calibration import CalibrationError
from ps_simkit.config import SimulationConfig, apply_scenario_profile, get_scenario_profile
from ps_simkit.simulation import CohortSimulation


def _config(**overrides) -> SimulationConfig:
    return SimulationConfig(N_OBS=4000, verbose=False).copy_with_overrides(overrides)


def test_cohort_calibrations_converge_and_hit_targets() -> None:
    sim = CohortSimulation(_config())
    outputs = sim.run()

    params = outputs["parameters"].set_index("calibration")
    assert params["converged"].all()
    assert params.loc["treatment_intercept", "induced_statistic"] == pytest.approx(0.25, abs=1e-4)
    assert params.loc["treatment_log_hr", "induced_statistic"] == pytest.approx(math.log(2.0), abs=1e-3)
    # Confounders are prognostic, so the conditional effect exceeds the marginal one.
    assert params.loc["treatment_log_hr", "estimated_parameter"] > math.log(2.0)

    cohort = outputs["cohort"]
    assert cohort["treatment"].mean() == pytest.approx(0.25, abs=0.03)
    assert {"time", "event", "true_propensity"} <= set(cohort.columns)


def test_cohort_is_reproducible_for_a_seed() -> None:
    first = CohortSimulation(_config(N_OBS=1500)).simulate_cohort()
    second = CohortSimulation(_config(N_OBS=1500)).simulate_cohort()
    assert first.equals(second)


def test_estimator_table_reports_bias_against_truth() -> None:
    outputs = CohortSimulation(_config()).run()
    estimates = outputs["estimates"].set_index("method")
    assert {"crude", "ps_matching", "iptw_ate", "iptw_att"} <= set(estimates.index)
    assert (estimates["true_log_hr"] == math.log(2.0)).all()
    # Weighting targets the marginal effect; it should land near the truth.
    assert abs(estimates.loc["iptw_ate", "bias"]) < 0.15
    assert "after_matching" in outputs["balance"]


def test_administrative_censoring_produces_censored_rows() -> None:
    cohort = CohortSimulation(_config(N_OBS=1500, CENSOR_TIME=150.0)).simulate_cohort()
    assert 0 < cohort["event"].mean() < 1
    assert cohort["time"].max() <= 150.0


def test_intercept_only_profile_needs_no_adjustment() -> None:
    config = apply_scenario_profile(_config(), get_scenario_profile("intercept_only"))
    sim = CohortSimulation(config)
    sim.simulate_cohort()
    log_hr = sim.calibrations["treatment_log_hr"].estimated_parameter
    assert log_hr == pytest.approx(math.log(2.0), abs=0.1)


def test_non_convergence_raises() -> None:
    sim = CohortSimulation(_config(MAX_ITERATIONS=1, PREVALENCE_TOLERANCE=1e-12, TARGET_PREVALENCE=0.01))
    with pytest.raises(CalibrationError) as excinfo:
        sim.simulate_cohort()
    assert not excinfo.value.result.converged


def test_export_records_applied_profile(tmp_path) -> None:
    profile = get_scenario_profile("intercept_only")
    config = apply_scenario_profile(_config(N_OBS=1500), profile)
    outputs = CohortSimulation(config, output_dir=str(tmp_path), profile=profile).run()
    snapshot = json.loads(Path(outputs["files"]["config_snapshot"]).read_text(encoding="utf-8"))
    assert snapshot["scenario_profile"]["name"] == "intercept_only"
    assert snapshot["scenario_profile"]["overrides"]["TARGET_PREVALENCE"] == 0.5
    assert snapshot["config"]["TREATMENT_COEFFICIENTS"] == {}


def test_adjacent_seeds_draw_unrelated_covariates() -> None:
    first = CohortSimulation(_config(N_OBS=200, RANDOM_SEED=10)).generate_covariates()
    second = CohortSimulation(_config(N_OBS=200, RANDOM_SEED=11)).generate_covariates()
    assert not np.allclose(first.to_numpy(), second.to_numpy())
