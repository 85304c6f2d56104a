from __future__ import annotations

import math

import numpy as np
import pytest

from ps_simkit.evaluators import (
    EvaluationError,
    Evaluator,
    MarginalHazardRatioEvaluator,
    PrevalenceEvaluator,
    weibull_cox_times,
)
from ps_simkit.random_source import SeededSource


def test_prevalence_is_deterministic_across_calls() -> None:
    lp = np.random.default_rng(0).normal(size=2000)
    evaluator = PrevalenceEvaluator(lp, SeededSource(42))
    first = evaluator(0.3)
    evaluator(-2.0)
    assert evaluator(0.3) == first
    assert evaluator.n_evaluations == 3
    assert isinstance(evaluator, Evaluator)


def test_prevalence_is_monotone_in_intercept() -> None:
    lp = np.random.default_rng(1).normal(scale=2.0, size=5000)
    evaluator = PrevalenceEvaluator(lp, SeededSource(8))
    values = [evaluator(p) for p in np.linspace(-4, 4, 33)]
    assert all(a <= b for a, b in zip(values, values[1:]))
    assert values[0] < 0.2 and values[-1] > 0.8


def test_prevalence_close_to_population_mean() -> None:
    evaluator = PrevalenceEvaluator(np.zeros(20_000), SeededSource(3))
    assert evaluator(math.log(0.3 / 0.7)) == pytest.approx(0.3, abs=0.015)


def test_prevalence_saturates_for_extreme_linear_predictor() -> None:
    lp = np.array([-1e6, -800.0, 800.0, 1e6])
    evaluator = PrevalenceEvaluator(lp, SeededSource(5))
    assert evaluator(0.0) == 0.5
    assert evaluator(1e9) == 1.0
    assert evaluator(-1e9) == 0.0
    assert np.isfinite(evaluator.dataset["probability"]).all()


def test_evaluator_rejects_bad_linear_predictor() -> None:
    with pytest.raises(ValueError):
        PrevalenceEvaluator(np.array([]), SeededSource(1))
    with pytest.raises(ValueError):
        PrevalenceEvaluator(np.array([0.0, np.nan]), SeededSource(1))


def test_weibull_times_follow_inverse_transform() -> None:
    u = np.array([0.1, 0.5, 0.9])
    times = weibull_cox_times(u, lam=0.5, eta=2.0, log_hazard=np.zeros(3))
    expected = (-np.log(u) / 0.5) ** 0.5
    np.testing.assert_allclose(times, expected)


def test_weibull_times_stay_finite_and_positive() -> None:
    u = np.array([0.0, 1e-300, 0.5, np.nextafter(1.0, 0.0)])
    times = weibull_cox_times(u, lam=0.00002, eta=2.0, log_hazard=np.array([5000.0, -5000.0, 0.0, 3000.0]))
    assert np.all(np.isfinite(times))
    assert np.all(times > 0)


def test_weibull_times_reject_bad_parameters() -> None:
    with pytest.raises(ValueError):
        weibull_cox_times(np.array([0.5]), lam=0.0, eta=2.0, log_hazard=np.zeros(1))


def test_hazard_ratio_pools_both_potential_outcomes() -> None:
    evaluator = MarginalHazardRatioEvaluator(np.zeros(500), SeededSource(4), lam=0.00002, eta=2.0)
    pooled = evaluator.potential_times(math.log(2.0))
    assert len(pooled) == 1000
    assert pooled["event"].sum() == 1000
    assert pooled["treatment"].sum() == 500
    control = pooled.loc[pooled["treatment"] == 0, "time"].to_numpy()
    treated = pooled.loc[pooled["treatment"] == 1, "time"].to_numpy()
    # Same uniform per observation: T1 = T0 * exp(-beta / eta).
    np.testing.assert_allclose(treated, control * math.exp(-math.log(2.0) / 2.0))


def test_hazard_ratio_evaluator_is_deterministic_and_increasing() -> None:
    evaluator = MarginalHazardRatioEvaluator(np.zeros(2000), SeededSource(12))
    low = evaluator(0.2)
    high = evaluator(0.9)
    assert evaluator(0.2) == low
    assert low < high
    assert evaluator(math.log(2.0)) == pytest.approx(math.log(2.0), abs=0.1)


def test_hazard_ratio_evaluator_rejects_separated_fit() -> None:
    evaluator = MarginalHazardRatioEvaluator(np.zeros(500), SeededSource(1))
    with pytest.raises(EvaluationError) as excinfo:
        evaluator(math.log(1e6))
    assert excinfo.value.parameter == pytest.approx(math.log(1e6))
    assert evaluator.n_evaluations == 0
