from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from ps_simkit.causal.survival import CoxSurvivalAnalysis, fit_cox
from ps_simkit.evaluators import weibull_cox_times


def _cohort(n: int = 3000, log_hr: float = math.log(2.0), seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    treatment = rng.integers(0, 2, size=n)
    times = weibull_cox_times(rng.random(n), lam=0.00002, eta=2.0, log_hazard=log_hr * treatment)
    censor = 400.0
    return pd.DataFrame({
        "treatment": treatment,
        "time": np.minimum(times, censor),
        "event": (times <= censor).astype(int),
    })


def test_fit_cox_recovers_log_hazard_ratio() -> None:
    cohort = _cohort()
    result = fit_cox(cohort["time"], cohort["event"], cohort[["treatment"]], with_concordance=True)
    assert result.coef("treatment") == pytest.approx(math.log(2.0), abs=0.12)
    assert result.hazard_ratio("treatment") == pytest.approx(math.exp(result.coef("treatment")))
    assert result.standard_error("treatment") > 0
    assert 0.5 < result.concordance_index < 1.0
    assert result.n_events == int(cohort["event"].sum())


def test_fit_cox_with_weights_uses_robust_variance() -> None:
    cohort = _cohort(n=1000, seed=1)
    result = fit_cox(cohort["time"], cohort["event"], cohort[["treatment"]], weights=np.full(1000, 2.0))
    assert math.isfinite(result.coef("treatment"))
    with pytest.raises(KeyError):
        result.coef("missing")


def test_fit_cox_rejects_degenerate_input() -> None:
    empty = pd.DataFrame({"treatment": []})
    with pytest.raises(ValueError):
        fit_cox([], [], empty)
    with pytest.raises(ValueError):
        fit_cox([1.0, 2.0], [0, 0], pd.DataFrame({"treatment": [0, 1]}))
    with pytest.raises(ValueError):
        fit_cox([1.0, 2.0], [1, 1], pd.DataFrame(index=[0, 1]))


def test_survival_analysis_tables_and_tests() -> None:
    analysis = CoxSurvivalAnalysis(_cohort(n=1500, seed=2))
    analysis.fit_cox_model()
    table = analysis.generate_results_table()
    assert list(table["Variable"]) == ["treatment"]
    assert table["Model"].iloc[0] == "Cox PH: crude"

    curves = analysis.kaplan_meier_by_arm()
    assert set(curves) == {0, 1}
    lr = analysis.log_rank_test()
    assert lr["p_value"] < 0.05


def test_survival_analysis_validates_columns() -> None:
    with pytest.raises(ValueError):
        CoxSurvivalAnalysis(pd.DataFrame({"time": [1.0], "event": [1]}))
