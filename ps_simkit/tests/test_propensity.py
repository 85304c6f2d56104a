from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from ps_simkit.causal.propensity import PropensityScoreAnalysis, balance_table
from ps_simkit.utils import stable_sigmoid


def _confounded(n: int = 3000, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    x = rng.normal(size=(n, 3))
    ps = stable_sigmoid(-1.0 + x @ np.array([0.8, -0.5, 0.3]))
    treatment = (rng.random(n) < ps).astype(int)
    frame = pd.DataFrame(x, columns=["x1", "x2", "x3"])
    frame["treatment"] = treatment
    frame["true_ps"] = ps
    return frame


def test_estimated_scores_track_true_scores() -> None:
    cohort = _confounded()
    analysis = PropensityScoreAnalysis(cohort, covariate_cols=["x1", "x2", "x3"])
    scores = analysis.estimate_propensity_scores()
    assert scores.shape == (len(cohort),)
    assert np.corrcoef(scores, cohort["true_ps"])[0, 1] > 0.97
    np.testing.assert_allclose(analysis.coefficients[1:], [0.8, -0.5, 0.3], atol=0.2)


def test_matching_improves_balance() -> None:
    analysis = PropensityScoreAnalysis(_confounded(seed=1), covariate_cols=["x1", "x2", "x3"])
    match = analysis.nearest_neighbor_matching(caliper=0.2)
    assert match.n_matched_pairs > 0.8 * match.n_treated
    assert len(match.matched) == 2 * match.n_matched_pairs
    assert match.matched["treatment"].sum() == match.n_matched_pairs
    assert match.balance_after["abs_smd"].max() < 0.1
    assert match.balance_before["abs_smd"].max() > match.balance_after["abs_smd"].max()


def test_matching_without_replacement_uses_controls_once() -> None:
    cohort = _confounded(seed=2)
    analysis = PropensityScoreAnalysis(cohort, covariate_cols=["x1", "x2", "x3"])
    match = analysis.nearest_neighbor_matching(caliper=None)
    controls = match.matched[match.matched["treatment"] == 0]
    assert controls.duplicated(subset=["x1", "x2", "x3"]).sum() == 0


def test_ipw_weights_balance_covariates() -> None:
    cohort = _confounded(seed=3)
    analysis = PropensityScoreAnalysis(cohort, covariate_cols=["x1", "x2", "x3"])
    weights = analysis.inverse_probability_weights("ate")
    assert np.all(weights >= 1.0)
    balance = analysis.compute_balance_statistics(weights=weights)
    assert balance["abs_smd"].max() < 0.1

    att = analysis.inverse_probability_weights("att", trim_quantile=0.99)
    treated = cohort["treatment"].to_numpy() == 1
    np.testing.assert_allclose(att[treated], 1.0)
    with pytest.raises(ValueError):
        analysis.inverse_probability_weights("atc")


def test_balance_table_flags_imbalance() -> None:
    frame = pd.DataFrame({"treatment": [1, 1, 0, 0], "x1": [1.0, 1.2, 0.0, 0.2]})
    table = balance_table(frame, "treatment", ["x1"])
    assert table["smd"].iloc[0] > 1.0
    assert not table["balanced"].iloc[0]


def test_analysis_validates_inputs() -> None:
    with pytest.raises(ValueError):
        PropensityScoreAnalysis(pd.DataFrame({"x1": [0.0]}))
    with pytest.raises(ValueError):
        PropensityScoreAnalysis(pd.DataFrame({"treatment": [0], "x1": [0.0]}), covariate_cols=["x2"])
    small = PropensityScoreAnalysis(_confounded(n=20), covariate_cols=["x1"])
    with pytest.raises(ValueError):
        small.estimate_propensity_scores()
