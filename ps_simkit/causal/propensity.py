"""
Propensity Score Methods for simulated cohorts.

This module estimates propensity scores and builds the matched and
weighted samples whose treatment-effect estimates are compared against the
calibrated ground truth.

References
----------
Rosenbaum, P. R., & Rubin, D. B. (1983). The central role of the
    propensity score in observational studies for causal effects.
    Biometrika, 70(1), 41-55.

Austin, P. C. (2011). Optimal caliper widths for propensity-score matching
    when estimating differences in means and differences in proportions in
    observational studies. Pharmaceutical Statistics, 10(2), 150-161.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy.special import expit

from ..utils import safe_logit


@dataclass
class MatchResult:
    """Matched sample produced by nearest-neighbour matching."""
    matched: pd.DataFrame  # matched rows with 'pair_id' and 'match_weight'
    n_treated: int
    n_matched_pairs: int
    caliper: Optional[float]  # absolute caliper on the logit scale
    balance_before: pd.DataFrame
    balance_after: pd.DataFrame

    @property
    def match_rate(self) -> float:
        return self.n_matched_pairs / self.n_treated if self.n_treated else 0.0


class PropensityScoreAnalysis:
    """
    Propensity score estimation, matching and weighting.

    The propensity score e(X) = P(A=1|X) is a balancing score: conditional
    on e(X), the distribution of X is the same for treated and control units.
    Under unconfoundedness and positivity, adjusting for e(X) identifies the
    marginal treatment effect.
    """

    def __init__(
        self,
        cohort: pd.DataFrame,
        treatment_col: str = 'treatment',
        covariate_cols: Optional[List[str]] = None,
        verbose: bool = False,
    ):
        if treatment_col not in cohort.columns:
            raise ValueError(f"Treatment column '{treatment_col}' not found")
        if covariate_cols is None:
            covariate_cols = [c for c in cohort.columns if c.startswith('x')]
        missing = [c for c in covariate_cols if c not in cohort.columns]
        if missing:
            raise ValueError(f"Covariates not found in cohort: {missing}")
        if not covariate_cols:
            raise ValueError("No covariates identified for propensity score model")

        self.cohort = cohort.reset_index(drop=True).copy()
        self.treatment_col = treatment_col
        self.covariate_cols = list(covariate_cols)
        self.verbose = verbose
        self.propensity_scores: Optional[np.ndarray] = None
        self.coefficients: Optional[np.ndarray] = None

    @property
    def treatment(self) -> np.ndarray:
        return self.cohort[self.treatment_col].to_numpy(dtype=int)

    def estimate_propensity_scores(self, max_iter: int = 25, tol: float = 1e-8) -> np.ndarray:
        """
        Estimate propensity scores by logistic regression.

        Fitted with iteratively reweighted least squares on an intercept plus
        the covariates.
        """
        if len(self.cohort) < 50:
            raise ValueError("Insufficient observations for propensity score estimation")

        X = self.cohort[self.covariate_cols].to_numpy(dtype=float)
        T = self.treatment
        X_design = np.column_stack([np.ones(len(X)), X])

        beta = np.zeros(X_design.shape[1])
        for _ in range(max_iter):
            p = np.clip(expit(X_design @ beta), 1e-10, 1 - 1e-10)
            w = p * (1 - p)
            z = X_design @ beta + (T - p) / w
            XtW = X_design.T * w
            try:
                beta_new = np.linalg.solve(XtW @ X_design, XtW @ z)
            except np.linalg.LinAlgError:
                beta_new = np.linalg.lstsq(XtW @ X_design, XtW @ z, rcond=None)[0]
            converged = np.max(np.abs(beta_new - beta)) < tol
            beta = beta_new
            if converged:
                break

        scores = expit(X_design @ beta)
        self.coefficients = beta
        self.propensity_scores = scores
        self.cohort['propensity_score'] = scores

        if self.verbose:
            ps_t, ps_c = scores[T == 1], scores[T == 0]
            print(f"   N = {len(T)}, Treated = {T.sum()}, Control = {len(T) - T.sum()}")
            print(f"      Treated:  mean={ps_t.mean():.3f}, range=[{ps_t.min():.3f}, {ps_t.max():.3f}]")
            print(f"      Control:  mean={ps_c.mean():.3f}, range=[{ps_c.min():.3f}, {ps_c.max():.3f}]")
        return scores

    def compute_balance_statistics(self, weights: Optional[np.ndarray] = None) -> pd.DataFrame:
        """
        Standardized mean differences of the covariates.

        SMD = (mean_treated - mean_control) / sqrt((var_treated + var_control) / 2)

        SMD < 0.1 is typically considered good balance.
        """
        return balance_table(self.cohort, self.treatment_col, self.covariate_cols, weights)

    def nearest_neighbor_matching(
        self,
        caliper: Optional[float] = 0.2,
        with_replacement: bool = False,
    ) -> MatchResult:
        """
        Greedy 1:1 nearest-neighbour matching on the logit of the score.

        Parameters
        ----------
        caliper : float, optional
            Maximum distance for a valid match, in standard deviations of the
            logit propensity score. ``None`` disables the caliper.
        with_replacement : bool
            Whether control units can be matched multiple times.
        """
        if self.propensity_scores is None:
            self.estimate_propensity_scores()

        T = self.treatment
        logit_ps = safe_logit(self.propensity_scores)
        treated_idx = np.flatnonzero(T == 1)
        control_idx = np.flatnonzero(T == 0)
        if len(treated_idx) == 0 or len(control_idx) == 0:
            raise ValueError("Matching requires both treated and control units")

        caliper_abs = caliper * logit_ps.std() if caliper is not None else np.inf
        available = np.ones(len(control_idx), dtype=bool)
        control_logit = logit_ps[control_idx]

        pairs_t: List[int] = []
        pairs_c: List[int] = []
        for t_idx in treated_idx:
            distances = np.abs(control_logit - logit_ps[t_idx])
            distances[~available] = np.inf
            best = int(np.argmin(distances))
            if distances[best] > caliper_abs:
                continue
            pairs_t.append(t_idx)
            pairs_c.append(control_idx[best])
            if not with_replacement:
                available[best] = False
            if not available.any():
                break

        if not pairs_t:
            raise ValueError("No treated unit found a control match within the caliper")

        pair_ids = np.arange(len(pairs_t))
        matched = pd.concat([
            self.cohort.iloc[pairs_t].assign(pair_id=pair_ids),
            self.cohort.iloc[pairs_c].assign(pair_id=pair_ids),
        ], ignore_index=True)
        matched['match_weight'] = 1.0

        match_weights = np.zeros(len(self.cohort))
        np.add.at(match_weights, np.asarray(pairs_t), 1.0)
        np.add.at(match_weights, np.asarray(pairs_c), 1.0)

        result = MatchResult(
            matched=matched,
            n_treated=len(treated_idx),
            n_matched_pairs=len(pairs_t),
            caliper=None if caliper is None else float(caliper_abs),
            balance_before=self.compute_balance_statistics(),
            balance_after=self.compute_balance_statistics(weights=match_weights),
        )

        if self.verbose:
            print(f"   ✓ Matched {result.n_matched_pairs} of {result.n_treated} treated units "
                  f"({result.match_rate * 100:.1f}%)")
            smd_before = result.balance_before['abs_smd'].mean()
            smd_after = result.balance_after['abs_smd'].mean()
            print(f"   Balance (mean |SMD|): {smd_before:.3f} → {smd_after:.3f}")
            if smd_after > 0.1:
                print("   ⚠️ Warning: Residual imbalance after matching (mean |SMD| > 0.1)")
        return result

    def inverse_probability_weights(
        self,
        estimand: str = 'ate',
        trim_quantile: Optional[float] = None,
    ) -> np.ndarray:
        """
        Inverse probability of treatment weights.

        ATE: treated w = 1 / e(X), control w = 1 / (1 - e(X)).
        ATT: treated w = 1, control w = e(X) / (1 - e(X)).
        """
        if self.propensity_scores is None:
            self.estimate_propensity_scores()

        T = self.treatment
        ps = np.clip(self.propensity_scores, 1e-10, 1 - 1e-10)
        if estimand == 'ate':
            weights = T / ps + (1 - T) / (1 - ps)
        elif estimand == 'att':
            weights = T + (1 - T) * ps / (1 - ps)
        else:
            raise ValueError(f"Unknown estimand: {estimand}")

        if trim_quantile is not None:
            if not 0.0 < trim_quantile <= 1.0:
                raise ValueError(f"trim_quantile must lie in (0, 1], got {trim_quantile}")
            weights = np.minimum(weights, np.quantile(weights, trim_quantile))

        if self.verbose:
            ess = weights.sum() ** 2 / np.sum(weights ** 2)
            print(f"   ✓ IPW ({estimand.upper()}): effective sample size {ess:.1f} of {len(weights)}")
        return weights


def balance_table(
    frame: pd.DataFrame,
    treatment_col: str,
    covariates: List[str],
    weights: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """Standardized mean difference per covariate, optionally weighted."""
    T = frame[treatment_col].to_numpy(dtype=int)
    treated_mask = T == 1
    control_mask = T == 0
    if weights is None:
        weights = np.ones(len(frame))
    weights = np.asarray(weights, dtype=float)

    rows = []
    for cov in covariates:
        x = frame[cov].to_numpy(dtype=float)
        w_t = weights[treated_mask]
        w_c = weights[control_mask]
        mean_t = np.average(x[treated_mask], weights=w_t)
        mean_c = np.average(x[control_mask], weights=w_c)
        var_t = np.average((x[treated_mask] - mean_t) ** 2, weights=w_t)
        var_c = np.average((x[control_mask] - mean_c) ** 2, weights=w_c)
        pooled_sd = np.sqrt((var_t + var_c) / 2)
        smd = (mean_t - mean_c) / pooled_sd if pooled_sd > 0 else 0.0
        rows.append({
            'covariate': cov,
            'mean_treated': mean_t,
            'mean_control': mean_c,
            'smd': smd,
            'abs_smd': abs(smd),
            'balanced': abs(smd) < 0.1,
        })
    return pd.DataFrame(rows)
