"""
Cox Proportional Hazards regression for simulated cohorts.

This module wraps :class:`lifelines.CoxPHFitter` for two uses:

1. The marginal hazard-ratio evaluator refits a single-covariate Cox model
   on the pooled potential outcomes at every calibration step
   (:func:`fit_cox`).
2. Cohort-level survival summaries: crude/adjusted hazard ratios,
   Kaplan-Meier curves and a log-rank test by treatment arm
   (:class:`CoxSurvivalAnalysis`).

Cost of one fit: sorting the durations is O(n log n); each Newton-Raphson
step on the partial likelihood is O(n p^2) for p covariates, and
lifelines typically converges in fewer than ten steps for p = 1.

References
----------
Cox, D. R. (1972). Regression models and life-tables. Journal of the
    Royal Statistical Society: Series B, 34(2), 187-202.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.statistics import logrank_test

DURATION_COL = "duration"
EVENT_COL = "event"
WEIGHT_COL = "_weight"


@dataclass
class CoxRegressionResult:
    """Results from Cox proportional hazards regression."""
    model_name: str
    n_observations: int
    n_events: int
    log_likelihood: float
    coefficients: Dict[str, Dict[str, float]]  # var -> {coef, hr, se, p, ci_lower, ci_upper}
    concordance_index: Optional[float] = None

    def coef(self, name: str) -> float:
        """Log hazard ratio for covariate ``name``."""
        if name not in self.coefficients:
            raise KeyError(f"Covariate '{name}' not in fitted model")
        return float(self.coefficients[name]['coef'])

    def hazard_ratio(self, name: str) -> float:
        return float(np.exp(self.coef(name)))

    def standard_error(self, name: str) -> float:
        if name not in self.coefficients:
            raise KeyError(f"Covariate '{name}' not in fitted model")
        return float(self.coefficients[name]['se'])


def fit_cox(
    durations: Sequence[float],
    events: Sequence[int],
    covariates: pd.DataFrame,
    weights: Optional[Sequence[float]] = None,
    robust: bool = False,
    penalizer: float = 0.0,
    with_concordance: bool = False,
    model_name: str = "Cox PH",
) -> CoxRegressionResult:
    """
    Fit a Cox proportional hazards model.

    Parameters
    ----------
    durations : array-like
        Time to event or censoring, strictly positive.
    events : array-like
        1 if the event was observed, 0 if censored.
    covariates : pd.DataFrame
        One column per regressor, aligned with ``durations``.
    weights : array-like, optional
        Case weights (e.g. inverse probability weights).
    robust : bool
        Use the sandwich variance estimator. Forced on when weights are
        given, since the model-based variance is wrong for weighted fits.
    penalizer : float
        L2 penalty passed to lifelines.
    with_concordance : bool
        Also compute Harrell's C-index (an extra O(n log n) pass).

    Returns
    -------
    CoxRegressionResult
    """
    df = covariates.reset_index(drop=True).copy()
    if df.shape[1] == 0:
        raise ValueError("At least one covariate is required for Cox regression")
    df[DURATION_COL] = np.asarray(durations, dtype=float)
    df[EVENT_COL] = np.asarray(events, dtype=int)

    if len(df) == 0:
        raise ValueError("Cannot fit Cox model to an empty dataset")
    n_events = int(df[EVENT_COL].sum())
    if n_events == 0:
        raise ValueError("Cannot fit Cox model without observed events")

    weights_col = None
    if weights is not None:
        df[WEIGHT_COL] = np.asarray(weights, dtype=float)
        weights_col = WEIGHT_COL
        robust = True

    cph = CoxPHFitter(penalizer=penalizer)
    cph.fit(
        df,
        duration_col=DURATION_COL,
        event_col=EVENT_COL,
        weights_col=weights_col,
        robust=robust,
    )

    summary = cph.summary
    coefficients = {}
    for var in cph.params_.index:
        coefficients[var] = {
            'coef': float(cph.params_[var]),
            'hr': float(np.exp(cph.params_[var])),
            'se': float(cph.standard_errors_[var]),
            'p': float(summary.loc[var, 'p']),
            'ci_lower': float(np.exp(cph.confidence_intervals_.loc[var, '95% lower-bound'])),
            'ci_upper': float(np.exp(cph.confidence_intervals_.loc[var, '95% upper-bound'])),
        }

    return CoxRegressionResult(
        model_name=model_name,
        n_observations=len(df),
        n_events=n_events,
        log_likelihood=float(cph.log_likelihood_),
        coefficients=coefficients,
        concordance_index=float(cph.concordance_index_) if with_concordance else None,
    )


class CoxSurvivalAnalysis:
    """
    Survival summaries of a simulated cohort by treatment arm.

    The Cox model specifies:
        h(t|A, X) = h₀(t) × exp(βA + γ'X)

    Without covariates the fitted exp(β) estimates the marginal hazard
    ratio; with the confounders included it estimates the conditional one.
    """

    def __init__(
        self,
        cohort: pd.DataFrame,
        treatment_col: str = 'treatment',
        duration_col: str = 'time',
        event_col: str = 'event',
        verbose: bool = False,
    ):
        for col in (treatment_col, duration_col, event_col):
            if col not in cohort.columns:
                raise ValueError(f"Column '{col}' not found in cohort")
        self.cohort = cohort.copy()
        self.treatment_col = treatment_col
        self.duration_col = duration_col
        self.event_col = event_col
        self.verbose = verbose
        self.results: List[CoxRegressionResult] = []

    def fit_cox_model(
        self,
        covariates: Optional[List[str]] = None,
        weights: Optional[np.ndarray] = None,
        robust: bool = False,
        model_name: Optional[str] = None,
    ) -> CoxRegressionResult:
        """Fit a Cox model of the event time on treatment (and covariates)."""
        columns = [self.treatment_col] + [c for c in (covariates or []) if c != self.treatment_col]
        missing = [c for c in columns if c not in self.cohort.columns]
        if missing:
            raise ValueError(f"Covariates not found in cohort: {missing}")

        name = model_name or (
            "Cox PH: crude" if len(columns) == 1 else "Cox PH: adjusted"
        )
        result = fit_cox(
            self.cohort[self.duration_col],
            self.cohort[self.event_col],
            self.cohort[columns],
            weights=weights,
            robust=robust,
            with_concordance=True,
            model_name=name,
        )
        self.results.append(result)

        if self.verbose:
            c = result.coefficients[self.treatment_col]
            print(
                f"   ✓ {name}: n={result.n_observations}, events={result.n_events}, "
                f"HR={c['hr']:.3f} [{c['ci_lower']:.3f}, {c['ci_upper']:.3f}]"
            )
        return result

    def kaplan_meier_by_arm(self) -> Dict[int, pd.DataFrame]:
        """Kaplan-Meier survival curves keyed by treatment value."""
        curves = {}
        for arm, subset in self.cohort.groupby(self.treatment_col):
            kmf = KaplanMeierFitter()
            kmf.fit(subset[self.duration_col], event_observed=subset[self.event_col], label=f"arm_{arm}")
            curves[int(arm)] = kmf.survival_function_
        return curves

    def log_rank_test(self) -> Dict[str, float]:
        """Log-rank comparison of treated versus control survival."""
        treated = self.cohort[self.cohort[self.treatment_col] == 1]
        control = self.cohort[self.cohort[self.treatment_col] == 0]
        if treated.empty or control.empty:
            raise ValueError("Both treatment arms must be non-empty for a log-rank test")
        lr_result = logrank_test(
            treated[self.duration_col], control[self.duration_col],
            event_observed_A=treated[self.event_col],
            event_observed_B=control[self.event_col],
        )
        return {
            'test_statistic': float(lr_result.test_statistic),
            'p_value': float(lr_result.p_value),
            'events_treated': int(treated[self.event_col].sum()),
            'events_control': int(control[self.event_col].sum()),
        }

    def generate_results_table(self) -> pd.DataFrame:
        """Tabulate every fitted model, one row per coefficient."""
        rows = []
        for result in self.results:
            for var, stats in result.coefficients.items():
                rows.append({
                    'Model': result.model_name,
                    'Variable': var,
                    'Hazard Ratio': stats['hr'],
                    'CI Lower': stats['ci_lower'],
                    'CI Upper': stats['ci_upper'],
                    'p-value': stats['p'],
                    'Coefficient': stats['coef'],
                    'Std. Error': stats['se'],
                    'n': result.n_observations,
                    'Events': result.n_events,
                    'C-index': result.concordance_index,
                })
        return pd.DataFrame(rows)
