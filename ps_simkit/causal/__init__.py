"""
Causal estimators for simulated cohorts.

Modules
-------
survival
    Cox Proportional Hazards regression, Kaplan-Meier curves, log-rank test
propensity
    Propensity score estimation, matching and inverse probability weighting
"""

from .survival import CoxRegressionResult, CoxSurvivalAnalysis, fit_cox
from .propensity import MatchResult, PropensityScoreAnalysis, balance_table

__all__ = [
    # Survival Analysis
    'CoxRegressionResult',
    'CoxSurvivalAnalysis',
    'fit_cox',
    # Propensity Score Methods
    'MatchResult',
    'PropensityScoreAnalysis',
    'balance_table',
]
