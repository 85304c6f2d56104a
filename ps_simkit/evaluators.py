"""
Stochastic evaluators used by the calibration engine.

An evaluator maps one free model parameter to the summary statistic it
induces: simulate with the parameter, estimate, summarise. Evaluators hold
their random numbers fixed (see :mod:`ps_simkit.random_source`) so that only
the parameter changes between calls, which keeps the statistic a low-noise,
monotone function of the parameter.
"""

from __future__ import annotations

import warnings
from typing import Optional, Protocol, runtime_checkable

import numpy as np
import pandas as pd
from lifelines.exceptions import ConvergenceError, ConvergenceWarning

from .causal.survival import fit_cox
from .random_source import SeededSource
from .utils import bounded_exp, stable_sigmoid

TREATMENT_COL = "treatment"


class EvaluationError(RuntimeError):
    """The statistic could not be computed at the requested parameter."""

    def __init__(self, message: str, parameter: float):
        super().__init__(message)
        self.parameter = parameter


@runtime_checkable
class Evaluator(Protocol):
    """Maps a candidate parameter to its induced statistic."""

    def evaluate(self, parameter: float) -> float:
        ...


class _BaseEvaluator:
    """Shared bookkeeping for the concrete evaluators."""

    def __init__(self, linear_predictor: np.ndarray, source: SeededSource):
        lp = np.asarray(linear_predictor, dtype=float).ravel()
        if lp.size == 0:
            raise ValueError("Linear predictor must contain at least one observation")
        if not np.all(np.isfinite(lp)):
            raise ValueError("Linear predictor contains non-finite values")
        self.linear_predictor = lp
        self.source = source
        self.n_evaluations = 0
        self.dataset: Optional[pd.DataFrame] = None

    @property
    def n_obs(self) -> int:
        return int(self.linear_predictor.size)

    def __call__(self, parameter: float) -> float:
        return self.evaluate(parameter)

    def evaluate(self, parameter: float) -> float:  # pragma: no cover - abstract
        raise NotImplementedError


class PrevalenceEvaluator(_BaseEvaluator):
    """
    Marginal prevalence of a logistic Bernoulli outcome.

    ``P(Y_i = 1) = expit(parameter + lp_i)``; the outcome is drawn from the
    replayed per-observation uniform, so the returned sample mean is a
    non-decreasing step function of the intercept.
    """

    def evaluate(self, parameter: float) -> float:
        probs = stable_sigmoid(float(parameter) + self.linear_predictor)
        outcome = self.source.bernoulli(probs)
        self.n_evaluations += 1
        self.dataset = pd.DataFrame({
            'linear_predictor': self.linear_predictor,
            'probability': probs,
            'outcome': outcome,
        })
        return float(outcome.mean())


def weibull_cox_times(
    u: np.ndarray,
    lam: float,
    eta: float,
    log_hazard: np.ndarray,
) -> np.ndarray:
    """
    Invert the Weibull-Cox survival function.

    ``T = (-ln(U) / (lam * exp(log_hazard)))^(1/eta)``, evaluated on the log
    scale so extreme linear predictors saturate at the float range instead of
    producing zero or infinite times.
    """
    if lam <= 0 or eta <= 0:
        raise ValueError(f"Weibull scale and shape must be positive (lam={lam}, eta={eta})")
    u = np.clip(np.asarray(u, dtype=float), 1e-300, np.nextafter(1.0, 0.0))
    with np.errstate(divide="ignore", over="ignore"):
        log_time = (np.log(-np.log(u)) - np.log(lam) - np.asarray(log_hazard, dtype=float)) / eta
    return bounded_exp(log_time)


class MarginalHazardRatioEvaluator(_BaseEvaluator):
    """
    Marginal log hazard ratio induced by a conditional treatment effect.

    Every observation contributes both potential event times, one under
    control and one under treatment, generated from the same uniform. A Cox
    model of time on the treatment indicator alone is fitted to the 2N pooled
    rows (no censoring) and its coefficient is returned.
    """

    def __init__(
        self,
        linear_predictor: np.ndarray,
        source: SeededSource,
        lam: float = 0.00002,
        eta: float = 2.0,
    ):
        super().__init__(linear_predictor, source)
        if lam <= 0 or eta <= 0:
            raise ValueError(f"Weibull scale and shape must be positive (lam={lam}, eta={eta})")
        self.lam = float(lam)
        self.eta = float(eta)
        # Drawn once; reused for every parameter value.
        self.u = source.uniform(self.n_obs)
        self._indicator = np.repeat([0, 1], self.n_obs)

    def potential_times(self, parameter: float) -> pd.DataFrame:
        """Pooled potential-outcome rows for a given conditional log HR."""
        log_hazard = np.concatenate([
            self.linear_predictor,
            float(parameter) + self.linear_predictor,
        ])
        times = weibull_cox_times(np.tile(self.u, 2), self.lam, self.eta, log_hazard)
        return pd.DataFrame({
            'time': times,
            'event': np.ones(times.size, dtype=int),
            TREATMENT_COL: self._indicator,
        })

    def evaluate(self, parameter: float) -> float:
        """Fit the pooled Cox model; an unconverged fit raises :class:`EvaluationError`."""
        pooled = self.potential_times(parameter)
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            try:
                result = fit_cox(pooled['time'], pooled['event'], pooled[[TREATMENT_COL]])
            except (ConvergenceWarning, ConvergenceError) as exc:
                raise EvaluationError(
                    f"Cox fit did not converge at parameter {float(parameter):.6g}: {exc}",
                    float(parameter),
                ) from exc
        self.n_evaluations += 1
        self.dataset = pooled
        return result.coef(TREATMENT_COL)
