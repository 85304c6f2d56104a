"""
Calibration of a single simulation parameter against a target statistic.

Given an evaluator ``f`` (simulate with a parameter, estimate, summarise)
that is monotone increasing in its parameter, calibration finds a parameter
``p`` with ``|f(p) - target| < tolerance`` in two phases:

1. **Bracket search** (:class:`BracketFinder`): starting from an initial
   value, step the parameter by a fixed increment in the direction that
   reduces the error until the statistic reaches or crosses the target.
   The unit step is tied to the log-odds / log-hazard parameterisation, in
   which one unit already moves the statistic substantially.

2. **Bisection** (:class:`BisectionRefiner`): halve the bracket, letting the
   evaluated statistic decide which bound moves, until the statistic is
   within tolerance.

Both phases are capped at ``max_iterations`` and report non-convergence
instead of returning an unconverged parameter silently. An evaluation that
raises :class:`~ps_simkit.evaluators.EvaluationError` also ends the search
unconverged, keeping the last good state as the estimate.

Known limitation: with finite samples the evaluator is only approximately
monotone. Noise can produce a spurious crossing during the bracket search
or steer the bisection into the wrong half; this is not corrected.

Usage
-----
    >>> settings = CalibrationSettings(target=0.3, tolerance=1e-4)
    >>> result = calibrate(PrevalenceEvaluator(lp, SeededSource(1)), 0.0, settings)
    >>> result.converged, result.estimated_parameter
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .evaluators import EvaluationError, Evaluator, MarginalHazardRatioEvaluator, PrevalenceEvaluator
from .random_source import SeededSource

EvaluatorLike = Union[Evaluator, Callable[[float], float]]


@dataclass(frozen=True)
class CalibrationSettings:
    """Immutable configuration of one calibration run."""

    target: float
    tolerance: float = 1e-5
    max_iterations: int = 50
    step: float = 1.0

    def __post_init__(self) -> None:
        if not math.isfinite(self.target):
            raise ValueError(f"Calibration target must be finite, got {self.target}")
        if not self.tolerance > 0:
            raise ValueError(f"Tolerance must be positive, got {self.tolerance}")
        if isinstance(self.max_iterations, bool) or not isinstance(self.max_iterations, (int, np.integer)):
            raise ValueError(f"max_iterations must be an integer, got {self.max_iterations!r}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {self.max_iterations}")
        if not self.step > 0:
            raise ValueError(f"Bracket step must be positive, got {self.step}")


@dataclass
class CalibrationState:
    """Position of the search after one iteration."""

    iteration: int
    current_param: float
    current_stat: float
    target_stat: float
    lower_bound: Optional[float] = None
    upper_bound: Optional[float] = None
    stopped: bool = False
    converged: bool = False
    phase: str = "init"

    @property
    def diff(self) -> float:
        return abs(self.current_stat - self.target_stat)

    @property
    def has_bracket(self) -> bool:
        return self.lower_bound is not None and self.upper_bound is not None

    @property
    def is_degenerate(self) -> bool:
        return self.has_bracket and self.lower_bound == self.upper_bound

    def snapshot(self) -> "CalibrationState":
        return replace(self)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase,
            'iteration': self.iteration,
            'current_param': self.current_param,
            'current_stat': self.current_stat,
            'target_stat': self.target_stat,
            'diff': self.diff,
            'lower_bound': self.lower_bound,
            'upper_bound': self.upper_bound,
            'stopped': self.stopped,
            'converged': self.converged,
        }


class EvaluationRecord:
    """Append-only audit trail of calibration states, one per iteration."""

    def __init__(self) -> None:
        self._states: List[CalibrationState] = []

    def append(self, state: CalibrationState) -> None:
        self._states.append(state.snapshot())

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[CalibrationState]:
        return iter(self._states)

    def __getitem__(self, index: int) -> CalibrationState:
        return self._states[index]

    @property
    def final(self) -> Optional[CalibrationState]:
        return self._states[-1] if self._states else None

    def to_frame(self) -> pd.DataFrame:
        columns = list(CalibrationState(0, 0.0, 0.0, 0.0).as_dict().keys())
        return pd.DataFrame([s.as_dict() for s in self._states], columns=columns)


@dataclass
class CalibrationResult:
    """Outcome of a calibration run, converged or not."""

    estimated_parameter: float
    induced_statistic: float
    target_statistic: float
    converged: bool
    bracket: Optional[Tuple[float, float]]
    bracket_iterations: int
    bisection_iterations: int
    n_evaluations: int
    history: EvaluationRecord = field(repr=False)
    message: str = ""
    elapsed_seconds: float = 0.0

    @property
    def diff(self) -> float:
        return abs(self.induced_statistic - self.target_statistic)

    def to_record(self) -> Dict[str, float]:
        """Parameter-estimate record consumed by downstream reporting."""
        return {
            'estimated_parameter': self.estimated_parameter,
            'induced_statistic': self.induced_statistic,
            'target_statistic': self.target_statistic,
        }


class CalibrationError(RuntimeError):
    """Raised when a calibration stops without converging."""

    def __init__(self, message: str, result: CalibrationResult):
        super().__init__(message)
        self.result = result


def _as_callable(evaluator: EvaluatorLike) -> Callable[[float], float]:
    if hasattr(evaluator, "evaluate"):
        return evaluator.evaluate  # type: ignore[union-attr]
    if callable(evaluator):
        return evaluator
    raise TypeError(f"Evaluator must be callable or define evaluate(), got {type(evaluator)!r}")


class _CountingEvaluator:
    """Wraps an evaluator, counting calls and rejecting non-finite output."""

    def __init__(self, evaluator: EvaluatorLike):
        self._fn = _as_callable(evaluator)
        self.calls = 0

    def __call__(self, parameter: float) -> float:
        self.calls += 1
        value = float(self._fn(float(parameter)))
        if math.isnan(value):
            raise ValueError(f"Evaluator returned NaN at parameter {parameter}")
        return value


def _log_state(tag: str, state: CalibrationState) -> None:
    lo = "None" if state.lower_bound is None else f"{state.lower_bound:.6f}"
    hi = "None" if state.upper_bound is None else f"{state.upper_bound:.6f}"
    print(
        f"[{tag}] iter={state.iteration:3d} param={state.current_param:.6f} "
        f"stat={state.current_stat:.6f} diff={state.diff:.3e} bracket=[{lo}, {hi}]"
    )


class BracketFinder:
    """Expanding search for an interval whose image straddles the target."""

    def __init__(
        self,
        evaluator: EvaluatorLike,
        settings: CalibrationSettings,
        record: Optional[EvaluationRecord] = None,
        verbose: bool = False,
    ):
        self.evaluate = evaluator if isinstance(evaluator, _CountingEvaluator) else _CountingEvaluator(evaluator)
        self.settings = settings
        self.record = record if record is not None else EvaluationRecord()
        self.verbose = verbose

    def find(self, initial_param: float) -> CalibrationState:
        """
        Search for a bracket starting at ``initial_param``.

        Returns the state at the step where the crossing was detected; its
        ``current_param`` equals one of the bounds. When the initial
        statistic equals the target exactly the bracket is the degenerate
        point ``[p, p]``. After ``max_iterations`` steps without a crossing
        the state is returned stopped and not converged, with no bracket.
        """
        target = self.settings.target
        init_param = float(initial_param)
        init_stat = self.evaluate(init_param)
        state = CalibrationState(
            iteration=0,
            current_param=init_param,
            current_stat=init_stat,
            target_stat=target,
            phase="bracket",
        )

        if init_stat == target:
            state.lower_bound = state.upper_bound = init_param
            state.stopped = state.converged = True
            self.record.append(state)
            if self.verbose:
                print(f"[Bracket] Initial parameter {init_param:.6f} matches target exactly")
            return state

        self.record.append(state)
        if self.verbose:
            _log_state("Bracket", state)

        direction = 1.0 if init_stat < target else -1.0
        previous_param = init_param

        while state.iteration < self.settings.max_iterations:
            state.iteration += 1
            next_param = previous_param + direction * self.settings.step
            next_stat = self.evaluate(next_param)
            state.current_param = next_param
            state.current_stat = next_stat

            crossed = (
                (init_stat < target and next_stat >= target)
                or (init_stat > target and next_stat <= target)
            )
            if crossed:
                if direction > 0:
                    state.lower_bound, state.upper_bound = previous_param, next_param
                else:
                    state.lower_bound, state.upper_bound = next_param, previous_param
                state.stopped = True
                state.converged = next_stat == target
            elif state.iteration >= self.settings.max_iterations:
                state.stopped = True

            self.record.append(state)
            if self.verbose:
                _log_state("Bracket", state)
            if state.stopped:
                break
            previous_param = next_param

        if not state.has_bracket and self.verbose:
            print(
                f"[Bracket] ⚠️ No crossing found after {state.iteration} steps "
                f"(last stat={state.current_stat:.6f}, target={target:.6f})"
            )
        return state


class BisectionRefiner:
    """Shrinks a bracket until the statistic is within tolerance."""

    def __init__(
        self,
        evaluator: EvaluatorLike,
        settings: CalibrationSettings,
        record: Optional[EvaluationRecord] = None,
        verbose: bool = False,
    ):
        self.evaluate = evaluator if isinstance(evaluator, _CountingEvaluator) else _CountingEvaluator(evaluator)
        self.settings = settings
        self.record = record if record is not None else EvaluationRecord()
        self.verbose = verbose

    def refine(self, state: CalibrationState) -> CalibrationState:
        """
        Bisect from a bracket state produced by :class:`BracketFinder`.

        The candidate moves by half the current bracket width from the
        current parameter, which is always one of the bounds, so each step
        lands on the bracket midpoint. The sign of ``stat - target``, not the
        midpoint rule, decides which bound is replaced. At most
        ``max_iterations`` evaluations are made.
        """
        if not state.has_bracket:
            raise ValueError("Bisection requires a bracketing state with both bounds set")

        target = self.settings.target
        tolerance = self.settings.tolerance
        state = replace(state, iteration=0, phase="bisect", stopped=False, converged=False)
        lo, hi = float(state.lower_bound), float(state.upper_bound)

        if state.is_degenerate or state.diff < tolerance:
            state.stopped = state.converged = True
            if self.verbose:
                print(f"[Bisect] Bracket endpoint already within tolerance (diff={state.diff:.3e})")
            return state

        while state.iteration < self.settings.max_iterations:
            state.iteration += 1
            step = abs(hi - lo) / 2.0
            if state.current_stat < target:
                state.current_param += step
            else:
                state.current_param -= step
            state.current_stat = self.evaluate(state.current_param)

            if state.current_stat < target:
                lo = state.current_param
            elif state.current_stat > target:
                hi = state.current_param
            state.lower_bound, state.upper_bound = lo, hi

            if state.diff < tolerance:
                state.stopped = state.converged = True
            elif state.iteration >= self.settings.max_iterations:
                state.stopped = True

            self.record.append(state)
            if self.verbose:
                _log_state("Bisect", state)
            if state.stopped:
                break

        if not state.converged and self.verbose:
            print(
                f"[Bisect] ⚠️ Not converged after {state.iteration} iterations "
                f"(best param={state.current_param:.6f}, diff={state.diff:.3e})"
            )
        return state


def calibrate(
    evaluator: EvaluatorLike,
    initial_param: float,
    settings: CalibrationSettings,
    verbose: bool = False,
    raise_on_failure: bool = False,
    label: str = "parameter",
) -> CalibrationResult:
    """
    Run the bracket search followed by bisection.

    Parameters
    ----------
    evaluator : Evaluator or callable
        Monotone increasing map from parameter to statistic.
    initial_param : float
        Starting value of the bracket search.
    settings : CalibrationSettings
        Target, tolerance, iteration cap and bracket step.
    raise_on_failure : bool
        Raise :class:`CalibrationError` instead of returning an
        unconverged result.

    Returns
    -------
    CalibrationResult
        ``converged`` distinguishes success from hitting the iteration cap.
    """
    counting = _CountingEvaluator(evaluator)
    record = EvaluationRecord()
    started = time.perf_counter()
    if verbose:
        print(
            f"[Calibrate] Calibrating {label}: target={settings.target:.6f}, "
            f"tolerance={settings.tolerance:g}, max_iterations={settings.max_iterations}"
        )

    try:
        bracket_state = BracketFinder(counting, settings, record, verbose).find(initial_param)
        bracket_iterations = bracket_state.iteration
        if bracket_state.has_bracket:
            final = BisectionRefiner(counting, settings, record, verbose).refine(bracket_state)
    except EvaluationError as exc:
        return _failed_result(
            exc, counting, record, settings, initial_param, started,
            verbose=verbose, raise_on_failure=raise_on_failure, label=label,
        )

    if not bracket_state.has_bracket:
        final = bracket_state
        bisection_iterations = 0
        message = (
            f"No crossing of target {settings.target:.6g} found within "
            f"{settings.max_iterations} bracket steps (last statistic {final.current_stat:.6g})"
        )
    else:
        bisection_iterations = final.iteration
        if final.converged:
            message = f"Converged with diff {final.diff:.3e}"
        else:
            message = (
                f"Bisection not converged after {settings.max_iterations} iterations "
                f"(diff {final.diff:.3e} >= tolerance {settings.tolerance:g})"
            )

    elapsed = time.perf_counter() - started
    result = CalibrationResult(
        estimated_parameter=final.current_param,
        induced_statistic=final.current_stat,
        target_statistic=settings.target,
        converged=final.converged,
        bracket=(final.lower_bound, final.upper_bound) if final.has_bracket else None,
        bracket_iterations=bracket_iterations,
        bisection_iterations=bisection_iterations,
        n_evaluations=counting.calls,
        history=record,
        message=message,
        elapsed_seconds=elapsed,
    )

    if verbose:
        status = "✓" if result.converged else "❌"
        print(
            f"[Calibrate] {status} {label}={result.estimated_parameter:.6f} "
            f"stat={result.induced_statistic:.6f} ({message}; "
            f"{result.n_evaluations} evaluations, {elapsed:.2f}s)"
        )

    if raise_on_failure and not result.converged:
        raise CalibrationError(f"Calibration of {label} failed: {message}", result)
    return result


def _failed_result(
    exc: EvaluationError,
    counting: _CountingEvaluator,
    record: EvaluationRecord,
    settings: CalibrationSettings,
    initial_param: float,
    started: float,
    verbose: bool,
    raise_on_failure: bool,
    label: str,
) -> CalibrationResult:
    """Stop the search at an evaluation that produced no usable statistic.

    The best estimate is the last successfully evaluated state; the failed
    evaluation is counted but adds no history row.
    """
    last = record.final
    phases = [state.phase for state in record]
    message = f"Evaluation failed at parameter {exc.parameter:.6g}: {exc}"
    result = CalibrationResult(
        estimated_parameter=last.current_param if last is not None else float(initial_param),
        induced_statistic=last.current_stat if last is not None else float("nan"),
        target_statistic=settings.target,
        converged=False,
        bracket=(last.lower_bound, last.upper_bound) if last is not None and last.has_bracket else None,
        bracket_iterations=max(phases.count("bracket") - 1, 0),
        bisection_iterations=phases.count("bisect"),
        n_evaluations=counting.calls,
        history=record,
        message=message,
        elapsed_seconds=time.perf_counter() - started,
    )
    if verbose:
        print(f"[Calibrate] ❌ {label}: {message}")
    if raise_on_failure:
        raise CalibrationError(f"Calibration of {label} failed: {message}", result)
    return result


def _as_source(seed: Union[int, SeededSource]) -> SeededSource:
    return seed if isinstance(seed, SeededSource) else SeededSource(int(seed))


def calibrate_intercept(
    linear_predictor: np.ndarray,
    target_prevalence: float,
    seed: Union[int, SeededSource],
    tolerance: float = 1e-5,
    max_iterations: int = 50,
    step: float = 1.0,
    verbose: bool = False,
    raise_on_failure: bool = False,
) -> CalibrationResult:
    """Find the logistic intercept giving the target marginal prevalence."""
    if not 0.0 < target_prevalence < 1.0:
        raise ValueError(f"Target prevalence must lie in (0, 1), got {target_prevalence}")
    evaluator = PrevalenceEvaluator(linear_predictor, _as_source(seed))
    settings = CalibrationSettings(
        target=float(target_prevalence),
        tolerance=tolerance,
        max_iterations=max_iterations,
        step=step,
    )
    return calibrate(
        evaluator, 0.0, settings,
        verbose=verbose, raise_on_failure=raise_on_failure, label="intercept",
    )


def calibrate_treatment_effect(
    linear_predictor: np.ndarray,
    target_hazard_ratio: float,
    seed: Union[int, SeededSource],
    lam: float = 0.00002,
    eta: float = 2.0,
    tolerance: float = 1e-3,
    max_iterations: int = 50,
    step: float = 1.0,
    verbose: bool = False,
    raise_on_failure: bool = False,
) -> CalibrationResult:
    """
    Find the conditional log hazard ratio giving the target marginal HR.

    The search starts at ``log(target_hazard_ratio)`` and targets the fitted
    marginal log hazard ratio, so the statistic, tolerance and returned
    parameter are all on the log scale.
    """
    if not target_hazard_ratio > 0:
        raise ValueError(f"Target hazard ratio must be positive, got {target_hazard_ratio}")
    log_target = math.log(target_hazard_ratio)
    evaluator = MarginalHazardRatioEvaluator(linear_predictor, _as_source(seed), lam=lam, eta=eta)
    settings = CalibrationSettings(
        target=log_target,
        tolerance=tolerance,
        max_iterations=max_iterations,
        step=step,
    )
    return calibrate(
        evaluator, log_target, settings,
        verbose=verbose, raise_on_failure=raise_on_failure, label="log_hazard_ratio",
    )
