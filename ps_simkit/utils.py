"""Numerical helpers shared by the evaluators and estimators."""

from __future__ import annotations

from typing import Any

import numpy as np

# Largest/smallest log value whose exponential is a finite, non-zero double.
LOG_FLOAT_MAX = 709.0
LOG_FLOAT_MIN = -708.0


def stable_sigmoid(x: Any) -> Any:
    """Numerically stable logistic function without hard clipping.

    Large negative inputs saturate to 0 and large positive inputs to 1
    instead of overflowing in ``exp``.
    """
    arr = np.asarray(x, dtype=float)
    if arr.ndim == 0:
        val = float(arr)
        if val >= 0:
            return float(1.0 / (1.0 + np.exp(-val)))
        exp_val = np.exp(val)
        return float(exp_val / (1.0 + exp_val))
    result = np.empty_like(arr, dtype=float)
    positive_mask = arr >= 0
    if np.any(positive_mask):
        result[positive_mask] = 1.0 / (1.0 + np.exp(-arr[positive_mask]))
    negative_mask = ~positive_mask
    if np.any(negative_mask):
        exp_x = np.exp(arr[negative_mask])
        result[negative_mask] = exp_x / (1.0 + exp_x)
    return result


def safe_logit(p: Any, eps: float = 1e-12) -> Any:
    """Log-odds of ``p`` with the probabilities clipped away from 0 and 1."""
    arr = np.clip(np.asarray(p, dtype=float), eps, 1.0 - eps)
    result = np.log(arr) - np.log1p(-arr)
    if np.isscalar(p):
        return float(result)
    return result


def bounded_exp(log_value: Any) -> Any:
    """Exponentiate a log-scale quantity, saturating at the float range.

    The result is always strictly positive and finite, which keeps event
    times usable by the partial-likelihood fitter.
    """
    arr = np.clip(np.asarray(log_value, dtype=float), LOG_FLOAT_MIN, LOG_FLOAT_MAX)
    result = np.exp(arr)
    if np.isscalar(log_value):
        return float(result)
    return result
