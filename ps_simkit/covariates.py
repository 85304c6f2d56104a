"""
Baseline covariate generation for synthetic cohorts.

Covariates are drawn from a zero-mean, unit-variance multivariate normal
distribution with a user supplied correlation structure. A prefix of the
columns can be dichotomised at zero to obtain binary characteristics with
prevalence 0.5. Large cohorts are generated block by block and
concatenated so that no single draw has to hold the full cohort in the
sampler's working memory.
"""

from __future__ import annotations

from typing import Mapping, Optional, Union

import numpy as np
import pandas as pd

CorrelationSpec = Union[float, np.ndarray]


def build_correlation_matrix(n_vars: int, correlation: CorrelationSpec) -> np.ndarray:
    """Return a validated ``n_vars x n_vars`` correlation matrix.

    A scalar gives an exchangeable structure (the same correlation between
    every pair of covariates).
    """
    if n_vars < 1:
        raise ValueError(f"At least one covariate is required, got {n_vars}")

    if np.isscalar(correlation):
        rho = float(correlation)
        matrix = np.full((n_vars, n_vars), rho)
        np.fill_diagonal(matrix, 1.0)
    else:
        matrix = np.asarray(correlation, dtype=float)

    if matrix.shape != (n_vars, n_vars):
        raise ValueError(
            f"Correlation matrix must be {n_vars}x{n_vars}, got {matrix.shape}"
        )
    if not np.allclose(matrix, matrix.T):
        raise ValueError("Correlation matrix must be symmetric")
    if not np.allclose(np.diag(matrix), 1.0):
        raise ValueError("Correlation matrix must have a unit diagonal")
    if np.any(np.abs(matrix) > 1.0 + 1e-12):
        raise ValueError("Correlations must lie in [-1, 1]")
    if np.linalg.eigvalsh(matrix).min() < -1e-10:
        raise ValueError("Correlation matrix must be positive semi-definite")
    return matrix


def generate_covariates(
    n_obs: int,
    n_vars: int,
    correlation: CorrelationSpec = 0.0,
    seed: Optional[Union[int, np.random.SeedSequence]] = None,
    n_binary: int = 0,
    block_size: int = 100_000,
    prefix: str = "x",
) -> pd.DataFrame:
    """
    Simulate correlated standard-normal covariates.

    Parameters
    ----------
    n_obs : int
        Number of observations (rows).
    n_vars : int
        Number of covariates (columns), named ``{prefix}1 .. {prefix}k``.
    correlation : float or ndarray
        Exchangeable correlation or a full correlation matrix.
    seed : int or numpy.random.SeedSequence, optional
        Seed for the generator; the same seed and block size always yield
        the same table.
    n_binary : int
        Number of leading columns dichotomised at zero.
    block_size : int
        Maximum number of rows drawn per block.

    Returns
    -------
    pd.DataFrame
        ``n_obs`` rows, one column per covariate.
    """
    if n_obs < 1:
        raise ValueError(f"n_obs must be positive, got {n_obs}")
    if not 0 <= n_binary <= n_vars:
        raise ValueError(f"n_binary must be between 0 and {n_vars}, got {n_binary}")
    if block_size < 1:
        raise ValueError(f"block_size must be positive, got {block_size}")

    matrix = build_correlation_matrix(n_vars, correlation)
    rng = np.random.default_rng(seed)
    mean = np.zeros(n_vars)

    blocks = []
    remaining = n_obs
    while remaining > 0:
        size = min(block_size, remaining)
        blocks.append(rng.multivariate_normal(mean, matrix, size=size, method="eigh"))
        remaining -= size
    values = np.concatenate(blocks, axis=0)

    columns = [f"{prefix}{i + 1}" for i in range(n_vars)]
    frame = pd.DataFrame(values, columns=columns)
    for col in columns[:n_binary]:
        frame[col] = (frame[col] > 0).astype(int)
    return frame


def linear_predictor(frame: pd.DataFrame, coefficients: Mapping[str, float]) -> np.ndarray:
    """Weighted sum of covariates, excluding any intercept or treatment term."""
    lp = np.zeros(len(frame), dtype=float)
    for col, coef in coefficients.items():
        if col not in frame.columns:
            raise KeyError(f"Unknown covariate '{col}' in linear predictor")
        lp += float(coef) * frame[col].to_numpy(dtype=float)
    return lp
