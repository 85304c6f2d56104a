"""Descriptive tables and calibration diagnostics for ps_simkit."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .calibration import CalibrationResult, EvaluationRecord
from .causal.propensity import balance_table

PHASE_PALETTE = {'bracket': '#3498db', 'bisect': '#e74c3c'}


def summarize_cohort(
    cohort: pd.DataFrame,
    treatment_col: str = 'treatment',
    covariates: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Baseline characteristics by treatment arm ("Table 1").

    Continuous covariates are summarised by mean and SD, binary (0/1)
    covariates by proportion; the last column is the standardized mean
    difference between arms.
    """
    if treatment_col not in cohort.columns:
        raise ValueError(f"Treatment column '{treatment_col}' not found")
    if covariates is None:
        covariates = [c for c in cohort.columns if c.startswith('x')]

    smd = balance_table(cohort, treatment_col, covariates).set_index('covariate')['smd']
    rows = []
    for cov in covariates:
        values = cohort[cov]
        is_binary = set(np.unique(values)) <= {0, 1}
        row = {'covariate': cov, 'type': 'binary' if is_binary else 'continuous'}
        for arm, label in ((1, 'treated'), (0, 'control')):
            arm_values = values[cohort[treatment_col] == arm]
            row[f'{label}_mean'] = float(arm_values.mean())
            row[f'{label}_sd'] = float(arm_values.std()) if not is_binary else np.nan
        row['smd'] = float(smd[cov])
        rows.append(row)

    summary = pd.DataFrame(rows)
    summary.attrs['n_treated'] = int((cohort[treatment_col] == 1).sum())
    summary.attrs['n_control'] = int((cohort[treatment_col] == 0).sum())
    return summary


def plot_calibration_history(
    history: Union[CalibrationResult, EvaluationRecord, pd.DataFrame],
    path: Union[str, Path],
    title: str = "Calibration history",
) -> Path:
    """
    Plot the statistic and the bracket per iteration and save to ``path``.

    Top panel: induced statistic against the target. Bottom panel:
    candidate parameter with the bracket bounds once they exist.
    """
    if isinstance(history, CalibrationResult):
        history = history.history
    frame = history.to_frame() if isinstance(history, EvaluationRecord) else history.copy()
    if frame.empty:
        raise ValueError("Calibration history is empty; nothing to plot")
    frame['step'] = np.arange(len(frame))

    sns.set_style('whitegrid')
    fig, axes = plt.subplots(2, 1, figsize=(9, 7), sharex=True, constrained_layout=True)

    sns.lineplot(data=frame, x='step', y='current_stat', color='#34495e', ax=axes[0], zorder=1)
    sns.scatterplot(data=frame, x='step', y='current_stat', hue='phase',
                    palette=PHASE_PALETTE, ax=axes[0], s=40, zorder=2)
    axes[0].axhline(frame['target_stat'].iloc[0], color='black', linestyle='--', linewidth=1, label='target')
    axes[0].set_ylabel('Induced statistic')
    axes[0].set_title(title)
    axes[0].legend(loc='best')

    axes[1].plot(frame['step'], frame['current_param'], marker='o', color='#34495e', label='parameter')
    bounded = frame.dropna(subset=['lower_bound', 'upper_bound'])
    if not bounded.empty:
        axes[1].fill_between(
            bounded['step'],
            bounded['lower_bound'].astype(float),
            bounded['upper_bound'].astype(float),
            color='#95a5a6', alpha=0.3, label='bracket',
        )
    axes[1].set_xlabel('Evaluation')
    axes[1].set_ylabel('Parameter')
    axes[1].legend(loc='best')

    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(target, dpi=150)
    plt.close(fig)
    return target
