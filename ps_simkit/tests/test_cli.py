from __future__ import annotations

import json
from pathlib import Path

import pytest

from ps_simkit.calibration import CalibrationError
from ps_simkit.cli import run_cli


def test_prevalence_task_exports_history(tmp_path: Path) -> None:
    result = run_cli([
        "--task", "prevalence", "--n-obs", "2000", "--target", "0.3",
        "--results-dir", str(tmp_path), "--quiet",
    ])
    assert result.converged
    assert result.induced_statistic == pytest.approx(0.3, abs=1e-4)
    assert (tmp_path / "history_prevalence.csv").exists()
    record = json.loads((tmp_path / "parameter_estimate_prevalence.json").read_text(encoding="utf-8"))
    assert record["target_statistic"] == 0.3
    assert record["converged"] is True


def test_hazard_task_with_profile() -> None:
    result = run_cli([
        "--task", "hazard", "--profile", "intercept_only", "--n-obs", "1500",
        "--target", "0.5", "--quiet",
    ])
    assert result.converged
    assert result.target_statistic == pytest.approx(-0.6931471805599453)


def test_list_profiles(capsys) -> None:
    assert run_cli(["--list-profiles"]) is None
    captured = capsys.readouterr().out
    assert "strong_confounding" in captured


def test_dump_config(tmp_path: Path) -> None:
    dump = tmp_path / "config" / "resolved.json"
    run_cli([
        "--task", "prevalence", "--n-obs", "400", "--seed", "3",
        "--dump-config", str(dump), "--quiet",
    ])
    payload = json.loads(dump.read_text(encoding="utf-8"))
    assert payload["RANDOM_SEED"] == 3
    assert payload["N_OBS"] == 400


def test_non_convergence_raises(capsys) -> None:
    with pytest.raises(CalibrationError):
        run_cli([
            "--task", "prevalence", "--n-obs", "500", "--target", "0.01",
            "--max-iterations", "1", "--quiet",
        ])
    assert "did not converge" in capsys.readouterr().out


def test_unknown_profile_raises() -> None:
    with pytest.raises(KeyError):
        run_cli(["--task", "prevalence", "--profile", "nope", "--quiet"])
