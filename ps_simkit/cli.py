"""Command-line entry points for ps_simkit calibration and cohort runs."""

from __future__ import annotations

import argparse
import json
import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .calibration import (
    CalibrationError,
    CalibrationResult,
    calibrate_intercept,
    calibrate_treatment_effect,
)
from .config import (
    ScenarioProfile,
    SimulationConfig,
    apply_scenario_profile,
    get_scenario_profile,
    list_scenario_profiles,
    load_scenario_profile,
)
from .covariates import generate_covariates, linear_predictor
from .random_source import SeededSource
from .simulation import (
    COVARIATE_STREAM,
    OUTCOME_CALIBRATION_STREAM,
    TREATMENT_CALIBRATION_STREAM,
    CohortSimulation,
)


def suppress_runtime_warnings() -> None:
    """Silence convergence chatter from repeated Cox fits."""
    warnings.filterwarnings("ignore", category=RuntimeWarning, module="numpy")
    warnings.filterwarnings("ignore", module="lifelines")


def _print_profile_catalog() -> None:
    """Display the registered scenario profiles."""
    catalog: List[ScenarioProfile] = sorted(
        list_scenario_profiles(), key=lambda profile: profile.name.lower()
    )
    print("Available scenario profiles:")
    for profile in catalog:
        print(f"  - {profile.name}: {profile.description}")


def _write_config_dump(config: SimulationConfig, destination: str) -> Path:
    """Persist the resolved configuration to ``destination``."""
    target = Path(destination).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        json.dump(config.snapshot(), handle, indent=2, sort_keys=True)
    print(f"[CLI] Wrote configuration snapshot to {target}")
    return target


def _build_config(args: argparse.Namespace) -> Tuple[SimulationConfig, Optional[ScenarioProfile]]:
    """Resolve the configuration and the last scenario profile applied to it."""
    config = SimulationConfig(verbose=not args.quiet)
    profile: Optional[ScenarioProfile] = None
    if args.profile:
        profile = get_scenario_profile(args.profile)
        config = apply_scenario_profile(config, profile)
    if args.profile_file:
        profile = load_scenario_profile(args.profile_file)
        config = apply_scenario_profile(config, profile)

    overrides: Dict[str, Any] = {}
    if args.seed is not None:
        overrides["RANDOM_SEED"] = args.seed
    if args.n_obs is not None:
        overrides["N_OBS"] = args.n_obs
    if args.max_iterations is not None:
        overrides["MAX_ITERATIONS"] = args.max_iterations
    if args.target is not None:
        key = "TARGET_HAZARD_RATIO" if args.task == "hazard" else "TARGET_PREVALENCE"
        overrides[key] = args.target
    if args.tolerance is not None:
        key = "HAZARD_TOLERANCE" if args.task == "hazard" else "PREVALENCE_TOLERANCE"
        overrides[key] = args.tolerance
    return config.copy_with_overrides(overrides), profile


def run_single_calibration(config: SimulationConfig, task: str) -> CalibrationResult:
    """Calibrate one parameter on a freshly simulated covariate table.

    Covariates and calibration draws use the same streams as the matching
    stages of a cohort run with this configuration.
    """
    source = SeededSource(int(config.RANDOM_SEED))
    covariates = generate_covariates(
        config.N_OBS,
        config.N_COVARIATES,
        correlation=config.CORRELATION,
        seed=source.spawn(COVARIATE_STREAM).seed_sequence(),
        n_binary=config.N_BINARY,
        block_size=config.BLOCK_SIZE,
    )
    if task == "prevalence":
        lp = linear_predictor(covariates, config.TREATMENT_COEFFICIENTS)
        return calibrate_intercept(
            lp,
            config.TARGET_PREVALENCE,
            seed=source.spawn(TREATMENT_CALIBRATION_STREAM),
            tolerance=config.PREVALENCE_TOLERANCE,
            max_iterations=config.MAX_ITERATIONS,
            step=config.BRACKET_STEP,
            verbose=config.verbose,
        )
    if task == "hazard":
        lp = linear_predictor(covariates, config.OUTCOME_COEFFICIENTS)
        return calibrate_treatment_effect(
            lp,
            config.TARGET_HAZARD_RATIO,
            seed=source.spawn(OUTCOME_CALIBRATION_STREAM),
            lam=config.WEIBULL_LAMBDA,
            eta=config.WEIBULL_ETA,
            tolerance=config.HAZARD_TOLERANCE,
            max_iterations=config.MAX_ITERATIONS,
            step=config.BRACKET_STEP,
            verbose=config.verbose,
        )
    raise ValueError(f"Unknown calibration task: {task}")


def _export_calibration(result: CalibrationResult, results_dir: str, task: str) -> Dict[str, str]:
    out = Path(results_dir).expanduser()
    out.mkdir(parents=True, exist_ok=True)
    history_path = out / f"history_{task}.csv"
    result.history.to_frame().to_csv(history_path, index=False)
    record_path = out / f"parameter_estimate_{task}.json"
    with record_path.open("w", encoding="utf-8") as handle:
        json.dump(
            {**result.to_record(), "converged": result.converged, "message": result.message},
            handle, indent=2,
        )
    return {"history": str(history_path), "record": str(record_path)}


def _parse_cli_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Propensity-score simulation calibration launcher")
    parser.add_argument(
        "--task",
        choices=["prevalence", "hazard", "cohort"],
        default="cohort",
        help="Calibrate a treatment prevalence, a marginal hazard ratio, or simulate a full cohort.",
    )
    parser.add_argument("--profile", help="Apply a built-in scenario profile.")
    parser.add_argument("--profile-file", help="Apply a scenario profile from a JSON file.")
    parser.add_argument(
        "--list-profiles",
        action="store_true",
        help="List the built-in scenario profiles and exit.",
    )
    parser.add_argument("--seed", type=int, help="Override the random seed.")
    parser.add_argument("--n-obs", type=int, help="Override the number of observations.")
    parser.add_argument(
        "--target",
        type=float,
        help="Target prevalence (prevalence/cohort tasks) or marginal hazard ratio (hazard task).",
    )
    parser.add_argument("--tolerance", type=float, help="Convergence tolerance on the statistic.")
    parser.add_argument("--max-iterations", type=int, help="Iteration cap for each search phase.")
    parser.add_argument("--results-dir", help="Directory for exported artefacts.")
    parser.add_argument("--plot", action="store_true", help="Save calibration history plots.")
    parser.add_argument("--dump-config", help="Write the resolved configuration to this JSON path.")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output.")
    return parser.parse_args(list(argv) if argv is not None else None)


def run_cli(argv: Optional[Iterable[str]] = None) -> Any:
    """Parse arguments and run the selected task."""
    args = _parse_cli_args(argv)
    if args.list_profiles:
        _print_profile_catalog()
        return None

    suppress_runtime_warnings()
    config, profile = _build_config(args)
    if config.verbose:
        print(f"[CLI] Task: {args.task} (seed={config.RANDOM_SEED}, n={config.N_OBS})")
    if args.dump_config:
        _write_config_dump(config, args.dump_config)

    if args.task in ("prevalence", "hazard"):
        result = run_single_calibration(config, args.task)
        if args.results_dir:
            files = _export_calibration(result, args.results_dir, args.task)
            if args.plot:
                from .analysis import plot_calibration_history
                files["plot"] = str(plot_calibration_history(
                    result, Path(args.results_dir) / f"history_{args.task}.png",
                    title=f"{args.task} calibration",
                ))
            if config.verbose:
                print(f"[CLI] Results: {files}")
        if not result.converged:
            print(f"[CLI] ❌ Calibration did not converge: {result.message}")
            raise CalibrationError(result.message, result)
        if config.verbose:
            print("[CLI] ✅ Task completed.")
        return result

    try:
        outputs = CohortSimulation(config, output_dir=args.results_dir, profile=profile).run()
    except CalibrationError as exc:
        print(f"[CLI] ❌ Cohort task failed: {exc}")
        raise
    if args.plot and args.results_dir:
        from .analysis import plot_calibration_history
        for name, history in outputs['histories'].items():
            plot_calibration_history(history, Path(args.results_dir) / f"history_{name}.png", title=name)
    if config.verbose:
        print(outputs['estimates'].to_string(index=False))
        print("[CLI] ✅ Task completed.")
    return outputs


def main(argv: Optional[Iterable[str]] = None) -> int:  # pragma: no cover - thin wrapper
    try:
        run_cli(argv=argv)
    except CalibrationError:
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = [
    "run_cli",
    "run_single_calibration",
    "suppress_runtime_warnings",
]
