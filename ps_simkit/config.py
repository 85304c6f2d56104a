"""
Simulation configuration dataclass and scenario profiles for ps_simkit.

A :class:`SimulationConfig` captures everything one synthetic cohort
depends on: cohort size and covariate structure, the treatment and outcome
models, the calibration targets and their convergence settings, and the
propensity-score estimators. Every run stores a snapshot of its
configuration so results can be replicated exactly.

Scenario profiles bundle overrides for commonly studied designs (no
confounding, moderate and strong confounding) and can be extended with JSON
files.

Usage
-----
Basic configuration:

    >>> config = SimulationConfig()
    >>> config = config.copy_with_overrides({"N_OBS": 20_000})

With a scenario profile:

    >>> profile = get_scenario_profile("strong_confounding")
    >>> config = apply_scenario_profile(SimulationConfig(), profile)
"""

from __future__ import annotations

import copy
import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class SimulationConfig:
    """Complete configuration of one simulated cohort and its calibrations."""

    # Cohort and covariates
    N_OBS: int = 10_000
    N_COVARIATES: int = 4
    N_BINARY: int = 2
    CORRELATION: Any = 0.2  # scalar (exchangeable) or full matrix
    BLOCK_SIZE: int = 100_000
    RANDOM_SEED: int = 20240501

    # Log odds ratios of the treatment (propensity) model
    TREATMENT_COEFFICIENTS: Dict[str, float] = field(
        default_factory=lambda: {"x1": 0.4, "x2": 0.4, "x3": 0.4, "x4": 0.4}
    )
    # Log hazard ratios of the outcome model
    OUTCOME_COEFFICIENTS: Dict[str, float] = field(
        default_factory=lambda: {"x1": 0.4, "x2": 0.4, "x3": 0.4, "x4": 0.4}
    )

    # Calibration targets
    TARGET_PREVALENCE: float = 0.25
    TARGET_HAZARD_RATIO: float = 2.0

    # Weibull baseline hazard h0(t) = lam * eta * t^(eta - 1)
    WEIBULL_LAMBDA: float = 0.00002
    WEIBULL_ETA: float = 2.0
    CENSOR_TIME: Optional[float] = None  # administrative censoring time

    # Calibration settings
    PREVALENCE_TOLERANCE: float = 1e-4
    HAZARD_TOLERANCE: float = 1e-3
    MAX_ITERATIONS: int = 50
    BRACKET_STEP: float = 1.0

    # Propensity-score estimators
    MATCH_CALIPER: Optional[float] = 0.2
    MATCH_WITH_REPLACEMENT: bool = False
    IPW_TRIM_QUANTILE: Optional[float] = None

    verbose: bool = True

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` for settings no simulation can satisfy."""
        if self.N_OBS < 2:
            raise ValueError(f"N_OBS must be at least 2, got {self.N_OBS}")
        if self.N_COVARIATES < 1:
            raise ValueError(f"N_COVARIATES must be at least 1, got {self.N_COVARIATES}")
        if not 0 <= self.N_BINARY <= self.N_COVARIATES:
            raise ValueError(
                f"N_BINARY must lie in [0, N_COVARIATES={self.N_COVARIATES}], got {self.N_BINARY}"
            )
        if not 0.0 < self.TARGET_PREVALENCE < 1.0:
            raise ValueError(f"TARGET_PREVALENCE must lie in (0, 1), got {self.TARGET_PREVALENCE}")
        if self.TARGET_HAZARD_RATIO <= 0:
            raise ValueError(f"TARGET_HAZARD_RATIO must be positive, got {self.TARGET_HAZARD_RATIO}")
        if self.WEIBULL_LAMBDA <= 0 or self.WEIBULL_ETA <= 0:
            raise ValueError("Weibull scale and shape must be positive")
        if self.CENSOR_TIME is not None and self.CENSOR_TIME <= 0:
            raise ValueError(f"CENSOR_TIME must be positive when set, got {self.CENSOR_TIME}")
        if self.PREVALENCE_TOLERANCE <= 0 or self.HAZARD_TOLERANCE <= 0:
            raise ValueError("Calibration tolerances must be positive")
        if self.MAX_ITERATIONS < 1:
            raise ValueError(f"MAX_ITERATIONS must be at least 1, got {self.MAX_ITERATIONS}")
        if self.BRACKET_STEP <= 0:
            raise ValueError(f"BRACKET_STEP must be positive, got {self.BRACKET_STEP}")
        columns = set(self.covariate_names)
        for label, coefs in (
            ("TREATMENT_COEFFICIENTS", self.TREATMENT_COEFFICIENTS),
            ("OUTCOME_COEFFICIENTS", self.OUTCOME_COEFFICIENTS),
        ):
            unknown = sorted(set(coefs) - columns)
            if unknown:
                raise ValueError(f"{label} refers to unknown covariates: {unknown}")

    @property
    def covariate_names(self) -> List[str]:
        return [f"x{i + 1}" for i in range(self.N_COVARIATES)]

    def snapshot(self) -> Dict[str, Any]:
        """Return a deep-copied, JSON-safe representation of the configuration."""
        payload = asdict(self)
        corr = payload.get("CORRELATION")
        if hasattr(corr, "tolist"):
            payload["CORRELATION"] = corr.tolist()
        return payload

    def copy_with_overrides(self, overrides: Optional[Dict[str, Any]] = None) -> "SimulationConfig":
        """Return a new, validated config with the provided overrides merged in."""
        new_cfg = copy.deepcopy(self)
        if overrides:
            _apply_overrides(new_cfg, overrides)
        new_cfg.validate()
        return new_cfg


def _apply_overrides(config: SimulationConfig, overrides: Dict[str, Any]) -> None:
    """Recursively merge ``overrides`` into ``config``.

    Coefficient dictionaries are replaced wholesale so that a scenario can
    drop covariates from a model; dotted keys such as
    ``"OUTCOME_COEFFICIENTS.x1"`` update a single entry.
    """
    REPLACE_KEYS = {"TREATMENT_COEFFICIENTS", "OUTCOME_COEFFICIENTS"}

    for key, value in overrides.items():
        if "." in key:
            top, *rest = key.split(".")
            if not hasattr(config, top):
                raise KeyError(f"Unknown configuration attribute '{top}' in override.")
            current = getattr(config, top)
            if not isinstance(current, dict):
                raise KeyError(f"Attribute '{top}' is not a dictionary; cannot set '{key}'.")
            ref = current
            for part in rest[:-1]:
                if part not in ref or not isinstance(ref[part], dict):
                    ref[part] = {}
                ref = ref[part]
            ref[rest[-1]] = copy.deepcopy(value)
            setattr(config, top, current)
            continue
        if not hasattr(config, key):
            raise KeyError(f"Unknown configuration attribute '{key}' in override.")
        current = getattr(config, key)
        if key in REPLACE_KEYS:
            setattr(config, key, copy.deepcopy(value))
        elif isinstance(current, dict) and isinstance(value, dict):
            setattr(config, key, _deep_merge_dict(current, value))
        else:
            setattr(config, key, copy.deepcopy(value))


def _deep_merge_dict(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries without mutating the originals."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge_dict(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass(frozen=True)
class ScenarioProfile:
    """Reusable bundle of configuration overrides."""

    name: str
    description: str
    overrides: Dict[str, Any] = field(default_factory=dict)
    source: str = "built-in"

    def to_metadata(self) -> Dict[str, Any]:
        """Return a serializable summary for run artefacts."""
        return {
            "name": self.name,
            "description": self.description,
            "source": self.source,
            "overrides": copy.deepcopy(self.overrides),
        }


SCENARIO_LIBRARY: Dict[str, ScenarioProfile] = {
    "intercept_only": ScenarioProfile(
        name="intercept_only",
        description="No covariate effects: marginal and conditional effects coincide.",
        overrides={
            "TREATMENT_COEFFICIENTS": {},
            "OUTCOME_COEFFICIENTS": {},
            "TARGET_PREVALENCE": 0.5,
        },
    ),
    "moderate_confounding": ScenarioProfile(
        name="moderate_confounding",
        description="Four confounders with log odds/hazard ratios of log(1.5).",
        overrides={
            "TREATMENT_COEFFICIENTS": {"x1": 0.405, "x2": 0.405, "x3": 0.405, "x4": 0.405},
            "OUTCOME_COEFFICIENTS": {"x1": 0.405, "x2": 0.405, "x3": 0.405, "x4": 0.405},
        },
    ),
    "strong_confounding": ScenarioProfile(
        name="strong_confounding",
        description="Four confounders with log odds/hazard ratios of log(2.5); low treatment prevalence.",
        overrides={
            "TREATMENT_COEFFICIENTS": {"x1": 0.916, "x2": 0.916, "x3": 0.916, "x4": 0.916},
            "OUTCOME_COEFFICIENTS": {"x1": 0.916, "x2": 0.916, "x3": 0.916, "x4": 0.916},
            "TARGET_PREVALENCE": 0.1,
        },
    ),
}


def apply_scenario_profile(config: SimulationConfig, profile: Optional[ScenarioProfile]) -> SimulationConfig:
    """Return a config with the profile overrides applied."""
    if profile is None:
        return config
    return config.copy_with_overrides(profile.overrides)


def list_scenario_profiles() -> List[ScenarioProfile]:
    """Return the available built-in scenario profiles."""
    return list(SCENARIO_LIBRARY.values())


def get_scenario_profile(name: str) -> ScenarioProfile:
    """Fetch a built-in scenario profile by name (case-insensitive)."""
    normalized = name.strip().lower()
    for profile in SCENARIO_LIBRARY.values():
        if profile.name.lower() == normalized:
            return profile
    raise KeyError(f"Unknown scenario profile '{name}'. Available: {', '.join(SCENARIO_LIBRARY.keys())}")


def load_scenario_profile(path: str | os.PathLike[str]) -> ScenarioProfile:
    """Load a scenario profile definition from a JSON file."""
    file_path = Path(path).expanduser().resolve()
    if not file_path.exists():
        raise FileNotFoundError(f"Scenario file not found: {file_path}")
    with file_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    overrides = payload.get("overrides") or payload.get("parameters") or {}
    if not isinstance(overrides, dict):
        raise ValueError(f"Scenario file {file_path} must define an 'overrides' dictionary.")
    name = payload.get("name") or file_path.stem
    description = payload.get("description", f"Custom scenario loaded from {file_path.name}")
    return ScenarioProfile(
        name=name,
        description=description,
        overrides=overrides,
        source=str(file_path),
    )
