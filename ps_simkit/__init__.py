"""Public API for the ps_simkit package.

Simulation toolkit for propensity-score methodology research: synthetic
cohorts whose treatment prevalence and marginal hazard ratio are calibrated
to known values, and the matching/weighting estimators evaluated against
them.
"""

__version__ = "1.0.0"

from .calibration import (
    BisectionRefiner,
    BracketFinder,
    CalibrationError,
    CalibrationResult,
    CalibrationSettings,
    CalibrationState,
    EvaluationRecord,
    calibrate,
    calibrate_intercept,
    calibrate_treatment_effect,
)
from .config import (
    SimulationConfig,
    ScenarioProfile,
    apply_scenario_profile,
    get_scenario_profile,
    list_scenario_profiles,
    load_scenario_profile,
)
from .covariates import generate_covariates, linear_predictor
from .evaluators import EvaluationError, Evaluator, MarginalHazardRatioEvaluator, PrevalenceEvaluator
from .random_source import SeededSource
from .simulation import CohortSimulation
from .utils import stable_sigmoid

__all__ = [
    "__version__",
    "BisectionRefiner",
    "BracketFinder",
    "CalibrationError",
    "CalibrationResult",
    "CalibrationSettings",
    "CalibrationState",
    "EvaluationRecord",
    "calibrate",
    "calibrate_intercept",
    "calibrate_treatment_effect",
    "SimulationConfig",
    "ScenarioProfile",
    "apply_scenario_profile",
    "get_scenario_profile",
    "list_scenario_profiles",
    "load_scenario_profile",
    "generate_covariates",
    "linear_predictor",
    "EvaluationError",
    "Evaluator",
    "MarginalHazardRatioEvaluator",
    "PrevalenceEvaluator",
    "SeededSource",
    "CohortSimulation",
    "stable_sigmoid",
]
