"""Runtime configuration for SCCS interval construction and diagnostics."""

from __future__ import annotations

import os

from .errors import SccsConfigurationError

REQUIRED_CASE_COLUMNS = [
    "case_id",
    "person_id",
    "age_in_days",
    "start_date",
    "observation_days",
]

REQUIRED_ERA_COLUMNS = [
    "case_id",
    "era_type",
    "era_id",
    "start_day",
    "end_day",
]

ERA_TYPES = ("outcome", "exposure", "custom")

# Covariate id bands. Era covariates are numbered upward from ERA_COVARIATE_ID_START.
SPLINE_COVARIATE_ID_START = {
    "age": 100,
    "season": 200,
    "calendar time": 300,
}
ERA_COVARIATE_ID_START = 1000

CONFIG = {
    # Inputs for main(); library callers pass a data source directly.
    "cases_path": os.environ.get("SCCS_CASES_PATH", ""),
    "eras_path": os.environ.get("SCCS_ERAS_PATH", ""),
    "era_ref_path": os.environ.get("SCCS_ERA_REF_PATH", ""),
    "outcome_id": int(os.environ["SCCS_OUTCOME_ID"]) if os.environ.get("SCCS_OUTCOME_ID") else None,
    "exposure_id": int(os.environ["SCCS_EXPOSURE_ID"]) if os.environ.get("SCCS_EXPOSURE_ID") else None,
    "naive_period": int(os.environ.get("SCCS_NAIVE_PERIOD", "0")),
    # Persons per batch; all observation periods of a person share a batch.
    "batch_size": int(os.environ.get("SCCS_BATCH_SIZE", "10000")),
    "max_workers": int(os.environ.get("SCCS_MAX_WORKERS", "1")),
    "max_in_flight_batches": 4,
    "days_per_month": 30.5,
    "days_per_year": 365.25,
    "spline_knot_quantile_range": (0.01, 0.99),
    "censor_model_quadrature_nodes": 8,
    "censor_model_min_interval_days": 0.5,
    "mdrr_alpha": 0.05,
    "mdrr_power": 0.80,
    "mdrr_two_sided": True,
    "mdrr_method": "binomial",
    "pre_exposure_days": 30,
    "time_stability_max_ratio": 1.25,
    "time_stability_alpha": 0.05,
    "time_to_event_weeks": 26,
}


def resolve_config(config: dict | None = None) -> dict:
    """CONFIG with the caller's overrides applied."""
    return {**CONFIG, **(config or {})}


def validate_config(config: dict) -> None:
    if int(config.get("batch_size", 0)) < 1:
        raise SccsConfigurationError(f"batch_size must be >= 1; got {config.get('batch_size')}.")
    if int(config.get("max_workers", 0)) < 1:
        raise SccsConfigurationError(f"max_workers must be >= 1; got {config.get('max_workers')}.")
    if float(config.get("days_per_month", 0)) <= 0:
        raise SccsConfigurationError("days_per_month must be positive.")
    alpha = float(config.get("mdrr_alpha", 0.05))
    power = float(config.get("mdrr_power", 0.8))
    if not 0.0 < alpha < 1.0 or not 0.0 < power < 1.0:
        raise SccsConfigurationError(f"mdrr_alpha and mdrr_power must lie in (0, 1); got {alpha}, {power}.")
    if str(config.get("mdrr_method", "binomial")) not in ("binomial", "poisson"):
        raise SccsConfigurationError(f"mdrr_method must be 'binomial' or 'poisson'; got {config.get('mdrr_method')!r}.")
    if int(config.get("pre_exposure_days", 30)) < 1:
        raise SccsConfigurationError("pre_exposure_days must be >= 1.")
    if float(config.get("time_stability_max_ratio", 1.25)) < 1.0:
        raise SccsConfigurationError("time_stability_max_ratio must be >= 1.")
    if int(config.get("time_to_event_weeks", 26)) < 1:
        raise SccsConfigurationError("time_to_event_weeks must be >= 1.")
