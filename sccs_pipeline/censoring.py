"""Parametric models for event-dependent end of observation, and the resulting segment time weights."""

from __future__ import annotations

import logging
import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import date

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import minimize

from .config import resolve_config
from .errors import CensorModelWarning
from .interval_data import SccsIntervalData
from .settings import CensoringSettings, CensorModelType
from .study_population import StudyPopulation

# Parameters are fitted on the log scale within these bounds.
LOG_PARAMETER_BOUNDS = (-12.0, 12.0)
SLOPE_BOUNDS = (-5.0, 5.0)


@dataclass(frozen=True)
class CensorModel:
    model_type: CensorModelType
    parameters: tuple[float, ...]
    log_likelihood: float
    n_cases: int
    min_interval: float = 0.5 / 365.25

    @property
    def label(self) -> str:
        return self.model_type.label

    def log_density(self, event_age: np.ndarray, end_age: np.ndarray, censored: np.ndarray) -> np.ndarray:
        return _log_terms(self.model_type, np.asarray(self.parameters), event_age, end_age, censored, self.min_interval)


def _distribution(family: str, shape: float, scale: np.ndarray):
    if family == "weibull":
        return stats.weibull_min(shape, scale=scale)
    return stats.gamma(shape, scale=scale)


def _log_terms(
    model_type: CensorModelType,
    params: np.ndarray,
    event_age: np.ndarray,
    end_age: np.ndarray,
    censored: np.ndarray,
    min_interval: float,
) -> np.ndarray:
    """Per-case log-likelihood contribution; ages in years.

    Age models describe the age at end of observation, left-truncated at the event age.
    Interval models describe the time from event to end, with a scale that depends on event age.
    """
    shape = math.exp(params[0])
    if model_type.age_based:
        dist = _distribution(model_type.family, shape, math.exp(params[1]))
        end_term = np.where(censored, dist.logsf(end_age), dist.logpdf(end_age))
        return end_term - dist.logsf(np.maximum(event_age, min_interval))
    scale = np.exp(params[1] + params[2] * np.log(np.maximum(event_age, min_interval)))
    dist = _distribution(model_type.family, shape, scale)
    interval = np.maximum(end_age - event_age, min_interval)
    return np.where(censored, dist.logsf(interval), dist.logpdf(interval))


def compute_time_to_obs_end(
    population: StudyPopulation,
    database_end_date: date | None = None,
    config: dict | None = None,
) -> pd.DataFrame:
    """Time from first outcome to end of observation per case, flagging ends that are censoring rather than natural."""
    cfg = resolve_config(config)
    days_per_year = float(cfg["days_per_year"])
    days_per_month = float(cfg["days_per_month"])
    settings = population.settings
    first = population.outcomes.groupby("case_id", as_index=False)["outcome_day"].min()
    df = population.cases.merge(first, on="case_id", how="inner")

    end_date = df["start_date"] + pd.to_timedelta(df["end_day"], unit="D")
    censored = df["noninformative_end_censor"].astype(bool)
    if settings.study_end_date is not None:
        censored = censored | (end_date >= pd.Timestamp(settings.study_end_date))
    if database_end_date is not None:
        censored = censored | (end_date >= pd.Timestamp(database_end_date))
    if settings.max_age is not None:
        max_end_age = math.floor((settings.max_age + 1) * days_per_year) - 1
        censored = censored | (df["age_in_days"] + df["end_day"] >= max_end_age)
    censored = censored.to_numpy(dtype=bool)

    days_to_end = (df["end_day"] - df["outcome_day"] + 1).to_numpy(dtype=np.int64)
    return pd.DataFrame(
        {
            "case_id": df["case_id"].to_numpy(),
            "person_id": df["person_id"].to_numpy(),
            "outcome_day": df["outcome_day"].to_numpy(dtype=np.int64),
            "outcome_age_days": (df["age_in_days"] + df["outcome_day"]).to_numpy(dtype=np.int64),
            "end_age_days": (df["age_in_days"] + df["end_day"] + 1).to_numpy(dtype=np.int64),
            "days_to_obs_end": days_to_end,
            "months_to_obs_end": np.round(days_to_end / days_per_month).astype(np.int64),
            "censored": censored,
        }
    )


def _fit_candidate(
    model_type: CensorModelType,
    event_age: np.ndarray,
    end_age: np.ndarray,
    censored: np.ndarray,
    max_iterations: int,
    min_interval: float,
) -> CensorModel | None:
    def objective(params: np.ndarray) -> float:
        value = -float(np.sum(_log_terms(model_type, params, event_age, end_age, censored, min_interval)))
        return value if np.isfinite(value) else 1e12

    if model_type.age_based:
        x0 = np.array([0.0, math.log(max(float(np.mean(end_age)), 1e-3))])
        bounds = [LOG_PARAMETER_BOUNDS, LOG_PARAMETER_BOUNDS]
    else:
        x0 = np.array([0.0, math.log(max(float(np.mean(end_age - event_age)), 1e-3)), 0.0])
        bounds = [LOG_PARAMETER_BOUNDS, LOG_PARAMETER_BOUNDS, SLOPE_BOUNDS]

    with warnings.catch_warnings(), np.errstate(all="ignore"):
        warnings.simplefilter("ignore", RuntimeWarning)
        try:
            result = minimize(objective, x0, method="L-BFGS-B", bounds=bounds, options={"maxiter": max_iterations})
        except (ValueError, FloatingPointError) as exc:
            logging.info("Censor model %s failed: %s", model_type.label, exc)
            return None
    log_likelihood = -float(result.fun)
    if not result.success or not np.isfinite(log_likelihood) or result.fun >= 1e12:
        logging.info("Censor model %s did not converge: %s", model_type.label, result.message)
        return None
    return CensorModel(
        model_type=model_type,
        parameters=tuple(float(x) for x in result.x),
        log_likelihood=log_likelihood,
        n_cases=int(len(event_age)),
        min_interval=min_interval,
    )


def fit_censor_model(
    population: StudyPopulation,
    settings: CensoringSettings,
    notes: list[str] | None = None,
    config: dict | None = None,
) -> CensorModel | None:
    """Fit every candidate concurrently and keep the converged one with the highest log-likelihood.

    Returns None (with a CensorModelWarning) when no candidate converges.
    """
    notes = notes if notes is not None else []
    cfg = resolve_config(config)
    days_per_year = float(cfg["days_per_year"])
    min_interval = float(cfg["censor_model_min_interval_days"]) / days_per_year
    obs_end = compute_time_to_obs_end(population, settings.database_end_date, cfg)
    event_age = obs_end["outcome_age_days"].to_numpy(dtype=float) / days_per_year
    end_age = obs_end["end_age_days"].to_numpy(dtype=float) / days_per_year
    censored = obs_end["censored"].to_numpy(dtype=bool)
    logging.info(
        "Fitting censor models: cases=%s censored=%s candidates=%s",
        len(obs_end),
        int(censored.sum()),
        len(settings.model_types),
    )

    with ThreadPoolExecutor(max_workers=len(settings.model_types)) as pool:
        futures = [
            pool.submit(_fit_candidate, model_type, event_age, end_age, censored, settings.max_iterations, min_interval)
            for model_type in settings.model_types
        ]
        fits = [future.result() for future in futures]

    converged = [fit for fit in fits if fit is not None]
    for fit in converged:
        logging.info("Censor model %s: log-likelihood=%.3f", fit.label, fit.log_likelihood)
    if not converged:
        msg = "No censor model candidate converged; skipping event-dependent observation correction."
        logging.warning(msg)
        warnings.warn(msg, CensorModelWarning, stacklevel=2)
        notes.append(msg)
        return None
    best = max(converged, key=lambda fit: fit.log_likelihood)
    notes.append(f"Selected censor model {best.label} (log-likelihood {best.log_likelihood:.3f}).")
    return best


def apply_censor_model(
    interval_data: SccsIntervalData,
    population: StudyPopulation,
    model: CensorModel,
    database_end_date: date | None = None,
    config: dict | None = None,
) -> SccsIntervalData:
    """Replace weighted_time with the integral of the censoring weight over each segment.

    Weights are rescaled per case so weighted time sums to the case's raw time.
    """
    cfg = resolve_config(config)
    days_per_year = float(cfg["days_per_year"])
    nodes, node_weights = np.polynomial.legendre.leggauss(int(cfg["censor_model_quadrature_nodes"]))
    obs_end = compute_time_to_obs_end(population, database_end_date, cfg)

    segments = interval_data.outcomes.merge(
        obs_end[["case_id", "end_age_days", "censored"]], on="case_id", how="left"
    ).merge(population.cases[["case_id", "age_in_days"]], on="case_id", how="left")
    if segments["end_age_days"].isna().any():
        missing = segments.loc[segments["end_age_days"].isna(), "case_id"].unique()[:5].tolist()
        raise ValueError(f"Interval data contains cases absent from the study population: {missing}")

    lower = (segments["age_in_days"] + segments["start_day"]).to_numpy(dtype=float) / days_per_year
    upper = (segments["age_in_days"] + segments["end_day"] + 1).to_numpy(dtype=float) / days_per_year
    half = (upper - lower) / 2.0
    ages = half[:, None] * nodes[None, :] + ((upper + lower) / 2.0)[:, None]
    end_age = (segments["end_age_days"].to_numpy(dtype=float) / days_per_year)[:, None]
    censored = segments["censored"].to_numpy(dtype=bool)[:, None]

    with np.errstate(all="ignore"):
        density = np.exp(model.log_density(ages, end_age, censored))
    weighted = (density * node_weights[None, :]).sum(axis=1) * half

    time = segments["time"].to_numpy(dtype=float)
    weighted = pd.Series(weighted, index=segments.index)
    case_weighted = weighted.groupby(segments["case_id"]).transform("sum")
    case_time = pd.Series(time, index=segments.index).groupby(segments["case_id"]).transform("sum")
    factor = case_time / case_weighted
    valid = np.isfinite(weighted) & np.isfinite(factor) & (case_weighted > 0)
    invalid_cases = segments.loc[~valid, "case_id"].nunique()
    if invalid_cases:
        logging.warning("Censor weights not finite for %s cases; using raw time for them", invalid_cases)
    rescaled = np.where(valid, weighted * factor, time)
    # A case with any invalid segment falls back entirely to raw time.
    fallback = pd.Series(~valid, index=segments.index).groupby(segments["case_id"]).transform("any").to_numpy()
    rescaled = np.where(fallback, time, rescaled)

    outcomes = interval_data.outcomes.copy()
    outcomes["weighted_time"] = rescaled
    metadata = dict(interval_data.metadata)
    metadata["censor_model"] = {
        "model_type": model.label,
        "parameters": list(model.parameters),
        "log_likelihood": model.log_likelihood,
    }
    logging.info("Applied %s censor weights to %s segments", model.label, len(outcomes))
    return replace(interval_data, outcomes=outcomes, metadata=metadata)
