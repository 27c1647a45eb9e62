"""SCCS diagnostics: MDRR, pre-exposure gain, time stability and descriptive summaries."""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, replace
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.optimize import brentq
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationWarning

from .config import CONFIG, resolve_config
from .era_covariates import build_era_covariate_ref, resolve_covariates, select_eras
from .interval_data import SccsIntervalData, create_interval_data
from .settings import Anchor, DiagnosticThresholds, EraCovariateSettings, SplineKind
from .spline_covariates import month_pieces
from .study_population import StudyPopulation

PASS = "PASS"
FAIL = "FAIL"
NOT_EVALUATED = "NOT EVALUATED"


def _critical_count(n_events: int, p0: float, alpha: float) -> int:
    """Smallest c with P(X >= c | p0) <= alpha for X ~ Binomial(n_events, p0)."""
    c = int(stats.binom.isf(alpha, n_events, p0)) + 1
    while c > 0 and stats.binom.sf(c - 2, n_events, p0) <= alpha:
        c -= 1
    while c <= n_events and stats.binom.sf(c - 1, n_events, p0) > alpha:
        c += 1
    return c


def compute_mdrr_from_aggregate_stats(
    p_exposed: float,
    n_events: int,
    alpha: float | None = None,
    power: float | None = None,
    two_sided: bool | None = None,
    method: str | None = None,
) -> float:
    """Minimum detectable relative risk given the exposed share of observed time and the outcome count.

    Returns inf when no relative risk is detectable.
    """
    alpha = float(CONFIG["mdrr_alpha"] if alpha is None else alpha)
    power = float(CONFIG["mdrr_power"] if power is None else power)
    two_sided = bool(CONFIG["mdrr_two_sided"] if two_sided is None else two_sided)
    method = str(CONFIG["mdrr_method"] if method is None else method)
    if not 0.0 < alpha < 1.0 or not 0.0 < power < 1.0:
        raise ValueError(f"alpha and power must lie in (0, 1); got {alpha}, {power}")
    if method not in ("binomial", "poisson"):
        raise ValueError(f"method must be 'binomial' or 'poisson'; got {method!r}")
    n_events = int(n_events)
    if n_events <= 0 or not 0.0 < p_exposed < 1.0:
        return math.inf
    if two_sided:
        alpha = alpha / 2.0

    if method == "poisson":
        z = stats.norm.isf(alpha) + stats.norm.ppf(power)
        return float(math.exp(z * math.sqrt(1.0 / (n_events * p_exposed) + 1.0 / (n_events * (1.0 - p_exposed)))))

    critical = _critical_count(n_events, p_exposed, alpha)
    if critical > n_events:
        return math.inf

    def power_gap(log_rr: float) -> float:
        rr = math.exp(log_rr)
        p = rr * p_exposed / (rr * p_exposed + 1.0 - p_exposed)
        return float(stats.binom.sf(critical - 1, n_events, p)) - power

    if power_gap(0.0) >= 0:
        return 1.0
    high = 1.0
    while power_gap(high) < 0:
        high *= 2.0
        if high > 50.0:
            return math.inf
    return float(math.exp(brentq(power_gap, 0.0, high, xtol=1e-10)))


def compute_mdrr(
    interval_data: SccsIntervalData,
    covariate_id: int,
    alpha: float | None = None,
    power: float | None = None,
    two_sided: bool | None = None,
    method: str | None = None,
) -> pd.DataFrame:
    """MDRR for one covariate over the cases that have any time exposed to it."""
    outcomes = interval_data.outcomes
    exposed_rows = interval_data.covariates.loc[interval_data.covariates["covariate_id"] == covariate_id, "row_id"]
    exposed = outcomes["row_id"].isin(exposed_rows)
    exposed_cases = outcomes.loc[exposed, "case_id"].unique()
    in_cases = outcomes["case_id"].isin(exposed_cases)

    exposed_days = float(outcomes.loc[exposed, "time"].sum())
    observed_days = float(outcomes.loc[in_cases, "time"].sum())
    n_events = int(outcomes.loc[in_cases, "outcome_count"].sum())
    p_exposed = exposed_days / observed_days if observed_days > 0 else 0.0
    mdrr = compute_mdrr_from_aggregate_stats(p_exposed, n_events, alpha, power, two_sided, method)
    logging.info("MDRR covariate %s: cases=%s outcomes=%s mdrr=%s", covariate_id, len(exposed_cases), n_events, mdrr)
    return pd.DataFrame(
        [
            {
                "covariate_id": int(covariate_id),
                "case_count": int(len(exposed_cases)),
                "outcome_count": n_events,
                "exposed_days": exposed_days,
                "observed_days": observed_days,
                "p_exposed": p_exposed,
                "mdrr": mdrr,
                "method": str(CONFIG["mdrr_method"] if method is None else method),
            }
        ]
    )


def pre_exposure_counts(
    population: StudyPopulation,
    eras: pd.DataFrame,
    settings: EraCovariateSettings,
    era_id: int | None = None,
    pre_exposure_days: int | None = None,
) -> pd.DataFrame:
    """Per case: days and outcomes in the pre-exposure window and in non-exposed, non-pre-exposure time."""
    pre_exposure_days = int(CONFIG["pre_exposure_days"] if pre_exposure_days is None else pre_exposure_days)
    if era_id is not None:
        include, exclude = (era_id,), ()
    elif settings.include_era_ids or settings.exclude_era_ids:
        include, exclude = settings.include_era_ids, settings.exclude_era_ids
    else:
        # Stratified settings without id filters: pool every era id they select.
        include, exclude = tuple(sorted(int(x) for x in select_eras(settings, eras)["era_id"].unique())), ()
        if not include:
            return pd.DataFrame(columns=["case_id", "pre_days", "pre_outcomes", "ref_days", "ref_outcomes"])
    exposed_settings = replace(
        settings,
        label="exposed",
        include_era_ids=include,
        exclude_era_ids=exclude,
        stratify_by_id=False,
        split_points=(),
        exposure_of_interest=False,
        allow_regularization=False,
    )
    pre_settings = replace(
        exposed_settings,
        label="pre-exposure",
        start=-pre_exposure_days,
        start_anchor=Anchor.ERA_START,
        end=-1,
        end_anchor=Anchor.ERA_START,
    )
    settings_list = [exposed_settings, pre_settings]
    ref = build_era_covariate_ref(settings_list, pd.DataFrame(columns=["era_type", "era_id", "era_name"]))
    exposed_id, pre_id = (int(x) for x in ref["covariate_id"])
    resolved = resolve_covariates(population, eras, settings_list, ref, {})
    data = create_interval_data(population, resolved, ref)

    segments = data.outcomes.set_index("row_id")
    covariates = data.covariates
    is_exposed = segments.index.isin(covariates.loc[covariates["covariate_id"] == exposed_id, "row_id"])
    # Exposure takes precedence where a pre-exposure window overlaps an earlier era.
    is_pre = segments.index.isin(covariates.loc[covariates["covariate_id"] == pre_id, "row_id"]) & ~is_exposed
    is_ref = ~is_exposed & ~is_pre

    segments = segments.assign(
        pre_days=np.where(is_pre, segments["time"], 0),
        pre_outcomes=np.where(is_pre, segments["outcome_count"], 0),
        ref_days=np.where(is_ref, segments["time"], 0),
        ref_outcomes=np.where(is_ref, segments["outcome_count"], 0),
    )
    counts = segments.groupby("case_id", as_index=False)[["pre_days", "pre_outcomes", "ref_days", "ref_outcomes"]].sum()
    return counts.loc[counts["pre_days"] > 0].reset_index(drop=True)


def fit_pre_exposure_gain(counts: pd.DataFrame) -> dict[str, float]:
    """Conditional binomial model of pre-exposure vs reference outcomes; one-sided p for an elevated rate."""
    informative = counts.loc[
        (counts["pre_days"] > 0) & (counts["ref_days"] > 0) & (counts["pre_outcomes"] + counts["ref_outcomes"] > 0)
    ]
    result = {"case_count": float(len(informative)), "log_rate_ratio": math.nan, "z": math.nan, "p": math.nan}
    if informative.empty:
        return result
    if informative["pre_outcomes"].sum() == 0:
        result["p"] = 1.0
        return result
    endog = informative[["pre_outcomes", "ref_outcomes"]].to_numpy(dtype=float)
    exog = np.ones((len(informative), 1))
    offset = np.log(informative["pre_days"].to_numpy(dtype=float) / informative["ref_days"].to_numpy(dtype=float))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        fit = sm.GLM(endog, exog, family=sm.families.Binomial(), offset=offset).fit()
    estimate = float(fit.params[0])
    se = float(fit.bse[0])
    z = estimate / se if se > 0 and np.isfinite(se) else math.inf
    result.update({"log_rate_ratio": estimate, "z": z, "p": float(stats.norm.sf(z))})
    return result


def compute_pre_exposure_gain_p(
    population: StudyPopulation,
    eras: pd.DataFrame,
    settings: EraCovariateSettings,
    era_id: int | None = None,
    pre_exposure_days: int | None = None,
) -> float:
    counts = pre_exposure_counts(population, eras, settings, era_id, pre_exposure_days)
    p = fit_pre_exposure_gain(counts)["p"]
    logging.info("Pre-exposure gain: informative cases=%s p=%s", len(counts), p)
    return p


def _calendar_pieces(population: StudyPopulation) -> pd.DataFrame:
    pieces = month_pieces(population.cases, SplineKind.CALENDAR_TIME)
    return pieces.rename(columns={"x": "month_index"})


def compute_time_stability(
    population: StudyPopulation,
    interval_data: SccsIntervalData,
    coefficients: Mapping[int, float] | None = None,
    max_ratio: float | None = None,
    alpha: float | None = None,
) -> pd.DataFrame:
    """Observed vs expected outcomes per calendar month.

    Each case's outcomes are distributed over its segments in proportion to time * exp(linear predictor);
    without coefficients the expected rate is flat within each case.
    """
    max_ratio = float(CONFIG["time_stability_max_ratio"] if max_ratio is None else max_ratio)
    alpha = float(CONFIG["time_stability_alpha"] if alpha is None else alpha)
    segments = interval_data.outcomes[["row_id", "case_id", "start_day", "end_day", "time", "outcome_count"]].copy()

    linear = pd.Series(0.0, index=segments["row_id"])
    if coefficients:
        beta = pd.Series({int(k): float(v) for k, v in coefficients.items()})
        cov = interval_data.covariates.loc[interval_data.covariates["covariate_id"].isin(beta.index)]
        if not cov.empty:
            contrib = cov["covariate_value"].to_numpy(dtype=float) * cov["covariate_id"].map(beta).to_numpy(dtype=float)
            linear = linear.add(pd.Series(contrib, index=cov["row_id"].to_numpy()).groupby(level=0).sum(), fill_value=0.0)
    segments["rate"] = segments["time"].to_numpy(dtype=float) * np.exp(linear.reindex(segments["row_id"]).to_numpy())
    totals = segments.groupby("case_id").agg(case_rate=("rate", "sum"), case_outcomes=("outcome_count", "sum"))
    segments = segments.join(totals, on="case_id")

    pieces = _calendar_pieces(population)
    overlap = segments.merge(pieces, on="case_id", how="inner", suffixes=("", "_month"))
    overlap["days"] = (
        np.minimum(overlap["end_day"], overlap["end_day_month"]) - np.maximum(overlap["start_day"], overlap["start_day_month"]) + 1
    )
    overlap = overlap.loc[overlap["days"] > 0]
    overlap["expected"] = (
        overlap["case_outcomes"] * overlap["rate"] / overlap["case_rate"] * overlap["days"] / overlap["time"]
    )
    expected = overlap.groupby("month_index")["expected"].sum()

    outcome_dates = population.outcomes.merge(population.cases[["case_id", "start_date"]], on="case_id", how="inner")
    dates = outcome_dates["start_date"] + pd.to_timedelta(outcome_dates["outcome_day"], unit="D")
    observed = pd.Series(1, index=(dates.dt.year * 12 + dates.dt.month - 1).to_numpy()).groupby(level=0).sum()

    table = pd.DataFrame({"expected": expected}).join(observed.rename("observed"), how="outer").fillna(0.0)
    table.index = table.index.astype(np.int64)
    table.index.name = "month_index"
    table = table.reset_index()
    obs = table["observed"].to_numpy(dtype=float)
    exp = table["expected"].to_numpy(dtype=float)
    upper = stats.poisson.sf(obs - 1, exp * max_ratio)
    lower = stats.poisson.cdf(obs, exp / max_ratio)
    p = np.where(obs > exp * max_ratio, 2 * upper, np.where(obs < exp / max_ratio, 2 * lower, 1.0))
    p = np.where(exp > 0, np.minimum(p, 1.0), np.where(obs > 0, 0.0, 1.0))

    n_months = max(len(table), 1)
    table["year"] = table["month_index"] // 12
    table["month"] = table["month_index"] % 12 + 1
    with np.errstate(divide="ignore", invalid="ignore"):
        table["ratio"] = np.where(exp > 0, obs / exp, np.nan)
    table["p"] = p
    table["stable"] = table["p"] >= alpha / n_months
    logging.info(
        "Time stability: months=%s unstable=%s",
        len(table),
        int((~table["stable"]).sum()),
    )
    return table[["month_index", "year", "month", "observed", "expected", "ratio", "p", "stable"]]


def time_trend_p(table: pd.DataFrame) -> float:
    """Family-wise p-value of the time stability table."""
    if table.empty:
        return math.nan
    return float(min(table["p"].min() * len(table), 1.0))


def compute_spans(population: StudyPopulation, config: dict | None = None) -> pd.DataFrame:
    """Number of cases observed per age month and per calendar month."""
    days_per_month = float(resolve_config(config)["days_per_month"])
    frames = []
    for kind in (SplineKind.AGE, SplineKind.CALENDAR_TIME):
        pieces = month_pieces(population.cases, kind, days_per_month)
        pieces["days"] = pieces["end_day"] - pieces["start_day"] + 1
        spans = pieces.groupby("x").agg(case_count=("case_id", "nunique"), observed_days=("days", "sum"))
        spans = spans.reset_index().rename(columns={"x": "position"})
        spans["position"] = spans["position"].astype(np.int64)
        spans.insert(0, "kind", kind.value)
        frames.append(spans)
    return pd.concat(frames, ignore_index=True)


def compute_time_to_event(
    population: StudyPopulation,
    eras: pd.DataFrame,
    era_id: int,
    weeks: int | None = None,
) -> pd.DataFrame:
    """Weekly outcome counts and observed cases relative to the first exposure start of era_id."""
    weeks = int(CONFIG["time_to_event_weeks"] if weeks is None else weeks)
    exposure = eras.loc[(eras["era_type"] != "outcome") & (eras["era_id"] == era_id)]
    first = exposure.groupby("case_id", as_index=False)["start_day"].min().rename(columns={"start_day": "exposure_day"})
    cases = population.cases.merge(first, on="case_id", how="inner")
    all_weeks = pd.DataFrame({"week": np.arange(-weeks, weeks, dtype=np.int64)})
    if cases.empty:
        return all_weeks.assign(outcome_count=0, observed_case_count=0)

    outcomes = population.outcomes.merge(first, on="case_id", how="inner")
    outcome_week = np.floor((outcomes["outcome_day"] - outcomes["exposure_day"]) / 7).astype(np.int64)
    outcome_counts = outcome_week.value_counts()

    low = np.clip(np.floor((cases["start_day"] - cases["exposure_day"]) / 7).astype(np.int64), -weeks, weeks)
    high = np.clip(np.floor((cases["end_day"] - cases["exposure_day"]) / 7).astype(np.int64), -weeks - 1, weeks - 1)
    n = np.maximum(high - low + 1, 0).to_numpy()
    observed_week = np.repeat(low.to_numpy(), n) + (np.arange(n.sum()) - np.repeat(np.cumsum(n) - n, n))
    observed_counts = pd.Series(observed_week).value_counts()

    out = all_weeks.copy()
    out["outcome_count"] = out["week"].map(outcome_counts).fillna(0).astype(np.int64)
    out["observed_case_count"] = out["week"].map(observed_counts).fillna(0).astype(np.int64)
    return out


@dataclass
class DiagnosticsSummary:
    table: pd.DataFrame
    unblind: bool


def _status(value: float | None, threshold: float, passes) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return NOT_EVALUATED
    return PASS if passes(value, threshold) else FAIL


def summarize_diagnostics(
    mdrr: float | None = None,
    ease: float | None = None,
    time_trend_p: float | None = None,
    pre_exposure_p: float | None = None,
    thresholds: DiagnosticThresholds | None = None,
) -> DiagnosticsSummary:
    """Classify each diagnostic against its threshold; unblind only when nothing failed."""
    thresholds = thresholds or DiagnosticThresholds()
    rows = [
        ("mdrr", mdrr, thresholds.mdrr_threshold, lambda v, t: v < t),
        ("ease", ease, thresholds.ease_threshold, lambda v, t: v < t),
        ("time_trend_p", time_trend_p, thresholds.time_trend_p_threshold, lambda v, t: v >= t),
        ("pre_exposure_p", pre_exposure_p, thresholds.pre_exposure_p_threshold, lambda v, t: v >= t),
    ]
    table = pd.DataFrame(
        [
            {
                "diagnostic": name,
                "value": math.nan if value is None else float(value),
                "threshold": threshold,
                "status": _status(None if value is None else float(value), threshold, passes),
            }
            for name, value, threshold, passes in rows
        ]
    )
    unblind = not (table["status"] == FAIL).any()
    return DiagnosticsSummary(table=table, unblind=bool(unblind))


def exposure_of_interest_ids(interval_data: SccsIntervalData) -> Sequence[int]:
    ref = interval_data.covariate_ref
    return [int(x) for x in ref.loc[ref["exposure_of_interest"].astype(bool), "covariate_id"]]
