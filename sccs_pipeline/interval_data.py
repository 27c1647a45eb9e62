"""Partition case spans into non-overlapping segments carrying outcome counts and sparse covariates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from .era_covariates import ResolvedCovariates
from .spline_covariates import WINDOW_COLUMNS
from .study_population import StudyPopulation

OUTCOME_COLUMNS = ["row_id", "case_id", "start_day", "end_day", "time", "weighted_time", "outcome_count"]
COVARIATE_COLUMNS = ["row_id", "case_id", "covariate_id", "covariate_value"]
STATISTICS_COLUMNS = [
    "covariate_id",
    "person_count",
    "era_count",
    "day_count",
    "outcome_count",
    "observation_period_count",
    "observed_day_count",
    "observed_outcome_count",
]


@dataclass
class SccsIntervalData:
    outcomes: pd.DataFrame
    covariates: pd.DataFrame
    covariate_ref: pd.DataFrame
    covariate_statistics: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=STATISTICS_COLUMNS))
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def covariate_ids(self) -> list[int]:
        return sorted(int(x) for x in self.covariate_ref["covariate_id"])

    def design_matrix(self) -> sparse.csr_matrix:
        """Rows follow row_id, columns follow covariate_ids."""
        columns = {cid: j for j, cid in enumerate(self.covariate_ids)}
        col = self.covariates["covariate_id"].map(columns)
        keep = col.notna().to_numpy()
        return sparse.csr_matrix(
            (
                self.covariates["covariate_value"].to_numpy(dtype=float)[keep],
                (self.covariates["row_id"].to_numpy(dtype=np.int64)[keep], col.to_numpy()[keep].astype(np.int64)),
            ),
            shape=(len(self.outcomes), len(columns)),
        )


def _boundaries(spans: pd.DataFrame, windows: pd.DataFrame, cut_points: pd.DataFrame) -> pd.DataFrame:
    parts = [
        spans[["case_id"]].assign(day=spans["start_day"]),
        spans[["case_id"]].assign(day=spans["end_day"] + 1),
    ]
    if not windows.empty:
        parts.append(windows[["case_id"]].assign(day=windows["start_day"]))
        parts.append(windows[["case_id"]].assign(day=windows["end_day"] + 1))
    if cut_points is not None and not cut_points.empty:
        parts.append(cut_points[["case_id", "day"]])
    days = pd.concat(parts, ignore_index=True)
    days["day"] = days["day"].astype(np.int64)
    days = days.merge(spans[["case_id", "start_day", "end_day"]], on="case_id", how="inner")
    inside = (days["day"] >= days["start_day"]) & (days["day"] <= days["end_day"] + 1)
    return days.loc[inside, ["case_id", "day"]].drop_duplicates().sort_values(["case_id", "day"]).reset_index(drop=True)


def _segment(
    spans: pd.DataFrame,
    windows: pd.DataFrame,
    cut_points: pd.DataFrame | None,
    outcomes: pd.DataFrame,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    # Windows are inclusive [start, end]; boundaries are half-open starts, so a window contributes start and end + 1.
    if windows.empty:
        windows = pd.DataFrame(columns=WINDOW_COLUMNS)
    else:
        windows = windows.merge(
            spans[["case_id", "start_day", "end_day"]], on="case_id", how="inner", suffixes=("", "_span")
        )
        windows = windows.assign(
            start_day=np.maximum(windows["start_day"], windows["start_day_span"]).astype(np.int64),
            end_day=np.minimum(windows["end_day"], windows["end_day_span"]).astype(np.int64),
        )
        windows = windows.loc[windows["start_day"] <= windows["end_day"], WINDOW_COLUMNS].reset_index(drop=True)

    days = _boundaries(spans, windows, cut_points)
    next_day = days.groupby("case_id")["day"].shift(-1)
    segments = days.assign(next_day=next_day).dropna(subset=["next_day"])
    segments = pd.DataFrame(
        {
            "case_id": segments["case_id"].to_numpy(),
            "start_day": segments["day"].to_numpy(dtype=np.int64),
            "end_day": segments["next_day"].to_numpy(dtype=np.int64) - 1,
        }
    )
    segments = segments.loc[segments["end_day"] >= segments["start_day"]].reset_index(drop=True)
    segments.insert(0, "row_id", np.arange(len(segments), dtype=np.int64))
    segments["time"] = segments["end_day"] - segments["start_day"] + 1
    segments["weighted_time"] = segments["time"].astype(float)

    if outcomes.empty:
        segments["outcome_count"] = 0
    else:
        located = pd.merge_asof(
            outcomes[["case_id", "outcome_day"]].sort_values("outcome_day"),
            segments[["case_id", "start_day", "end_day", "row_id"]].sort_values("start_day"),
            left_on="outcome_day",
            right_on="start_day",
            by="case_id",
            direction="backward",
        )
        located = located.loc[located["row_id"].notna() & (located["outcome_day"] <= located["end_day"])]
        counts = located.groupby(located["row_id"].astype(np.int64)).size()
        segments["outcome_count"] = segments["row_id"].map(counts).fillna(0).astype(np.int64)

    if windows.empty:
        return segments[OUTCOME_COLUMNS], pd.DataFrame(columns=COVARIATE_COLUMNS)

    first = windows.merge(
        segments[["case_id", "start_day", "row_id"]], on=["case_id", "start_day"], how="left"
    )["row_id"].to_numpy()
    last = (
        windows.merge(segments[["case_id", "end_day", "row_id"]], on=["case_id", "end_day"], how="left")["row_id"]
        .to_numpy()
    )
    unmatched = np.isnan(first.astype(float)) | np.isnan(last.astype(float))
    if unmatched.any():
        case_ids = windows.loc[unmatched, "case_id"].unique()[:5].tolist()
        raise RuntimeError(f"Window edges do not coincide with segment boundaries for cases {case_ids}")
    first = first.astype(np.int64)
    last = last.astype(np.int64)
    n_rows = last - first + 1
    rows = np.repeat(first, n_rows) + (np.arange(n_rows.sum()) - np.repeat(np.cumsum(n_rows) - n_rows, n_rows))
    covariates = pd.DataFrame(
        {
            "row_id": rows,
            "case_id": np.repeat(windows["case_id"].to_numpy(), n_rows),
            "covariate_id": np.repeat(windows["covariate_id"].to_numpy(dtype=np.int64), n_rows),
            "covariate_value": np.repeat(windows["covariate_value"].to_numpy(dtype=float), n_rows),
        }
    )
    covariates = (
        covariates.loc[covariates["covariate_value"] != 0]
        .drop_duplicates(["row_id", "covariate_id"], keep="first")
        .sort_values(["row_id", "covariate_id"])
        .reset_index(drop=True)
    )
    return segments[OUTCOME_COLUMNS], covariates[COVARIATE_COLUMNS]


def segment_case(
    case_id: object,
    start_day: int,
    end_day: int,
    windows: pd.DataFrame,
    cut_points: Sequence[int] = (),
    outcome_days: Sequence[int] = (),
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Segment a single case span [start_day, end_day]. Windows need start_day, end_day, covariate_id, covariate_value."""
    spans = pd.DataFrame({"case_id": [case_id], "start_day": [int(start_day)], "end_day": [int(end_day)]})
    windows = windows.assign(case_id=case_id) if not windows.empty else pd.DataFrame(columns=WINDOW_COLUMNS)
    if "covariate_value" not in windows.columns:
        windows["covariate_value"] = 1.0
    cuts = pd.DataFrame({"case_id": case_id, "day": list(cut_points)}, columns=["case_id", "day"])
    outcomes = pd.DataFrame({"case_id": case_id, "outcome_day": list(outcome_days)}, columns=["case_id", "outcome_day"])
    return _segment(spans, windows[WINDOW_COLUMNS], cuts, outcomes)


def compute_covariate_statistics(
    outcomes: pd.DataFrame,
    covariates: pd.DataFrame,
    cases: pd.DataFrame,
    era_counts: pd.DataFrame | None = None,
) -> pd.DataFrame:
    if covariates.empty:
        return pd.DataFrame(columns=STATISTICS_COLUMNS)
    rows = covariates[["row_id", "covariate_id"]].merge(
        outcomes[["row_id", "case_id", "time", "outcome_count"]], on="row_id", how="inner"
    )
    rows = rows.merge(cases[["case_id", "person_id"]], on="case_id", how="left")
    per_case = outcomes.groupby("case_id").agg(observed_days=("time", "sum"), observed_outcomes=("outcome_count", "sum"))
    exposed_cases = rows[["covariate_id", "case_id"]].drop_duplicates().join(per_case, on="case_id")

    stats = rows.groupby("covariate_id").agg(
        person_count=("person_id", "nunique"),
        day_count=("time", "sum"),
        outcome_count=("outcome_count", "sum"),
        observation_period_count=("case_id", "nunique"),
    )
    observed = exposed_cases.groupby("covariate_id").agg(
        observed_day_count=("observed_days", "sum"),
        observed_outcome_count=("observed_outcomes", "sum"),
    )
    stats = stats.join(observed)
    if era_counts is not None and not era_counts.empty:
        totals = era_counts.groupby("covariate_id")["era_count"].sum()
        stats["era_count"] = stats.index.map(totals)
    else:
        stats["era_count"] = np.nan
    stats["era_count"] = stats["era_count"].fillna(0).astype(np.int64)
    return stats.reset_index()[STATISTICS_COLUMNS]


def create_interval_data(
    population: StudyPopulation,
    resolved: ResolvedCovariates,
    covariate_ref: pd.DataFrame,
    metadata: dict[str, object] | None = None,
) -> SccsIntervalData:
    """Segment every case of the population; row ids follow (case_id, start_day) order."""
    spans = population.cases[["case_id", "start_day", "end_day"]]
    outcomes, covariates = _segment(spans, resolved.windows, resolved.cut_points, population.outcomes)
    logging.info(
        "Created interval data: cases=%s segments=%s covariate_rows=%s",
        len(spans),
        len(outcomes),
        len(covariates),
    )
    return SccsIntervalData(
        outcomes=outcomes,
        covariates=covariates,
        covariate_ref=covariate_ref,
        covariate_statistics=compute_covariate_statistics(outcomes, covariates, population.cases, resolved.era_counts),
        metadata=dict(metadata or {}),
    )


def merge_interval_data(
    parts: Sequence[SccsIntervalData],
    covariate_ref: pd.DataFrame,
    cases: pd.DataFrame,
    era_counts: pd.DataFrame | None = None,
    metadata: dict[str, object] | None = None,
) -> SccsIntervalData:
    """Concatenate batch interval data and renumber row ids in global (case_id, start_day) order."""
    if not parts:
        return SccsIntervalData(
            outcomes=pd.DataFrame(columns=OUTCOME_COLUMNS),
            covariates=pd.DataFrame(columns=COVARIATE_COLUMNS),
            covariate_ref=covariate_ref,
            metadata=dict(metadata or {}),
        )
    outcomes = pd.concat(
        [p.outcomes.assign(part=i) for i, p in enumerate(parts)], ignore_index=True
    ).sort_values(["case_id", "start_day"], kind="mergesort")
    outcomes["new_row_id"] = np.arange(len(outcomes), dtype=np.int64)
    remap = outcomes[["part", "row_id", "new_row_id"]]

    covariate_parts = [p.covariates.assign(part=i) for i, p in enumerate(parts) if not p.covariates.empty]
    if covariate_parts:
        covariates = pd.concat(covariate_parts, ignore_index=True).merge(remap, on=["part", "row_id"], how="inner")
        covariates = (
            covariates.assign(row_id=covariates["new_row_id"])
            .sort_values(["row_id", "covariate_id"])[COVARIATE_COLUMNS]
            .reset_index(drop=True)
        )
    else:
        covariates = pd.DataFrame(columns=COVARIATE_COLUMNS)
    outcomes = outcomes.assign(row_id=outcomes["new_row_id"])[OUTCOME_COLUMNS].reset_index(drop=True)
    return SccsIntervalData(
        outcomes=outcomes,
        covariates=covariates,
        covariate_ref=covariate_ref,
        covariate_statistics=compute_covariate_statistics(outcomes, covariates, cases, era_counts),
        metadata=dict(metadata or {}),
    )
