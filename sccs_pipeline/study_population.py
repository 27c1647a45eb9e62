"""Study population construction for SCCS: case selection, restriction order and attrition."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from .config import REQUIRED_CASE_COLUMNS, REQUIRED_ERA_COLUMNS, resolve_config
from .data_source import check_columns
from .errors import EmptyPopulationError, SccsDataError
from .settings import StudyPopulationSettings

ATTRITION_COLUMNS = [
    "sequence_number",
    "description",
    "outcome_subjects",
    "outcome_events",
    "outcome_obs_periods",
    "observed_days",
]

CASE_COLUMNS = [
    "case_id",
    "person_id",
    "age_in_days",
    "start_date",
    "observation_days",
    "in_nesting_cohort",
    "noninformative_end_censor",
    "start_day",
    "end_day",
]


@dataclass
class StudyPopulation:
    cases: pd.DataFrame
    outcomes: pd.DataFrame
    attrition: pd.DataFrame
    settings: StudyPopulationSettings
    notes: list[str] = field(default_factory=list)

    @property
    def n_cases(self) -> int:
        return int(len(self.cases))

    def subset(self, case_ids: Iterable[object]) -> "StudyPopulation":
        ids = pd.Index(case_ids)
        return StudyPopulation(
            cases=self.cases.loc[self.cases["case_id"].isin(ids)].reset_index(drop=True),
            outcomes=self.outcomes.loc[self.outcomes["case_id"].isin(ids)].reset_index(drop=True),
            attrition=self.attrition,
            settings=self.settings,
            notes=list(self.notes),
        )


def attrition_steps(settings: StudyPopulationSettings) -> list[str]:
    steps = ["Outcomes"]
    if settings.first_outcome_only:
        steps.append("First outcome only")
    if settings.naive_period > 0:
        steps.append(f"Requiring {settings.naive_period} days naive period")
    if settings.restrict_to_nesting_cohort:
        steps.append("Restricting to nesting cohort")
    if settings.min_age is not None or settings.max_age is not None:
        low = "0" if settings.min_age is None else f"{settings.min_age:g}"
        high = "max" if settings.max_age is None else f"{settings.max_age:g}"
        steps.append(f"Restricting age to {low}-{high} years")
    if settings.study_start_date is not None or settings.study_end_date is not None:
        low = "start" if settings.study_start_date is None else settings.study_start_date.isoformat()
        high = "end" if settings.study_end_date is None else settings.study_end_date.isoformat()
        steps.append(f"Restricting to study period {low} to {high}")
    return steps


def _prepare_cases(cases: pd.DataFrame, settings: StudyPopulationSettings, notes: list[str]) -> pd.DataFrame:
    check_columns(cases, REQUIRED_CASE_COLUMNS, "cases")
    out = cases.copy()
    out["start_date"] = pd.to_datetime(out["start_date"], errors="coerce")
    out["age_in_days"] = pd.to_numeric(out["age_in_days"], errors="coerce")
    out["observation_days"] = pd.to_numeric(out["observation_days"], errors="coerce")

    bad = out["start_date"].isna() | out["age_in_days"].isna() | out["observation_days"].isna()
    if bad.any():
        bad_ids = out.loc[bad, "case_id"].head(5).tolist()
        raise SccsDataError(
            f"cases table has {int(bad.sum())} rows with missing start_date/age_in_days/observation_days "
            f"(e.g. case_id {bad_ids})."
        )

    negative = out["age_in_days"] < 0
    if negative.any():
        msg = (
            f"There are {int(negative.sum())} cases with negative ages. Setting their starting age to 0. "
            f"Please review your data (e.g. case_id {out.loc[negative, 'case_id'].head(5).tolist()})."
        )
        logging.warning(msg)
        notes.append(msg)
        out.loc[negative, "age_in_days"] = 0

    if "in_nesting_cohort" not in out.columns:
        if settings.restrict_to_nesting_cohort:
            raise SccsDataError("restrict_to_nesting_cohort is set but cases table has no in_nesting_cohort column.")
        out["in_nesting_cohort"] = True
    out["in_nesting_cohort"] = out["in_nesting_cohort"].fillna(False).astype(bool)
    if "noninformative_end_censor" not in out.columns:
        out["noninformative_end_censor"] = False
    out["noninformative_end_censor"] = out["noninformative_end_censor"].fillna(False).astype(bool)

    out["age_in_days"] = out["age_in_days"].astype(np.int64)
    out["observation_days"] = out["observation_days"].astype(np.int64)
    out["start_day"] = 0
    out["end_day"] = out["observation_days"] - 1

    empty = out["end_day"] < out["start_day"]
    if empty.any():
        msg = f"Dropped {int(empty.sum())} cases with no observed days."
        logging.warning(msg)
        notes.append(msg)
        out = out.loc[~empty]
    return out[CASE_COLUMNS].sort_values("case_id").reset_index(drop=True)


def _restrict(cases: pd.DataFrame, outcomes: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
    cases = cases.loc[cases["start_day"] <= cases["end_day"]]
    spans = cases[["case_id", "start_day", "end_day"]]
    joined = outcomes.merge(spans, on="case_id", how="inner")
    keep = (joined["outcome_day"] >= joined["start_day"]) & (joined["outcome_day"] <= joined["end_day"])
    outcomes = joined.loc[keep, ["case_id", "outcome_day"]].reset_index(drop=True)
    cases = cases.loc[cases["case_id"].isin(outcomes["case_id"])].reset_index(drop=True)
    return cases, outcomes


def _attrition_row(description: str, cases: pd.DataFrame, outcomes: pd.DataFrame) -> dict[str, object]:
    return {
        "description": description,
        "outcome_subjects": int(cases["person_id"].nunique()),
        "outcome_events": int(len(outcomes)),
        "outcome_obs_periods": int(cases["case_id"].nunique()),
        "observed_days": int((cases["end_day"] - cases["start_day"] + 1).sum()),
    }


def _attrition_frame(rows: list[dict[str, object]]) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=ATTRITION_COLUMNS[1:])
    df.insert(0, "sequence_number", np.arange(1, len(df) + 1))
    return df


def create_study_population(
    cases: pd.DataFrame,
    eras: pd.DataFrame,
    settings: StudyPopulationSettings,
    notes: list[str] | None = None,
    config: dict | None = None,
) -> StudyPopulation:
    """Apply outcome, first-occurrence, naive-period, nesting, age and calendar restrictions in that order.

    Raises EmptyPopulationError (carrying the attrition so far) as soon as a step leaves no cases.
    """
    notes = notes if notes is not None else []
    check_columns(eras, REQUIRED_ERA_COLUMNS, "eras")
    working = _prepare_cases(cases, settings, notes)
    days_per_year = float(resolve_config(config)["days_per_year"])

    outcome_eras = eras.loc[
        (eras["era_type"] == "outcome") & (pd.to_numeric(eras["era_id"], errors="coerce") == settings.outcome_id)
    ]
    outcomes = pd.DataFrame(
        {
            "case_id": outcome_eras["case_id"].to_numpy(),
            "outcome_day": pd.to_numeric(outcome_eras["start_day"], errors="coerce").to_numpy(),
        }
    ).dropna()
    outcomes["outcome_day"] = outcomes["outcome_day"].astype(np.int64)

    rows: list[dict[str, object]] = []
    steps = iter(attrition_steps(settings))

    def record(current_cases: pd.DataFrame, current_outcomes: pd.DataFrame) -> None:
        description = next(steps)
        rows.append(_attrition_row(description, current_cases, current_outcomes))
        logging.info(
            "%s: cases=%s outcomes=%s",
            description,
            len(current_cases),
            len(current_outcomes),
        )
        if current_cases.empty:
            raise EmptyPopulationError(
                f"No cases left after step '{description}' (outcome_id={settings.outcome_id}).",
                attrition=_attrition_frame(rows),
            )

    working, outcomes = _restrict(working, outcomes)
    record(working, outcomes)

    if settings.first_outcome_only:
        dated = outcomes.merge(working[["case_id", "person_id", "start_date"]], on="case_id", how="inner")
        dated["outcome_date"] = dated["start_date"] + pd.to_timedelta(dated["outcome_day"], unit="D")
        first = dated.sort_values(["person_id", "outcome_date", "case_id"]).drop_duplicates("person_id", keep="first")
        working, outcomes = _restrict(working, first[["case_id", "outcome_day"]])
        record(working, outcomes)

    if settings.naive_period > 0:
        working = working.copy()
        working["start_day"] = np.maximum(working["start_day"], settings.naive_period)
        working, outcomes = _restrict(working, outcomes)
        record(working, outcomes)

    if settings.restrict_to_nesting_cohort:
        working = working.loc[working["in_nesting_cohort"]]
        working, outcomes = _restrict(working, outcomes)
        record(working, outcomes)

    if settings.min_age is not None or settings.max_age is not None:
        working = working.copy()
        if settings.min_age is not None:
            min_day = np.ceil(settings.min_age * days_per_year - working["age_in_days"]).astype(np.int64)
            working["start_day"] = np.maximum(working["start_day"], min_day)
        if settings.max_age is not None:
            max_day = (
                math.floor((settings.max_age + 1) * days_per_year) - 1 - working["age_in_days"]
            ).astype(np.int64)
            truncated = max_day < working["end_day"]
            working["noninformative_end_censor"] = working["noninformative_end_censor"] | truncated
            working["end_day"] = np.minimum(working["end_day"], max_day)
        working, outcomes = _restrict(working, outcomes)
        record(working, outcomes)

    if settings.study_start_date is not None or settings.study_end_date is not None:
        working = working.copy()
        if settings.study_start_date is not None:
            offset = (pd.Timestamp(settings.study_start_date) - working["start_date"]).dt.days
            working["start_day"] = np.maximum(working["start_day"], offset)
        if settings.study_end_date is not None:
            offset = (pd.Timestamp(settings.study_end_date) - working["start_date"]).dt.days
            truncated = offset < working["end_day"]
            working["noninformative_end_censor"] = working["noninformative_end_censor"] | truncated
            working["end_day"] = np.minimum(working["end_day"], offset)
        working, outcomes = _restrict(working, outcomes)
        record(working, outcomes)

    working = working.sort_values("case_id").reset_index(drop=True)
    outcomes = outcomes.sort_values(["case_id", "outcome_day"]).reset_index(drop=True)
    return StudyPopulation(
        cases=working,
        outcomes=outcomes,
        attrition=_attrition_frame(rows),
        settings=settings,
        notes=notes,
    )


def merge_attrition(frames: Sequence[pd.DataFrame], settings: StudyPopulationSettings) -> pd.DataFrame:
    """Sum batch attrition tables step by step; a batch that stopped early contributes zeros afterwards."""
    steps = attrition_steps(settings)
    totals = pd.DataFrame({"description": steps})
    count_cols = ATTRITION_COLUMNS[2:]
    for col in count_cols:
        totals[col] = 0
    for frame in frames:
        if frame is None or frame.empty:
            continue
        aligned = totals[["description"]].merge(frame[["description", *count_cols]], on="description", how="left")
        for col in count_cols:
            totals[col] = totals[col] + aligned[col].fillna(0).astype(np.int64).to_numpy()
    totals.insert(0, "sequence_number", np.arange(1, len(totals) + 1))
    return totals


def merge_study_populations(
    populations: Sequence[StudyPopulation],
    attrition_frames: Sequence[pd.DataFrame],
    settings: StudyPopulationSettings,
) -> StudyPopulation:
    attrition = merge_attrition(attrition_frames, settings)
    notes: list[str] = []
    for pop in populations:
        notes.extend(pop.notes)
    if not populations:
        raise EmptyPopulationError(
            f"No cases left in any batch (outcome_id={settings.outcome_id}).",
            attrition=attrition,
        )
    cases = pd.concat([p.cases for p in populations], ignore_index=True).sort_values("case_id")
    outcomes = pd.concat([p.outcomes for p in populations], ignore_index=True).sort_values(["case_id", "outcome_day"])
    return StudyPopulation(
        cases=cases.reset_index(drop=True),
        outcomes=outcomes.reset_index(drop=True),
        attrition=attrition,
        settings=settings,
        notes=notes,
    )
