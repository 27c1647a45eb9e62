"""Expand covariate settings and era records into per-case covariate windows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from .config import ERA_COVARIATE_ID_START
from .errors import SccsDataError
from .settings import Anchor, CovariateSettings, EraCovariateSettings, SplineKind, SplineSettings
from .spline_covariates import WINDOW_COLUMNS, SplineBasis, build_spline_windows
from .study_population import StudyPopulation

COVARIATE_REF_COLUMNS = [
    "covariate_id",
    "covariate_name",
    "covariate_type",
    "settings_index",
    "era_id",
    "split_index",
    "exposure_of_interest",
    "allow_regularization",
]

COVARIATE_ERA_TYPES = ("exposure", "custom")


@dataclass
class ResolvedCovariates:
    windows: pd.DataFrame
    cut_points: pd.DataFrame
    era_counts: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=["covariate_id", "era_count"]))


def _matching_era_ids(settings: EraCovariateSettings, era_ids: pd.Series) -> pd.Series:
    keep = pd.Series(True, index=era_ids.index)
    if settings.include_era_ids:
        keep &= era_ids.isin(settings.include_era_ids)
    if settings.exclude_era_ids:
        keep &= ~era_ids.isin(settings.exclude_era_ids)
    return keep


def _split_labels(settings: EraCovariateSettings) -> list[str]:
    if not settings.split_points:
        return [""]
    end_label = str(settings.end) if settings.end_anchor == settings.start_anchor else f"{settings.end} after era end"
    lows = [settings.start] + [sp + 1 for sp in settings.split_points]
    highs = [str(sp) for sp in settings.split_points] + [end_label]
    return [f", day {lo}-{hi}" for lo, hi in zip(lows, highs)]


def build_era_covariate_ref(settings_list: Sequence[CovariateSettings], era_ref: pd.DataFrame) -> pd.DataFrame:
    """Assign covariate ids once from the global era reference so every batch agrees."""
    rows: list[dict[str, object]] = []
    next_id = ERA_COVARIATE_ID_START
    covariate_eras = era_ref.loc[era_ref["era_type"].isin(COVARIATE_ERA_TYPES)]
    names = dict(zip(covariate_eras["era_id"], covariate_eras["era_name"]))
    for settings_index, settings in enumerate(settings_list):
        if not isinstance(settings, EraCovariateSettings):
            continue
        if settings.stratify_by_id:
            ids = covariate_eras.loc[_matching_era_ids(settings, covariate_eras["era_id"]), "era_id"]
            keys: list[object] = sorted(pd.unique(ids).tolist())
            if not keys:
                logging.warning("Covariate settings %r match no era in the era reference", settings.label)
        else:
            keys = [None]
        for key in keys:
            base = settings.label if key is None else f"{settings.label}: {names.get(key, key)}"
            for split_index, suffix in enumerate(_split_labels(settings)):
                rows.append(
                    {
                        "covariate_id": next_id,
                        "covariate_name": base + suffix,
                        "covariate_type": "era",
                        "settings_index": settings_index,
                        "era_id": pd.NA if key is None else key,
                        "split_index": split_index,
                        "exposure_of_interest": settings.exposure_of_interest,
                        "allow_regularization": settings.allow_regularization,
                    }
                )
                next_id += 1
    return pd.DataFrame(rows, columns=COVARIATE_REF_COLUMNS)


def select_eras(settings: EraCovariateSettings, eras: pd.DataFrame) -> pd.DataFrame:
    selected = eras.loc[eras["era_type"].isin(COVARIATE_ERA_TYPES)]
    selected = selected.loc[_matching_era_ids(settings, selected["era_id"])]
    if settings.first_occurrence_only and not selected.empty:
        key = ["case_id", "era_id"] if settings.stratify_by_id else ["case_id"]
        selected = selected.sort_values([*key, "start_day", "end_day"]).drop_duplicates(key, keep="first")
    return selected


def union_windows(windows: pd.DataFrame) -> pd.DataFrame:
    """Merge overlapping or adjacent windows of the same case and covariate; a day counts once."""
    if windows.empty:
        return windows.reset_index(drop=True)
    keys = ["case_id", "covariate_id"]
    df = windows.sort_values([*keys, "start_day", "end_day"]).reset_index(drop=True)
    running_end = df.groupby(keys)["end_day"].cummax()
    previous_end = running_end.groupby([df["case_id"], df["covariate_id"]]).shift()
    new_block = previous_end.isna() | (df["start_day"] > previous_end + 1)
    df["block"] = new_block.cumsum()
    merged = df.groupby("block", sort=True).agg(
        case_id=("case_id", "first"),
        start_day=("start_day", "min"),
        end_day=("end_day", "max"),
        covariate_id=("covariate_id", "first"),
        covariate_value=("covariate_value", "first"),
    )
    return merged[WINDOW_COLUMNS].reset_index(drop=True)


def resolve_era_covariates(
    population: StudyPopulation,
    eras: pd.DataFrame,
    settings: EraCovariateSettings,
    settings_index: int,
    covariate_ref: pd.DataFrame,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Risk windows for one settings object: anchor day + offset, split, clipped to the case span, unioned.

    Returns (windows, era_counts). Windows are inclusive on both ends.
    """
    ref = covariate_ref.loc[covariate_ref["settings_index"] == settings_index]
    empty = pd.DataFrame(columns=WINDOW_COLUMNS), pd.DataFrame(columns=["covariate_id", "era_count"])
    if ref.empty:
        return empty

    selected = select_eras(settings, eras)
    if selected.empty:
        return empty
    spans = population.cases[["case_id", "start_day", "end_day"]].rename(
        columns={"start_day": "span_start", "end_day": "span_end"}
    )
    selected = selected.merge(spans, on="case_id", how="inner")
    if selected.empty:
        return empty

    era_start = selected["start_day"].to_numpy(dtype=np.int64)
    era_end = selected["end_day"].to_numpy(dtype=np.int64)
    if (era_end < era_start).any():
        bad = selected.loc[era_end < era_start, ["case_id", "era_id"]].head(5).to_dict("records")
        raise SccsDataError(f"Eras with end_day before start_day for {settings.label!r}: {bad}")
    start_anchor = era_start if settings.start_anchor == Anchor.ERA_START else era_end
    end_anchor = era_start if settings.end_anchor == Anchor.ERA_START else era_end

    piece_starts = [start_anchor + settings.start] + [start_anchor + sp + 1 for sp in settings.split_points]
    piece_ends = [start_anchor + sp for sp in settings.split_points] + [end_anchor + settings.end]

    if settings.stratify_by_id:
        id_map = {(row.era_id, row.split_index): row.covariate_id for row in ref.itertuples(index=False)}
    else:
        id_map = {row.split_index: row.covariate_id for row in ref.itertuples(index=False)}

    frames = []
    for split_index, (ws, we) in enumerate(zip(piece_starts, piece_ends)):
        if settings.stratify_by_id:
            covariate_id = selected["era_id"].map(lambda era_id: id_map.get((era_id, split_index)))
        else:
            covariate_id = pd.Series(id_map[split_index], index=selected.index)
        piece = pd.DataFrame(
            {
                "case_id": selected["case_id"].to_numpy(),
                "start_day": np.maximum(ws, selected["span_start"].to_numpy()),
                "end_day": np.minimum(we, selected["span_end"].to_numpy()),
                "covariate_id": covariate_id.to_numpy(),
                "covariate_value": 1.0,
            }
        )
        frames.append(piece)
    raw = pd.concat(frames, ignore_index=True)
    # Eras missing from the global era reference have no covariate id.
    raw = raw.loc[raw["covariate_id"].notna() & (raw["start_day"] <= raw["end_day"])]
    if raw.empty:
        return empty
    raw["covariate_id"] = raw["covariate_id"].astype(np.int64)

    era_counts = raw.groupby("covariate_id").size().rename("era_count").reset_index()
    return union_windows(raw), era_counts


def resolve_covariates(
    population: StudyPopulation,
    eras: pd.DataFrame,
    settings_list: Sequence[CovariateSettings],
    covariate_ref: pd.DataFrame,
    spline_bases: Mapping[SplineKind, SplineBasis],
) -> ResolvedCovariates:
    """Windows and cut points from every covariate settings object, dispatched on the settings variant."""
    windows: list[pd.DataFrame] = []
    cut_points: list[pd.DataFrame] = []
    era_counts: list[pd.DataFrame] = []
    for settings_index, settings in enumerate(settings_list):
        if isinstance(settings, EraCovariateSettings):
            era_windows, counts = resolve_era_covariates(population, eras, settings, settings_index, covariate_ref)
            windows.append(era_windows)
            era_counts.append(counts)
        elif isinstance(settings, SplineSettings):
            basis = spline_bases.get(settings.kind)
            if basis is None:
                raise KeyError(f"No fitted spline basis for {settings.kind.value!r}.")
            spline_windows, spline_cuts = build_spline_windows(population, basis)
            windows.append(spline_windows)
            cut_points.append(spline_cuts)
        else:
            raise TypeError(f"Unsupported covariate settings type: {type(settings).__name__}")

    non_empty = [w for w in windows if not w.empty]
    all_windows = (
        pd.concat(non_empty, ignore_index=True) if non_empty else pd.DataFrame(columns=WINDOW_COLUMNS)
    )
    non_empty_cuts = [c for c in cut_points if not c.empty]
    all_cuts = (
        pd.concat(non_empty_cuts, ignore_index=True) if non_empty_cuts else pd.DataFrame(columns=["case_id", "day"])
    )
    non_empty_counts = [c for c in era_counts if not c.empty]
    all_counts = (
        pd.concat(non_empty_counts, ignore_index=True)
        if non_empty_counts
        else pd.DataFrame(columns=["covariate_id", "era_count"])
    )
    return ResolvedCovariates(windows=all_windows, cut_points=all_cuts, era_counts=all_counts)
