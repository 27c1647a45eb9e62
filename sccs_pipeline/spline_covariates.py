"""Age, season and calendar-time spline covariates evaluated per month piece."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from patsy import dmatrix

from .config import CONFIG, SPLINE_COVARIATE_ID_START, resolve_config
from .errors import SccsDataError
from .settings import SplineKind, SplineSettings
from .study_population import StudyPopulation

WINDOW_COLUMNS = ["case_id", "start_day", "end_day", "covariate_id", "covariate_value"]


@dataclass(frozen=True)
class SplineBasis:
    """Fitted knot placement for one spline kind.

    Knot positions are in age-months (age_in_days / days_per_month) for age, in
    calendar month index (year * 12 + month - 1) for calendar time, and in
    month-of-year on [1, 13] for season.
    """

    kind: SplineKind
    knots: tuple[float, ...]
    covariate_ids: tuple[int, ...]
    allow_regularization: bool = True
    days_per_month: float = 30.5

    @property
    def formula(self) -> str:
        fn = "cc" if self.kind == SplineKind.SEASON else "cr"
        inner = [float(k) for k in self.knots[1:-1]]
        return f"{fn}(x, knots={inner!r}, lower_bound={self.knots[0]!r}, upper_bound={self.knots[-1]!r}) - 1"

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        """Basis values with the reference (first) column dropped, one column per covariate id."""
        x = np.asarray(x, dtype=float)
        if x.size == 0:
            return np.zeros((0, len(self.covariate_ids)))
        lo, hi = self.knots[0], self.knots[-1]
        if self.kind == SplineKind.SEASON:
            x = np.clip(x, lo, np.nextafter(hi, lo))
        else:
            x = np.clip(x, lo, hi)
        basis = np.asarray(dmatrix(self.formula, {"x": x}, return_type="matrix"))
        return basis[:, 1:]

    def covariate_ref(self, settings_index: int = -1) -> pd.DataFrame:
        title = self.kind.value.capitalize()
        return pd.DataFrame(
            {
                "covariate_id": list(self.covariate_ids),
                "covariate_name": [f"{title} spline component {i + 1}" for i in range(len(self.covariate_ids))],
                "covariate_type": self.kind.value,
                "settings_index": settings_index,
                "era_id": pd.NA,
                "split_index": 0,
                "exposure_of_interest": False,
                "allow_regularization": self.allow_regularization,
            }
        )


def _month_index(dates: pd.Series) -> np.ndarray:
    return (dates.dt.year * 12 + dates.dt.month - 1).to_numpy(dtype=np.int64)


def _outcome_positions(population: StudyPopulation, kind: SplineKind, days_per_month: float) -> np.ndarray:
    joined = population.outcomes.merge(
        population.cases[["case_id", "age_in_days", "start_date"]], on="case_id", how="inner"
    )
    if kind == SplineKind.AGE:
        return ((joined["age_in_days"] + joined["outcome_day"]) / days_per_month).to_numpy(dtype=float)
    dates = joined["start_date"] + pd.to_timedelta(joined["outcome_day"], unit="D")
    return _month_index(dates).astype(float)


def _place_knots(settings: SplineSettings, population: StudyPopulation, config: dict) -> tuple[float, ...]:
    if not isinstance(settings.knots, int):
        return tuple(settings.knots)
    n_knots = settings.knots
    if settings.kind == SplineKind.SEASON:
        return tuple(float(x) for x in np.linspace(1.0, 13.0, n_knots))

    positions = _outcome_positions(population, settings.kind, float(config["days_per_month"]))
    if positions.size == 0:
        raise SccsDataError(f"Cannot place {settings.kind.value} spline knots: the population has no outcomes.")
    low_q, high_q = config["spline_knot_quantile_range"]
    knots = np.unique(np.quantile(positions, np.linspace(low_q, high_q, n_knots)))
    if len(knots) < n_knots:
        lo, hi = float(positions.min()), float(positions.max())
        if hi <= lo:
            raise SccsDataError(
                f"Cannot place {settings.kind.value} spline knots: all outcomes fall at position {lo:g}."
            )
        logging.info(
            "Outcome %s distribution too concentrated for quantile knots; spacing %s knots evenly",
            settings.kind.value,
            n_knots,
        )
        knots = np.linspace(lo, hi, n_knots)
    return tuple(float(x) for x in knots)


def fit_spline_basis(settings: SplineSettings, population: StudyPopulation, config: dict | None = None) -> SplineBasis:
    cfg = resolve_config(config)
    knots = _place_knots(settings, population, cfg)
    # cr has one column per knot; cc identifies the two boundary knots.
    n_columns = len(knots) - 1 if settings.kind == SplineKind.SEASON else len(knots)
    first_id = SPLINE_COVARIATE_ID_START[settings.kind.value]
    covariate_ids = tuple(range(first_id, first_id + n_columns - 1))
    logging.info("Fitted %s spline: knots=%s covariates=%s", settings.kind.value, len(knots), len(covariate_ids))
    return SplineBasis(
        kind=settings.kind,
        knots=knots,
        covariate_ids=covariate_ids,
        allow_regularization=settings.allow_regularization,
        days_per_month=float(cfg["days_per_month"]),
    )


def month_pieces(cases: pd.DataFrame, kind: SplineKind, days_per_month: float | None = None) -> pd.DataFrame:
    """Split each case span at month boundaries; returns case_id, start_day, end_day, x."""
    if cases.empty:
        return pd.DataFrame(columns=["case_id", "start_day", "end_day", "x"])
    start_day = cases["start_day"].to_numpy(dtype=np.int64)
    end_day = cases["end_day"].to_numpy(dtype=np.int64)

    if kind == SplineKind.AGE:
        days_per_month = float(CONFIG["days_per_month"] if days_per_month is None else days_per_month)
        age = cases["age_in_days"].to_numpy(dtype=np.int64)
        m0 = np.floor((age + start_day) / days_per_month).astype(np.int64)
        m1 = np.floor((age + end_day) / days_per_month).astype(np.int64)
    else:
        start_dates = cases["start_date"].reset_index(drop=True)
        m0 = _month_index(start_dates + pd.to_timedelta(start_day, unit="D"))
        m1 = _month_index(start_dates + pd.to_timedelta(end_day, unit="D"))

    counts = m1 - m0 + 1
    case_pos = np.repeat(np.arange(len(cases)), counts)
    offsets = np.arange(len(case_pos)) - np.repeat(np.cumsum(counts) - counts, counts)
    month = m0[case_pos] + offsets

    if kind == SplineKind.AGE:
        boundary = np.ceil(month * days_per_month - age[case_pos]).astype(np.int64)
        x = month.astype(float)
    else:
        firsts = pd.to_datetime(pd.DataFrame({"year": month // 12, "month": month % 12 + 1, "day": 1}))
        origin = cases["start_date"].to_numpy()[case_pos]
        boundary = ((firsts.to_numpy() - origin) // np.timedelta64(1, "D")).astype(np.int64)
        x = (month % 12 + 1).astype(float) if kind == SplineKind.SEASON else month.astype(float)

    piece_start = np.maximum(boundary, start_day[case_pos])
    next_start = pd.Series(piece_start).groupby(case_pos).shift(-1)
    piece_end = np.where(next_start.isna(), end_day[case_pos], next_start.fillna(0).to_numpy() - 1).astype(np.int64)
    out = pd.DataFrame(
        {
            "case_id": cases["case_id"].to_numpy()[case_pos],
            "start_day": piece_start,
            "end_day": piece_end,
            "x": x,
        }
    )
    return out.loc[out["start_day"] <= out["end_day"]].reset_index(drop=True)


def build_spline_windows(population: StudyPopulation, basis: SplineBasis) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Covariate windows (one per month piece and non-zero basis column) and the interior month cut points."""
    pieces = month_pieces(population.cases, basis.kind, basis.days_per_month)
    values = basis.evaluate(pieces["x"].to_numpy())
    n_pieces, n_cols = values.shape
    windows = pd.DataFrame(
        {
            "case_id": np.repeat(pieces["case_id"].to_numpy(), n_cols),
            "start_day": np.repeat(pieces["start_day"].to_numpy(), n_cols),
            "end_day": np.repeat(pieces["end_day"].to_numpy(), n_cols),
            "covariate_id": np.tile(np.asarray(basis.covariate_ids, dtype=np.int64), n_pieces),
            "covariate_value": values.reshape(-1),
        },
        columns=WINDOW_COLUMNS,
    )
    windows = windows.loc[windows["covariate_value"] != 0].reset_index(drop=True)

    first_piece = ~pieces["case_id"].duplicated(keep="first")
    cut_points = pieces.loc[~first_piece, ["case_id", "start_day"]].rename(columns={"start_day": "day"})
    return windows, cut_points.reset_index(drop=True)
