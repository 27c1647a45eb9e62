"""Validated settings objects for study population, covariates, censoring and diagnostics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, Sequence, Union

import pandas as pd

from .errors import SccsConfigurationError


class Anchor(str, Enum):
    ERA_START = "era start"
    ERA_END = "era end"


class SplineKind(str, Enum):
    AGE = "age"
    SEASON = "season"
    CALENDAR_TIME = "calendar time"


class CensorModelType(Enum):
    WEIBULL_AGE = 1
    WEIBULL_INTERVAL = 2
    GAMMA_AGE = 3
    GAMMA_INTERVAL = 4

    @property
    def label(self) -> str:
        return {
            CensorModelType.WEIBULL_AGE: "Weibull-Age",
            CensorModelType.WEIBULL_INTERVAL: "Weibull-Interval",
            CensorModelType.GAMMA_AGE: "Gamma-Age",
            CensorModelType.GAMMA_INTERVAL: "Gamma-Interval",
        }[self]

    @property
    def family(self) -> str:
        return "weibull" if self in (CensorModelType.WEIBULL_AGE, CensorModelType.WEIBULL_INTERVAL) else "gamma"

    @property
    def age_based(self) -> bool:
        return self in (CensorModelType.WEIBULL_AGE, CensorModelType.GAMMA_AGE)


def _coerce_enum(enum_cls: type[Enum], value: object, field_name: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(repr(x.value) for x in enum_cls)
        raise SccsConfigurationError(f"{field_name} must be one of {allowed}; got {value!r}.") from exc


def _int_tuple(values: Iterable[object] | int | None, field_name: str) -> tuple[int, ...]:
    if values is None:
        return ()
    if isinstance(values, (int, float)) and not isinstance(values, bool):
        values = [values]
    out: list[int] = []
    for x in values:
        if isinstance(x, bool) or float(x) != int(x):
            raise SccsConfigurationError(f"{field_name} must contain integers; got {x!r}.")
        out.append(int(x))
    return tuple(out)


def _to_date(value: object, field_name: str) -> date | None:
    if value is None:
        return None
    try:
        return pd.Timestamp(value).date()
    except (TypeError, ValueError) as exc:
        raise SccsConfigurationError(f"{field_name} is not a valid date: {value!r}.") from exc


@dataclass(frozen=True)
class StudyPopulationSettings:
    outcome_id: int
    first_outcome_only: bool = False
    naive_period: int = 0
    min_age: float | None = None
    max_age: float | None = None
    study_start_date: date | None = None
    study_end_date: date | None = None
    restrict_to_nesting_cohort: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcome_id", _int_tuple(self.outcome_id, "outcome_id")[0])
        object.__setattr__(self, "study_start_date", _to_date(self.study_start_date, "study_start_date"))
        object.__setattr__(self, "study_end_date", _to_date(self.study_end_date, "study_end_date"))
        if int(self.naive_period) < 0:
            raise SccsConfigurationError(f"naive_period must be >= 0; got {self.naive_period}.")
        object.__setattr__(self, "naive_period", int(self.naive_period))
        if self.min_age is not None and self.min_age < 0:
            raise SccsConfigurationError(f"min_age must be >= 0; got {self.min_age}.")
        if self.min_age is not None and self.max_age is not None and self.max_age < self.min_age:
            raise SccsConfigurationError(f"max_age ({self.max_age}) is below min_age ({self.min_age}).")
        if (
            self.study_start_date is not None
            and self.study_end_date is not None
            and self.study_end_date < self.study_start_date
        ):
            raise SccsConfigurationError(
                f"study_end_date ({self.study_end_date}) precedes study_start_date ({self.study_start_date})."
            )


@dataclass(frozen=True)
class EraCovariateSettings:
    label: str = "Covariates"
    include_era_ids: tuple[int, ...] = ()
    exclude_era_ids: tuple[int, ...] = ()
    stratify_by_id: bool = False
    start: int = 0
    start_anchor: Anchor = Anchor.ERA_START
    end: int = 0
    end_anchor: Anchor = Anchor.ERA_END
    first_occurrence_only: bool = False
    allow_regularization: bool = False
    split_points: tuple[int, ...] = ()
    exposure_of_interest: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "include_era_ids", _int_tuple(self.include_era_ids, "include_era_ids"))
        object.__setattr__(self, "exclude_era_ids", _int_tuple(self.exclude_era_ids, "exclude_era_ids"))
        object.__setattr__(self, "split_points", _int_tuple(self.split_points, "split_points"))
        object.__setattr__(self, "start_anchor", _coerce_enum(Anchor, self.start_anchor, "start_anchor"))
        object.__setattr__(self, "end_anchor", _coerce_enum(Anchor, self.end_anchor, "end_anchor"))
        object.__setattr__(self, "start", int(self.start))
        object.__setattr__(self, "end", int(self.end))

        context = f"EraCovariateSettings(label={self.label!r})"
        if not self.include_era_ids and not self.exclude_era_ids and not self.stratify_by_id:
            raise SccsConfigurationError(
                f"{context}: include_era_ids and exclude_era_ids are both empty and stratify_by_id is False; "
                "this would pool every era into a single covariate."
            )
        overlap = set(self.include_era_ids) & set(self.exclude_era_ids)
        if overlap:
            raise SccsConfigurationError(f"{context}: era ids both included and excluded: {sorted(overlap)}.")
        if self.exposure_of_interest and self.allow_regularization:
            raise SccsConfigurationError(f"{context}: the exposure of interest cannot be regularized.")
        if self.start_anchor == self.end_anchor and self.start > self.end:
            raise SccsConfigurationError(
                f"{context}: risk window start ({self.start}) is after its end ({self.end}) on the same anchor."
            )
        if self.split_points:
            if list(self.split_points) != sorted(set(self.split_points)):
                raise SccsConfigurationError(f"{context}: split_points must be strictly increasing.")
            if self.split_points[0] < self.start:
                raise SccsConfigurationError(f"{context}: split point {self.split_points[0]} precedes window start.")
            if self.start_anchor == self.end_anchor and self.split_points[-1] >= self.end:
                raise SccsConfigurationError(f"{context}: split point {self.split_points[-1]} is not before window end.")

    @property
    def n_windows(self) -> int:
        return len(self.split_points) + 1


@dataclass(frozen=True)
class SplineSettings:
    kind: SplineKind
    knots: int | tuple[float, ...] = 5
    allow_regularization: bool = True

    def __post_init__(self) -> None:
        kind = _coerce_enum(SplineKind, self.kind, "kind")
        object.__setattr__(self, "kind", kind)
        context = f"SplineSettings(kind={kind.value!r})"
        if isinstance(self.knots, bool):
            raise SccsConfigurationError(f"{context}: knots must be a count or a sequence of positions.")
        if isinstance(self.knots, (int, float)):
            if int(self.knots) != self.knots or int(self.knots) < 3:
                raise SccsConfigurationError(f"{context}: at least 3 knots are required; got {self.knots}.")
            if int(self.knots) > 100:
                raise SccsConfigurationError(f"{context}: at most 100 knots fit in one covariate id band.")
            object.__setattr__(self, "knots", int(self.knots))
            return
        positions = tuple(float(x) for x in self.knots)
        if len(positions) < 3 or len(positions) > 100:
            raise SccsConfigurationError(f"{context}: between 3 and 100 knot positions are required.")
        if list(positions) != sorted(set(positions)):
            raise SccsConfigurationError(f"{context}: knot positions must be strictly increasing.")
        if kind == SplineKind.SEASON and (positions[0] != 1.0 or positions[-1] != 13.0):
            raise SccsConfigurationError(f"{context}: season knots must start at month 1 and end at month 13.")
        object.__setattr__(self, "knots", positions)


CovariateSettings = Union[EraCovariateSettings, SplineSettings]


def validate_covariate_settings(settings_list: Sequence[CovariateSettings]) -> tuple[CovariateSettings, ...]:
    """Fail fast on an unusable covariate configuration."""
    if isinstance(settings_list, (EraCovariateSettings, SplineSettings)):
        settings_list = [settings_list]
    out = tuple(settings_list)
    if not out:
        raise SccsConfigurationError("At least one covariate settings object is required.")
    kinds: list[SplineKind] = []
    for i, settings in enumerate(out):
        if isinstance(settings, SplineSettings):
            if settings.kind in kinds:
                raise SccsConfigurationError(f"Duplicate spline settings for {settings.kind.value!r}.")
            kinds.append(settings.kind)
        elif not isinstance(settings, EraCovariateSettings):
            raise SccsConfigurationError(
                f"Covariate settings #{i} has unsupported type {type(settings).__name__}."
            )
    return out


@dataclass(frozen=True)
class CensoringSettings:
    enabled: bool = False
    model_types: tuple[CensorModelType, ...] = tuple(CensorModelType)
    database_end_date: date | None = None
    max_iterations: int = 1000

    def __post_init__(self) -> None:
        types = tuple(x if isinstance(x, CensorModelType) else CensorModelType(int(x)) for x in self.model_types)
        if not types:
            raise SccsConfigurationError("CensoringSettings: at least one model type is required.")
        object.__setattr__(self, "model_types", types)
        object.__setattr__(self, "database_end_date", _to_date(self.database_end_date, "database_end_date"))
        if int(self.max_iterations) < 1:
            raise SccsConfigurationError("CensoringSettings: max_iterations must be positive.")


@dataclass(frozen=True)
class DiagnosticThresholds:
    mdrr_threshold: float = 10.0
    ease_threshold: float = 0.25
    time_trend_p_threshold: float = 0.05
    pre_exposure_p_threshold: float = 0.05

    def __post_init__(self) -> None:
        if self.mdrr_threshold <= 1.0:
            raise SccsConfigurationError(f"mdrr_threshold must exceed 1; got {self.mdrr_threshold}.")
        if self.ease_threshold < 0:
            raise SccsConfigurationError(f"ease_threshold must be >= 0; got {self.ease_threshold}.")
        for name in ("time_trend_p_threshold", "pre_exposure_p_threshold"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise SccsConfigurationError(f"{name} must lie in (0, 1); got {value}.")
