"""Main entrypoint for the SCCS interval pipeline."""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, Iterator, Mapping, Sequence

import pandas as pd

from .censoring import CensorModel, apply_censor_model, compute_time_to_obs_end, fit_censor_model
from .config import CONFIG, resolve_config, validate_config
from .data_source import DuckDbSccsDataSource, SccsDataBatch, SccsDataSource
from .diagnostics import (
    DiagnosticsSummary,
    compute_mdrr,
    compute_spans,
    compute_time_stability,
    compute_time_to_event,
    exposure_of_interest_ids,
    fit_pre_exposure_gain,
    pre_exposure_counts,
    summarize_diagnostics,
    time_trend_p,
)
from .era_covariates import build_era_covariate_ref, resolve_covariates
from .errors import EmptyPopulationError, SccsConfigurationError, SccsDataError
from .interval_data import SccsIntervalData, create_interval_data, merge_interval_data
from .settings import (
    CensoringSettings,
    CovariateSettings,
    DiagnosticThresholds,
    EraCovariateSettings,
    SplineKind,
    SplineSettings,
    StudyPopulationSettings,
    validate_covariate_settings,
)
from .spline_covariates import SplineBasis, fit_spline_basis
from .study_population import StudyPopulation, create_study_population, merge_study_populations

FAILURE_COLUMNS = ["batch_index", "stage", "error_type", "message"]


@dataclass
class PipelineRunResult:
    population: StudyPopulation
    interval_data: SccsIntervalData
    censor_model: CensorModel | None
    mdrr: pd.DataFrame
    pre_exposure: pd.DataFrame
    time_stability: pd.DataFrame
    time_to_event: pd.DataFrame
    time_to_obs_end: pd.DataFrame
    spans: pd.DataFrame
    diagnostics_summary: DiagnosticsSummary
    failures: pd.DataFrame
    notes: list[str]


@dataclass
class _PopulationResult:
    batch_index: int
    population: StudyPopulation | None
    attrition: pd.DataFrame
    notes: list[str]
    failure: dict[str, object] | None = None


@dataclass(frozen=True)
class _IntervalJob:
    covariate_settings: tuple[CovariateSettings, ...]
    covariate_ref: pd.DataFrame
    spline_bases: Mapping[SplineKind, SplineBasis]
    censor_model: CensorModel | None
    database_end_date: date | None
    pre_exposure_keys: tuple[tuple[int, int | None], ...]
    time_to_event_era_ids: tuple[int, ...]
    pre_exposure_days: int
    time_to_event_weeks: int
    config: dict = field(default_factory=dict)


@dataclass
class _IntervalResult:
    batch_index: int
    interval_data: SccsIntervalData | None
    era_counts: pd.DataFrame = field(default_factory=pd.DataFrame)
    pre_exposure: pd.DataFrame = field(default_factory=pd.DataFrame)
    time_to_event: pd.DataFrame = field(default_factory=pd.DataFrame)
    failure: dict[str, object] | None = None


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _failure(batch_index: int, stage: str, exc: Exception) -> dict[str, object]:
    return {"batch_index": batch_index, "stage": stage, "error_type": type(exc).__name__, "message": str(exc)}


def _population_task(batch: SccsDataBatch, settings: StudyPopulationSettings, config: dict) -> _PopulationResult:
    notes: list[str] = []
    try:
        population = create_study_population(batch.cases, batch.eras, settings, notes=notes, config=config)
    except EmptyPopulationError as exc:
        logging.info("Batch %s: %s", batch.batch_index, exc)
        return _PopulationResult(batch.batch_index, None, exc.attrition, notes)
    except SccsDataError as exc:
        logging.warning("Batch %s rejected: %s", batch.batch_index, exc)
        return _PopulationResult(batch.batch_index, None, pd.DataFrame(), notes, _failure(batch.batch_index, "study_population", exc))
    return _PopulationResult(batch.batch_index, population, population.attrition, notes)


def _interval_task(batch_index: int, population: StudyPopulation, eras: pd.DataFrame, job: _IntervalJob) -> _IntervalResult:
    try:
        resolved = resolve_covariates(population, eras, job.covariate_settings, job.covariate_ref, job.spline_bases)
        data = create_interval_data(population, resolved, job.covariate_ref)
        if job.censor_model is not None:
            data = apply_censor_model(data, population, job.censor_model, job.database_end_date, job.config)

        pre_frames = []
        for settings_index, era_id in job.pre_exposure_keys:
            settings = job.covariate_settings[settings_index]
            counts = pre_exposure_counts(population, eras, settings, era_id, job.pre_exposure_days)
            pre_frames.append(counts.assign(settings_index=settings_index, era_id=era_id))
        tte_frames = [
            compute_time_to_event(population, eras, era_id, job.time_to_event_weeks).assign(era_id=era_id)
            for era_id in job.time_to_event_era_ids
        ]
    except SccsDataError as exc:
        logging.warning("Batch %s rejected: %s", batch_index, exc)
        return _IntervalResult(batch_index, None, failure=_failure(batch_index, "interval_data", exc))
    return _IntervalResult(
        batch_index,
        data,
        era_counts=resolved.era_counts,
        pre_exposure=pd.concat(pre_frames, ignore_index=True) if pre_frames else pd.DataFrame(),
        time_to_event=pd.concat(tte_frames, ignore_index=True) if tte_frames else pd.DataFrame(),
    )


def _run_bounded(
    fn: Callable[..., object],
    tasks: Iterable[tuple],
    max_workers: int,
    max_in_flight: int,
) -> list:
    """Run fn over tasks, in-process or on a process pool with a bounded number of pending batches."""
    if max_workers <= 1:
        return [fn(*args) for args in tasks]

    results = []
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        pending: set[Future] = set()
        for args in tasks:
            pending.add(executor.submit(fn, *args))
            if len(pending) >= max_in_flight:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                results.extend(future.result() for future in done)
        for future in pending:
            results.append(future.result())
    return results


def _exposure_keys(settings_list: Sequence[CovariateSettings], covariate_ref: pd.DataFrame) -> list[tuple[int, int | None]]:
    keys: list[tuple[int, int | None]] = []
    for settings_index, settings in enumerate(settings_list):
        if not isinstance(settings, EraCovariateSettings) or not settings.exposure_of_interest:
            continue
        if settings.stratify_by_id:
            rows = covariate_ref.loc[covariate_ref["settings_index"] == settings_index, "era_id"]
            keys.extend((settings_index, int(era_id)) for era_id in pd.unique(rows.dropna()))
        else:
            keys.append((settings_index, None))
    return keys


def _time_to_event_ids(settings_list: Sequence[CovariateSettings], keys: Sequence[tuple[int, int | None]]) -> tuple[int, ...]:
    ids: list[int] = []
    for settings_index, era_id in keys:
        candidates = [era_id] if era_id is not None else list(settings_list[settings_index].include_era_ids)
        ids.extend(x for x in candidates if x not in ids)
    return tuple(ids)


def _iter_interval_tasks(
    data_source: SccsDataSource,
    population: StudyPopulation,
    batch_size: int,
    job: _IntervalJob,
    skip: set[int],
) -> Iterator[tuple]:
    for batch in data_source.iter_batches(batch_size):
        if batch.batch_index in skip:
            continue
        subset = population.subset(batch.cases["case_id"])
        if subset.cases.empty:
            continue
        yield batch.batch_index, subset, batch.eras, job


def run_sccs_pipeline(
    data_source: SccsDataSource,
    population_settings: StudyPopulationSettings,
    covariate_settings: Sequence[CovariateSettings] | CovariateSettings,
    censoring: CensoringSettings | None = None,
    thresholds: DiagnosticThresholds | None = None,
    coefficients: Mapping[int, float] | None = None,
    ease: float | None = None,
    config: Mapping[str, object] | None = None,
) -> PipelineRunResult:
    """Two passes over the data source: study population first, then covariates, segmentation and weights."""
    cfg = resolve_config(dict(config or {}))
    validate_config(cfg)
    settings_list = validate_covariate_settings(covariate_settings)
    censoring = censoring or CensoringSettings()
    batch_size = int(cfg["batch_size"])
    max_workers = int(cfg["max_workers"])
    max_in_flight = max(int(cfg["max_in_flight_batches"]), max_workers)
    notes: list[str] = []

    logging.info(
        "Starting SCCS pipeline. outcome_id=%s covariate_settings=%s batch_size=%s max_workers=%s",
        population_settings.outcome_id,
        len(settings_list),
        batch_size,
        max_workers,
    )

    population_results = _run_bounded(
        _population_task,
        ((batch, population_settings, cfg) for batch in data_source.iter_batches(batch_size)),
        max_workers,
        max_in_flight,
    )
    population_results.sort(key=lambda r: r.batch_index)
    failures = [r.failure for r in population_results if r.failure is not None]
    for r in population_results:
        notes.extend(r.notes)
    population = merge_study_populations(
        [r.population for r in population_results if r.population is not None],
        [r.attrition for r in population_results if r.failure is None],
        population_settings,
    )
    population.notes = list(notes)
    logging.info("Study population: cases=%s outcomes=%s", population.n_cases, len(population.outcomes))

    spline_bases: dict[SplineKind, SplineBasis] = {}
    ref_frames = [build_era_covariate_ref(settings_list, data_source.era_ref)]
    for settings_index, settings in enumerate(settings_list):
        if isinstance(settings, SplineSettings):
            basis = fit_spline_basis(settings, population, cfg)
            spline_bases[settings.kind] = basis
            ref_frames.append(basis.covariate_ref(settings_index))
    non_empty_refs = [f for f in ref_frames if not f.empty]
    covariate_ref = (
        pd.concat(non_empty_refs, ignore_index=True).sort_values("covariate_id").reset_index(drop=True)
        if non_empty_refs
        else ref_frames[0]
    )

    censor_model = fit_censor_model(population, censoring, notes, cfg) if censoring.enabled else None

    keys = _exposure_keys(settings_list, covariate_ref)
    job = _IntervalJob(
        covariate_settings=settings_list,
        covariate_ref=covariate_ref,
        spline_bases=spline_bases,
        censor_model=censor_model,
        database_end_date=censoring.database_end_date,
        pre_exposure_keys=tuple(keys),
        time_to_event_era_ids=_time_to_event_ids(settings_list, keys),
        pre_exposure_days=int(cfg["pre_exposure_days"]),
        time_to_event_weeks=int(cfg["time_to_event_weeks"]),
        config=cfg,
    )
    failed_batches = {int(f["batch_index"]) for f in failures}
    interval_results = _run_bounded(
        _interval_task,
        _iter_interval_tasks(data_source, population, batch_size, job, failed_batches),
        max_workers,
        max_in_flight,
    )
    interval_results.sort(key=lambda r: r.batch_index)
    failures.extend(r.failure for r in interval_results if r.failure is not None)
    succeeded = [r for r in interval_results if r.interval_data is not None]

    if len(succeeded) < len(interval_results):
        # Every case has at least one segment, so the surviving cases are those with interval data.
        if not succeeded:
            raise EmptyPopulationError("Every batch failed during interval construction.", attrition=population.attrition)
        kept = pd.concat([r.interval_data.outcomes["case_id"] for r in succeeded], ignore_index=True).unique()
        population = population.subset(kept)

    era_count_frames = [r.era_counts for r in succeeded if not r.era_counts.empty]
    metadata: dict[str, object] = {
        "spline_knots": {kind.value: list(basis.knots) for kind, basis in spline_bases.items()},
        "attrition": population.attrition,
        "censor_model": None
        if censor_model is None
        else {
            "model_type": censor_model.label,
            "parameters": list(censor_model.parameters),
            "log_likelihood": censor_model.log_likelihood,
        },
    }
    interval_data = merge_interval_data(
        [r.interval_data for r in succeeded],
        covariate_ref,
        population.cases,
        pd.concat(era_count_frames, ignore_index=True) if era_count_frames else None,
        metadata,
    )

    mdrr_frames = [
        compute_mdrr(interval_data, int(cid), alpha=float(cfg["mdrr_alpha"]), power=float(cfg["mdrr_power"]),
                     two_sided=bool(cfg["mdrr_two_sided"]), method=str(cfg["mdrr_method"]))
        for cid in exposure_of_interest_ids(interval_data)
    ]
    mdrr = pd.concat(mdrr_frames, ignore_index=True) if mdrr_frames else pd.DataFrame()

    pre_frames = [r.pre_exposure for r in succeeded if not r.pre_exposure.empty]
    pre_all = pd.concat(pre_frames, ignore_index=True) if pre_frames else pd.DataFrame()
    pre_rows = []
    for settings_index, era_id in keys:
        if pre_all.empty:
            subset = pd.DataFrame(columns=["pre_days", "pre_outcomes", "ref_days", "ref_outcomes"])
        else:
            match = pre_all["settings_index"] == settings_index
            match &= pre_all["era_id"].isna() if era_id is None else pre_all["era_id"] == era_id
            subset = pre_all.loc[match]
        pre_rows.append({"settings_index": settings_index, "era_id": era_id, **fit_pre_exposure_gain(subset)})
    pre_exposure = pd.DataFrame(pre_rows)

    tte_frames = [r.time_to_event for r in succeeded if not r.time_to_event.empty]
    time_to_event = (
        pd.concat(tte_frames, ignore_index=True).groupby(["era_id", "week"], as_index=False)[
            ["outcome_count", "observed_case_count"]
        ].sum()
        if tte_frames
        else pd.DataFrame(columns=["era_id", "week", "outcome_count", "observed_case_count"])
    )

    time_stability = compute_time_stability(
        population,
        interval_data,
        coefficients=coefficients,
        max_ratio=float(cfg["time_stability_max_ratio"]),
        alpha=float(cfg["time_stability_alpha"]),
    )
    summary = summarize_diagnostics(
        mdrr=None if mdrr.empty else float(mdrr["mdrr"].max()),
        ease=ease,
        time_trend_p=time_trend_p(time_stability),
        pre_exposure_p=None if pre_exposure.empty else float(pre_exposure["p"].min()),
        thresholds=thresholds,
    )
    if failures:
        logging.warning("%s batches failed; results cover the remaining batches.", len(failures))
        notes.append(f"{len(failures)} batches failed and were excluded.")
    logging.info("Pipeline complete. segments=%s unblind=%s", len(interval_data.outcomes), summary.unblind)

    return PipelineRunResult(
        population=population,
        interval_data=interval_data,
        censor_model=censor_model,
        mdrr=mdrr,
        pre_exposure=pre_exposure,
        time_stability=time_stability,
        time_to_event=time_to_event,
        time_to_obs_end=compute_time_to_obs_end(population, censoring.database_end_date, cfg),
        spans=compute_spans(population, cfg),
        diagnostics_summary=summary,
        failures=pd.DataFrame(failures, columns=FAILURE_COLUMNS),
        notes=notes,
    )


def main() -> PipelineRunResult:
    _configure_logging()
    validate_config(CONFIG)
    for key in ("cases_path", "eras_path", "era_ref_path"):
        if not CONFIG[key]:
            raise SccsConfigurationError(f"CONFIG['{key}'] is empty; set SCCS_{key.upper()}.")
    if CONFIG["outcome_id"] is None or CONFIG["exposure_id"] is None:
        raise SccsConfigurationError("Set SCCS_OUTCOME_ID and SCCS_EXPOSURE_ID.")

    source = DuckDbSccsDataSource.from_parquet(CONFIG["cases_path"], CONFIG["eras_path"], CONFIG["era_ref_path"])
    result = run_sccs_pipeline(
        source,
        StudyPopulationSettings(outcome_id=int(CONFIG["outcome_id"]), naive_period=int(CONFIG["naive_period"])),
        [
            EraCovariateSettings(
                label="Exposure of interest",
                include_era_ids=(int(CONFIG["exposure_id"]),),
                exposure_of_interest=True,
            ),
            SplineSettings(kind=SplineKind.SEASON),
        ],
    )
    _print_df("attrition", result.population.attrition)
    _print_df("covariate_statistics", result.interval_data.covariate_statistics)
    _print_df("mdrr", result.mdrr)
    _print_df("pre_exposure", result.pre_exposure)
    _print_df("diagnostics_summary", result.diagnostics_summary.table)
    return result


if __name__ == "__main__":
    main()
