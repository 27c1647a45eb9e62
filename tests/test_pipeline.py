from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from conftest import EXPOSURE_IDS, OUTCOME_ID
from sccs_pipeline.data_source import InMemorySccsDataSource
from sccs_pipeline.errors import EmptyPopulationError, SccsConfigurationError
from sccs_pipeline.pipeline import run_sccs_pipeline
from sccs_pipeline.settings import (
    CensoringSettings,
    EraCovariateSettings,
    SplineKind,
    SplineSettings,
    StudyPopulationSettings,
)

POPULATION = StudyPopulationSettings(outcome_id=OUTCOME_ID, first_outcome_only=True, naive_period=30)
COVARIATES = [
    EraCovariateSettings(label="Exposures", include_era_ids=EXPOSURE_IDS, stratify_by_id=True, exposure_of_interest=True),
    SplineSettings(kind=SplineKind.SEASON, knots=5),
]


@pytest.fixture
def source(dataset):
    cases, eras, era_ref = dataset
    return InMemorySccsDataSource(cases, eras, era_ref)


def test_result_is_independent_of_batch_size(source):
    small = run_sccs_pipeline(source, POPULATION, COVARIATES, config={"batch_size": 2})
    large = run_sccs_pipeline(source, POPULATION, COVARIATES, config={"batch_size": 100})
    pd.testing.assert_frame_equal(small.interval_data.outcomes, large.interval_data.outcomes)
    pd.testing.assert_frame_equal(small.interval_data.covariates, large.interval_data.covariates)
    pd.testing.assert_frame_equal(small.population.attrition, large.population.attrition)
    pd.testing.assert_frame_equal(small.mdrr, large.mdrr)
    assert small.failures.empty


def test_process_pool_matches_in_process(source):
    serial = run_sccs_pipeline(source, POPULATION, COVARIATES, config={"batch_size": 3})
    parallel = run_sccs_pipeline(source, POPULATION, COVARIATES, config={"batch_size": 3, "max_workers": 2})
    pd.testing.assert_frame_equal(serial.interval_data.outcomes, parallel.interval_data.outcomes)
    pd.testing.assert_frame_equal(serial.interval_data.covariates, parallel.interval_data.covariates)
    pd.testing.assert_frame_equal(serial.time_stability, parallel.time_stability)


def test_result_contents(source):
    result = run_sccs_pipeline(source, POPULATION, COVARIATES, config={"batch_size": 4})
    data = result.interval_data
    assert data.outcomes["outcome_count"].sum() == len(result.population.outcomes)
    assert data.outcomes["row_id"].tolist() == list(range(len(data.outcomes)))
    ref = data.covariate_ref.set_index("covariate_id")
    assert {"Exposures: Drug A", "Exposures: Drug B"} <= set(ref["covariate_name"])
    assert {200, 201, 202} <= set(ref.index)
    assert len(data.metadata["spline_knots"]["season"]) == 5
    assert set(result.mdrr["covariate_id"]) == set(ref.index[ref["exposure_of_interest"].astype(bool)])
    assert len(result.pre_exposure) == 2
    assert result.population.attrition["description"].tolist()[:3] == [
        "Outcomes",
        "First outcome only",
        "Requiring 30 days naive period",
    ]
    assert set(result.diagnostics_summary.table["diagnostic"]) == {"mdrr", "ease", "time_trend_p", "pre_exposure_p"}
    assert set(result.spans["kind"]) == {"age", "calendar time"}
    assert result.censor_model is None
    np.testing.assert_array_equal(data.outcomes["weighted_time"], data.outcomes["time"])


class _BrokenBatchSource(InMemorySccsDataSource):
    """Injects an era ending before it starts into the first batch."""

    def fetch_batch(self, person_ids):
        cases, eras = super().fetch_batch(person_ids)
        if 1 in set(person_ids):
            bad = pd.DataFrame(
                {
                    "case_id": cases["case_id"],
                    "era_type": "exposure",
                    "era_id": EXPOSURE_IDS[0],
                    "start_day": 50,
                    "end_day": 10,
                }
            )
            eras = pd.concat([eras, bad], ignore_index=True)
        return cases, eras


def test_failed_batch_is_reported_and_excluded(dataset):
    cases, eras, era_ref = dataset
    result = run_sccs_pipeline(_BrokenBatchSource(cases, eras, era_ref), POPULATION, COVARIATES, config={"batch_size": 4})
    assert len(result.failures) == 1
    failure = result.failures.iloc[0]
    assert failure["batch_index"] == 0
    assert failure["stage"] == "interval_data"
    assert failure["error_type"] == "SccsDataError"
    first_batch_cases = set(cases.loc[cases["person_id"] <= 4, "case_id"])
    assert not first_batch_cases & set(result.interval_data.outcomes["case_id"])
    assert not first_batch_cases & set(result.population.cases["case_id"])
    assert any("failed" in note for note in result.notes)


def test_duplicate_spline_settings_rejected(source):
    with pytest.raises(SccsConfigurationError):
        run_sccs_pipeline(
            source,
            POPULATION,
            [SplineSettings(kind="season"), SplineSettings(kind="season", knots=6)],
        )


def test_unknown_outcome_raises_empty_population(source):
    with pytest.raises(EmptyPopulationError) as excinfo:
        run_sccs_pipeline(source, StudyPopulationSettings(outcome_id=999), COVARIATES)
    assert (excinfo.value.attrition["outcome_events"] == 0).all()


def test_censoring_enabled_run(source):
    result = run_sccs_pipeline(
        source,
        StudyPopulationSettings(outcome_id=OUTCOME_ID),
        COVARIATES[:1],
        censoring=CensoringSettings(enabled=True),
    )
    outcomes = result.interval_data.outcomes
    assert (outcomes["weighted_time"] >= 0).all()
    if result.censor_model is not None:
        per_case = outcomes.groupby("case_id")[["time", "weighted_time"]].sum()
        np.testing.assert_allclose(per_case["weighted_time"], per_case["time"])
        assert result.interval_data.metadata["censor_model"]["model_type"] == result.censor_model.label
    assert len(result.time_to_obs_end) == result.population.n_cases


@pytest.mark.parametrize(
    "population_settings, censoring",
    [
        (StudyPopulationSettings(outcome_id=OUTCOME_ID, max_age=45), CensoringSettings(enabled=True)),
        (StudyPopulationSettings(outcome_id=OUTCOME_ID, study_end_date="2016-12-31"), CensoringSettings(enabled=True)),
        (StudyPopulationSettings(outcome_id=OUTCOME_ID), CensoringSettings(enabled=True, database_end_date="2016-06-30")),
    ],
)
def test_censoring_run_with_observation_limits(source, population_settings, censoring):
    result = run_sccs_pipeline(source, population_settings, COVARIATES[:1], censoring=censoring)
    obs_end = result.time_to_obs_end
    assert len(obs_end) == result.population.n_cases
    assert obs_end["censored"].dtype == bool
    assert (result.interval_data.outcomes["weighted_time"] >= 0).all()


@pytest.mark.parametrize("max_workers", [1, 2])
def test_time_to_event_weeks_override(source, max_workers):
    result = run_sccs_pipeline(
        source, POPULATION, COVARIATES, config={"batch_size": 3, "max_workers": max_workers, "time_to_event_weeks": 4}
    )
    tte = result.time_to_event
    assert not tte.empty
    assert tte["week"].min() == -4
    assert tte["week"].max() == 3


def test_days_per_month_override_changes_age_spans(source):
    default = run_sccs_pipeline(source, POPULATION, COVARIATES)
    shorter = run_sccs_pipeline(source, POPULATION, COVARIATES, config={"days_per_month": 10.0, "max_workers": 2})
    age_default = default.spans.loc[default.spans["kind"] == "age"]
    age_shorter = shorter.spans.loc[shorter.spans["kind"] == "age"]
    assert len(age_shorter) > len(age_default)
    assert age_shorter["observed_days"].sum() == age_default["observed_days"].sum()


def test_config_override_rejects_bad_weeks(source):
    with pytest.raises(SccsConfigurationError):
        run_sccs_pipeline(source, POPULATION, COVARIATES, config={"time_to_event_weeks": 0})
