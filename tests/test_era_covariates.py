from __future__ import annotations

import pandas as pd
import pytest

from conftest import OUTCOME_ID, make_cases, make_eras
from sccs_pipeline.era_covariates import (
    build_era_covariate_ref,
    resolve_covariates,
    resolve_era_covariates,
    union_windows,
)
from sccs_pipeline.settings import EraCovariateSettings, StudyPopulationSettings
from sccs_pipeline.study_population import create_study_population

ERA_REF = pd.DataFrame(
    {
        "era_type": ["outcome", "exposure", "exposure", "custom"],
        "era_id": [OUTCOME_ID, 1, 2, 3],
        "era_name": ["Outcome", "Drug A", "Drug B", "Pregnancy"],
    }
)


def _population(extra_eras):
    cases = make_cases(
        [{"case_id": 1, "person_id": 1, "age_in_days": 10000, "start_date": "2020-01-01", "observation_days": 101}]
    )
    eras = make_eras([(1, "outcome", OUTCOME_ID, 50, 50), *extra_eras])
    return create_study_population(cases, eras, StudyPopulationSettings(outcome_id=OUTCOME_ID)), eras


def _windows(settings, extra_eras):
    population, eras = _population(extra_eras)
    ref = build_era_covariate_ref([settings], ERA_REF)
    windows, _ = resolve_era_covariates(population, eras, settings, 0, ref)
    return windows, ref


def test_window_anchored_at_era_end_covers_last_exposed_day_only():
    settings = EraCovariateSettings(include_era_ids=[1], start=0, start_anchor="era end", end=0, end_anchor="era end")
    windows, _ = _windows(settings, [(1, "exposure", 1, 10, 15)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[15, 15]]


def test_default_window_covers_whole_era_inclusive():
    settings = EraCovariateSettings(include_era_ids=[1])
    windows, _ = _windows(settings, [(1, "exposure", 1, 10, 15)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[10, 15]]
    assert windows["covariate_value"].tolist() == [1.0]


def test_window_offsets_relative_to_anchor():
    settings = EraCovariateSettings(include_era_ids=[1], start=1, end=7, end_anchor="era start")
    windows, _ = _windows(settings, [(1, "exposure", 1, 10, 15)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[11, 17]]


def test_window_is_clipped_to_span_and_outside_window_dropped():
    settings = EraCovariateSettings(include_era_ids=[1], start=0, end=30)
    windows, _ = _windows(settings, [(1, "exposure", 1, 90, 95), (1, "exposure", 1, 150, 160)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[90, 100]]


def test_pooled_ids_are_unioned():
    settings = EraCovariateSettings(include_era_ids=[1, 2])
    windows, ref = _windows(settings, [(1, "exposure", 1, 10, 20), (1, "exposure", 2, 15, 30)])
    assert len(ref) == 1
    assert windows[["start_day", "end_day"]].values.tolist() == [[10, 30]]


def test_adjacent_windows_of_one_covariate_merge():
    settings = EraCovariateSettings(include_era_ids=[1])
    windows, _ = _windows(settings, [(1, "exposure", 1, 10, 20), (1, "exposure", 1, 21, 25)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[10, 25]]


def test_stratified_ids_stay_separate_and_overlap():
    settings = EraCovariateSettings(include_era_ids=[1, 2], stratify_by_id=True)
    windows, ref = _windows(settings, [(1, "exposure", 1, 10, 20), (1, "exposure", 2, 15, 30)])
    assert ref["covariate_id"].tolist() == [1000, 1001]
    assert ref["covariate_name"].tolist() == ["Covariates: Drug A", "Covariates: Drug B"]
    by_id = windows.set_index("covariate_id")[["start_day", "end_day"]]
    assert by_id.loc[1000].tolist() == [10, 20]
    assert by_id.loc[1001].tolist() == [15, 30]


def test_stratification_without_include_uses_all_covariate_eras():
    ref = build_era_covariate_ref([EraCovariateSettings(stratify_by_id=True, exclude_era_ids=[2])], ERA_REF)
    assert ref["era_id"].tolist() == [1, 3]


def test_split_points_create_one_covariate_per_piece():
    settings = EraCovariateSettings(include_era_ids=[1], start=0, end=30, end_anchor="era start", split_points=[10])
    windows, ref = _windows(settings, [(1, "exposure", 1, 20, 25)])
    assert ref["covariate_name"].tolist() == ["Covariates, day 0-10", "Covariates, day 11-30"]
    assert windows[["covariate_id", "start_day", "end_day"]].values.tolist() == [[1000, 20, 30], [1001, 31, 50]]


def test_first_occurrence_only():
    settings = EraCovariateSettings(include_era_ids=[1], first_occurrence_only=True)
    windows, _ = _windows(settings, [(1, "exposure", 1, 60, 70), (1, "exposure", 1, 10, 20)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[10, 20]]


def test_outcome_eras_are_not_covariates():
    settings = EraCovariateSettings(exclude_era_ids=[2])
    windows, _ = _windows(settings, [(1, "custom", 3, 5, 8)])
    assert windows[["start_day", "end_day"]].values.tolist() == [[5, 8]]


def test_covariate_ids_depend_only_on_settings_and_era_ref():
    settings_list = [
        EraCovariateSettings(label="Exposure", include_era_ids=[1], exposure_of_interest=True),
        EraCovariateSettings(label="Others", stratify_by_id=True, exclude_era_ids=[1]),
    ]
    first = build_era_covariate_ref(settings_list, ERA_REF)
    second = build_era_covariate_ref(settings_list, ERA_REF.sample(frac=1.0, random_state=3))
    pd.testing.assert_frame_equal(first, second)
    assert first["covariate_id"].tolist() == [1000, 1001, 1002]
    assert first["exposure_of_interest"].tolist() == [True, False, False]


def test_era_counts():
    population, eras = _population([(1, "exposure", 1, 10, 20), (1, "exposure", 1, 15, 30), (1, "exposure", 1, 500, 510)])
    settings = EraCovariateSettings(include_era_ids=[1])
    ref = build_era_covariate_ref([settings], ERA_REF)
    _, counts = resolve_era_covariates(population, eras, settings, 0, ref)
    assert counts.to_dict("records") == [{"covariate_id": 1000, "era_count": 2}]


def test_union_windows_keeps_gaps():
    windows = pd.DataFrame(
        {
            "case_id": [1, 1, 1],
            "start_day": [30, 0, 12],
            "end_day": [40, 10, 20],
            "covariate_id": [5, 5, 5],
            "covariate_value": [1.0, 1.0, 1.0],
        }
    )
    merged = union_windows(windows)
    assert merged[["start_day", "end_day"]].values.tolist() == [[0, 10], [12, 20], [30, 40]]


def test_resolve_covariates_rejects_unknown_settings():
    population, eras = _population([])
    with pytest.raises(TypeError, match="Unsupported covariate settings"):
        resolve_covariates(population, eras, [object()], pd.DataFrame(columns=["settings_index"]), {})
