from __future__ import annotations

from datetime import date

import pytest

from sccs_pipeline.config import CONFIG, validate_config
from sccs_pipeline.errors import SccsConfigurationError
from sccs_pipeline.settings import (
    Anchor,
    CensoringSettings,
    CensorModelType,
    DiagnosticThresholds,
    EraCovariateSettings,
    SplineKind,
    SplineSettings,
    StudyPopulationSettings,
    validate_covariate_settings,
)


def test_era_settings_require_ids_or_stratification():
    with pytest.raises(SccsConfigurationError, match="both empty"):
        EraCovariateSettings(label="pooled everything")
    assert EraCovariateSettings(stratify_by_id=True).stratify_by_id
    assert EraCovariateSettings(exclude_era_ids=[5]).exclude_era_ids == (5,)


def test_era_settings_coerce_anchor_strings():
    settings = EraCovariateSettings(include_era_ids=[1], start_anchor="Era End", end_anchor="era end")
    assert settings.start_anchor is Anchor.ERA_END
    assert settings.end_anchor is Anchor.ERA_END
    with pytest.raises(SccsConfigurationError, match="start_anchor"):
        EraCovariateSettings(include_era_ids=[1], start_anchor="exposure start")


def test_era_settings_reject_invalid_combinations():
    with pytest.raises(SccsConfigurationError, match="both included and excluded"):
        EraCovariateSettings(include_era_ids=[1, 2], exclude_era_ids=[2])
    with pytest.raises(SccsConfigurationError, match="cannot be regularized"):
        EraCovariateSettings(include_era_ids=[1], exposure_of_interest=True, allow_regularization=True)
    with pytest.raises(SccsConfigurationError, match="after its end"):
        EraCovariateSettings(include_era_ids=[1], start=10, end=5, end_anchor="era start")
    with pytest.raises(SccsConfigurationError, match="strictly increasing"):
        EraCovariateSettings(include_era_ids=[1], split_points=[7, 3])


def test_split_points_must_fall_inside_window():
    settings = EraCovariateSettings(include_era_ids=[1], start=0, end=30, end_anchor="era start", split_points=[10])
    assert settings.n_windows == 2
    with pytest.raises(SccsConfigurationError, match="not before window end"):
        EraCovariateSettings(include_era_ids=[1], start=0, end=30, end_anchor="era start", split_points=[30])


def test_spline_settings_validate_knots():
    with pytest.raises(SccsConfigurationError, match="at least 3"):
        SplineSettings(kind="age", knots=0)
    with pytest.raises(SccsConfigurationError, match="strictly increasing"):
        SplineSettings(kind="age", knots=[1.0, 5.0, 3.0])
    with pytest.raises(SccsConfigurationError, match="season knots"):
        SplineSettings(kind="season", knots=[2.0, 6.0, 13.0])
    assert SplineSettings(kind="Calendar Time").kind is SplineKind.CALENDAR_TIME


def test_validate_covariate_settings():
    single = EraCovariateSettings(include_era_ids=[1])
    assert validate_covariate_settings(single) == (single,)
    with pytest.raises(SccsConfigurationError, match="At least one"):
        validate_covariate_settings([])
    with pytest.raises(SccsConfigurationError, match="Duplicate spline"):
        validate_covariate_settings([SplineSettings(kind="age"), SplineSettings(kind="age", knots=4)])
    with pytest.raises(SccsConfigurationError, match="unsupported type"):
        validate_covariate_settings([single, {"include_era_ids": [1]}])


def test_study_population_settings():
    settings = StudyPopulationSettings(outcome_id=3.0, study_start_date="2019-01-01")
    assert settings.outcome_id == 3
    assert settings.study_start_date == date(2019, 1, 1)
    with pytest.raises(SccsConfigurationError, match="naive_period"):
        StudyPopulationSettings(outcome_id=1, naive_period=-1)
    with pytest.raises(SccsConfigurationError, match="precedes"):
        StudyPopulationSettings(outcome_id=1, study_start_date="2020-01-01", study_end_date="2019-01-01")


def test_censor_model_types_and_thresholds():
    assert [t.label for t in CensorModelType] == ["Weibull-Age", "Weibull-Interval", "Gamma-Age", "Gamma-Interval"]
    assert CensoringSettings(model_types=[2, 4]).model_types == (
        CensorModelType.WEIBULL_INTERVAL,
        CensorModelType.GAMMA_INTERVAL,
    )
    thresholds = DiagnosticThresholds()
    assert (thresholds.mdrr_threshold, thresholds.ease_threshold) == (10.0, 0.25)
    with pytest.raises(SccsConfigurationError):
        DiagnosticThresholds(time_trend_p_threshold=1.5)


def test_validate_config():
    validate_config(CONFIG)
    with pytest.raises(SccsConfigurationError, match="batch_size"):
        validate_config({**CONFIG, "batch_size": 0})
    with pytest.raises(SccsConfigurationError, match="mdrr_method"):
        validate_config({**CONFIG, "mdrr_method": "exact"})
