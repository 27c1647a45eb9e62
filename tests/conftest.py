from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from sccs_pipeline.settings import StudyPopulationSettings
from sccs_pipeline.study_population import create_study_population

OUTCOME_ID = 10
EXPOSURE_IDS = (20, 21)


def make_cases(rows: list[dict]) -> pd.DataFrame:
    df = pd.DataFrame(rows)
    df["start_date"] = pd.to_datetime(df["start_date"])
    if "in_nesting_cohort" not in df.columns:
        df["in_nesting_cohort"] = True
    return df


def make_eras(rows: list[tuple]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=["case_id", "era_type", "era_id", "start_day", "end_day"])


def make_dataset(n_persons: int = 12, seed: int = 7) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    rng = np.random.default_rng(seed)
    cases: list[dict] = []
    eras: list[tuple] = []
    case_id = 0
    for person_id in range(1, n_persons + 1):
        n_periods = 2 if person_id % 4 == 0 else 1
        age = int(rng.integers(20 * 365, 60 * 365))
        first_start = pd.Timestamp("2015-01-01") + pd.Timedelta(days=int(rng.integers(0, 900)))
        for period in range(n_periods):
            case_id += 1
            observation_days = int(rng.integers(200, 700))
            cases.append(
                {
                    "case_id": case_id,
                    "person_id": person_id,
                    "age_in_days": age + period * 1000,
                    "start_date": first_start + pd.Timedelta(days=period * 1000),
                    "observation_days": observation_days,
                    "in_nesting_cohort": bool(person_id % 5),
                }
            )
            for _ in range(int(rng.integers(1, 3))):
                day = int(rng.integers(0, observation_days))
                eras.append((case_id, "outcome", OUTCOME_ID, day, day))
            for _ in range(int(rng.integers(0, 4))):
                start = int(rng.integers(0, observation_days))
                era_id = int(rng.choice(EXPOSURE_IDS))
                eras.append((case_id, "exposure", era_id, start, start + int(rng.integers(5, 60))))
    era_ref = pd.DataFrame(
        {
            "era_type": ["outcome", "exposure", "exposure"],
            "era_id": [OUTCOME_ID, *EXPOSURE_IDS],
            "era_name": ["Outcome", "Drug A", "Drug B"],
        }
    )
    return make_cases(cases), make_eras(eras), era_ref


@pytest.fixture
def scenario_cases() -> pd.DataFrame:
    # One case observed on days 0-100.
    return make_cases(
        [
            {
                "case_id": 1,
                "person_id": 1,
                "age_in_days": 30 * 365,
                "start_date": "2020-01-01",
                "observation_days": 101,
            }
        ]
    )


@pytest.fixture
def scenario_eras() -> pd.DataFrame:
    return make_eras(
        [
            (1, "outcome", OUTCOME_ID, 50, 50),
            (1, "exposure", 20, 40, 60),
        ]
    )


@pytest.fixture
def scenario_population(scenario_cases, scenario_eras):
    return create_study_population(scenario_cases, scenario_eras, StudyPopulationSettings(outcome_id=OUTCOME_ID))


@pytest.fixture
def dataset():
    return make_dataset()


@pytest.fixture
def population(dataset):
    cases, eras, _ = dataset
    return create_study_population(cases, eras, StudyPopulationSettings(outcome_id=OUTCOME_ID))
