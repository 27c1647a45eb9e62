from __future__ import annotations

import duckdb
import pandas as pd
import pytest

from sccs_pipeline.data_source import DuckDbSccsDataSource, InMemorySccsDataSource, validate_identifier
from sccs_pipeline.errors import SccsDataError


def _collect(source, batch_size):
    return [(b.batch_index, b.cases, b.eras) for b in source.iter_batches(batch_size)]


def test_in_memory_batches_keep_persons_together(dataset):
    cases, eras, era_ref = dataset
    source = InMemorySccsDataSource(cases, eras, era_ref)
    batches = _collect(source, 5)
    assert [index for index, _, _ in batches] == [0, 1, 2]
    assert source.batch_count(5) == 3
    seen = set()
    for _, batch_cases, batch_eras in batches:
        persons = set(batch_cases["person_id"])
        assert len(persons) <= 5
        assert not persons & seen
        seen |= persons
        all_periods = cases.loc[cases["person_id"].isin(persons), "case_id"]
        assert set(batch_cases["case_id"]) == set(all_periods)
        assert set(batch_eras["case_id"]) <= set(batch_cases["case_id"])
    assert seen == set(cases["person_id"])
    assert sum(len(e) for _, _, e in batches) == len(eras)


def test_in_memory_source_is_reiterable(dataset):
    cases, eras, era_ref = dataset
    source = InMemorySccsDataSource(cases, eras, era_ref)
    first = _collect(source, 4)
    second = _collect(source, 4)
    for (_, c1, e1), (_, c2, e2) in zip(first, second):
        pd.testing.assert_frame_equal(c1, c2)
        pd.testing.assert_frame_equal(e1, e2)


def test_in_memory_source_derives_era_ref(dataset):
    cases, eras, _ = dataset
    source = InMemorySccsDataSource(cases, eras)
    assert set(source.era_ref["era_id"]) == set(eras["era_id"])
    assert "era_name" in source.era_ref.columns


def test_in_memory_source_checks_columns(dataset):
    cases, eras, _ = dataset
    with pytest.raises(SccsDataError, match="start_day"):
        InMemorySccsDataSource(cases, eras.drop(columns=["start_day"]))


def test_batch_size_must_be_positive(dataset):
    cases, eras, _ = dataset
    with pytest.raises(ValueError):
        list(InMemorySccsDataSource(cases, eras).iter_batches(0))


def _duckdb_connection(cases, eras, era_ref):
    connection = duckdb.connect(database=":memory:")
    for name, df in (("cases", cases), ("eras", eras), ("era_ref", era_ref)):
        connection.register(f"{name}_df", df)
        connection.execute(f"CREATE TABLE {name} AS SELECT * FROM {name}_df")
        connection.unregister(f"{name}_df")
    return connection


def test_duckdb_source_matches_in_memory(dataset):
    cases, eras, era_ref = dataset
    duck = DuckDbSccsDataSource(_duckdb_connection(cases, eras, era_ref))
    memory = InMemorySccsDataSource(cases, eras, era_ref)
    assert duck.person_ids().tolist() == memory.person_ids().tolist()
    for (i1, c1, e1), (i2, c2, e2) in zip(_collect(duck, 5), _collect(memory, 5)):
        assert i1 == i2
        assert c1["case_id"].tolist() == sorted(c2["case_id"])
        assert sorted(e1["case_id"]) == sorted(e2["case_id"])
    assert set(duck.era_ref["era_name"]) == set(era_ref["era_name"])


def test_duckdb_source_from_parquet(tmp_path, dataset):
    cases, eras, era_ref = dataset
    connection = _duckdb_connection(cases, eras, era_ref)
    paths = {}
    for name in ("cases", "eras", "era_ref"):
        paths[name] = tmp_path / f"{name}.parquet"
        connection.execute(f"COPY {name} TO '{paths[name]}' (FORMAT PARQUET)")
    source = DuckDbSccsDataSource.from_parquet(paths["cases"], paths["eras"], paths["era_ref"])
    batches = _collect(source, 100)
    assert len(batches) == 1
    assert len(batches[0][1]) == len(cases)
    assert len(batches[0][2]) == len(eras)


def test_duckdb_query_failure_is_wrapped(dataset):
    cases, eras, era_ref = dataset
    connection = _duckdb_connection(cases, eras, era_ref)
    source = DuckDbSccsDataSource(connection)
    with pytest.raises(RuntimeError, match="broken_job"):
        source.run_query("SELECT * FROM missing_table", None, job_name="broken_job")


def test_duckdb_missing_era_ref_table_fails_fast(dataset):
    cases, eras, era_ref = dataset
    connection = _duckdb_connection(cases, eras, era_ref)
    with pytest.raises(RuntimeError, match="sccs_era_ref"):
        DuckDbSccsDataSource(connection, era_ref_table="no_such_table")


def test_validate_identifier():
    assert validate_identifier("cdm.cases") == "cdm.cases"
    with pytest.raises(ValueError):
        validate_identifier("cases; DROP TABLE eras")
