"""Batch data sources serving case and era tables a few thousand persons at a time."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, Sequence

import duckdb
import numpy as np
import pandas as pd

from .config import ERA_TYPES, REQUIRED_CASE_COLUMNS, REQUIRED_ERA_COLUMNS
from .errors import SccsDataError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


@dataclass
class SccsDataBatch:
    batch_index: int
    cases: pd.DataFrame
    eras: pd.DataFrame


def check_columns(df: pd.DataFrame, required: Sequence[str], table: str) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SccsDataError(f"{table} table is missing required columns: {', '.join(missing)}")


def validate_identifier(name: str) -> str:
    if not name or not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid table name {name!r}. Allowed characters: letters, numbers, underscore, dot.")
    return name


def _chunks(values: np.ndarray, size: int) -> Iterator[np.ndarray]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class SccsDataSource:
    """Re-iterable source of person batches. Subclasses implement person_ids and fetch_batch."""

    era_ref: pd.DataFrame

    def person_ids(self) -> np.ndarray:
        raise NotImplementedError

    def fetch_batch(self, person_ids: np.ndarray) -> tuple[pd.DataFrame, pd.DataFrame]:
        raise NotImplementedError

    def batch_count(self, batch_size: int) -> int:
        n = len(self.person_ids())
        return (n + batch_size - 1) // batch_size

    def iter_batches(self, batch_size: int) -> Iterator[SccsDataBatch]:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1; got {batch_size}")
        for batch_index, chunk in enumerate(_chunks(self.person_ids(), batch_size)):
            cases, eras = self.fetch_batch(chunk)
            logging.info(
                "Fetched batch %s: persons=%s cases=%s eras=%s",
                batch_index,
                len(chunk),
                len(cases),
                len(eras),
            )
            yield SccsDataBatch(batch_index=batch_index, cases=cases, eras=eras)


class InMemorySccsDataSource(SccsDataSource):
    def __init__(self, cases: pd.DataFrame, eras: pd.DataFrame, era_ref: pd.DataFrame | None = None) -> None:
        check_columns(cases, REQUIRED_CASE_COLUMNS, "cases")
        check_columns(eras, REQUIRED_ERA_COLUMNS, "eras")
        self.cases = cases
        self.eras = eras
        if era_ref is None:
            era_ref = (
                eras.loc[eras["era_type"].isin(ERA_TYPES), ["era_type", "era_id"]]
                .drop_duplicates()
                .sort_values(["era_type", "era_id"])
                .reset_index(drop=True)
            )
            era_ref["era_name"] = era_ref["era_type"].astype(str) + " " + era_ref["era_id"].astype(str)
        self.era_ref = era_ref

    def person_ids(self) -> np.ndarray:
        return np.sort(self.cases["person_id"].unique())

    def fetch_batch(self, person_ids: np.ndarray) -> tuple[pd.DataFrame, pd.DataFrame]:
        cases = self.cases.loc[self.cases["person_id"].isin(person_ids)].copy()
        eras = self.eras.loc[self.eras["case_id"].isin(cases["case_id"])].copy()
        return cases.reset_index(drop=True), eras.reset_index(drop=True)


class DuckDbSccsDataSource(SccsDataSource):
    """Reads case/era tables through duckdb so only one batch is materialized in pandas at a time."""

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection | None = None,
        *,
        database: str = ":memory:",
        cases_table: str = "cases",
        eras_table: str = "eras",
        era_ref_table: str = "era_ref",
        read_only: bool = False,
    ) -> None:
        self.cases_table = validate_identifier(cases_table)
        self.eras_table = validate_identifier(eras_table)
        self.era_ref_table = validate_identifier(era_ref_table)
        self.connection = connection if connection is not None else duckdb.connect(database=database, read_only=read_only)
        self._person_ids: np.ndarray | None = None
        self.era_ref = self.run_query(
            f"SELECT era_type, era_id, era_name FROM {self.era_ref_table} ORDER BY era_type, era_id",
            None,
            job_name="sccs_era_ref",
        )

    @classmethod
    def from_parquet(cls, cases_path: str, eras_path: str, era_ref_path: str) -> "DuckDbSccsDataSource":
        connection = duckdb.connect(database=":memory:")
        for view, path in (("cases", cases_path), ("eras", eras_path), ("era_ref", era_ref_path)):
            escaped = str(path).replace("'", "''")
            connection.execute(f"CREATE VIEW {view} AS SELECT * FROM read_parquet('{escaped}')")
        return cls(connection)

    def run_query(self, sql: str, params: Sequence[object] | None, *, job_name: str) -> pd.DataFrame:
        logging.debug("Running query: %s", job_name)
        try:
            df = self.connection.execute(sql, list(params) if params else []).df()
        except duckdb.Error as exc:
            logging.exception("DuckDB query failed: %s", job_name)
            raise RuntimeError(f"DuckDB query failed ({job_name}): {exc}") from exc
        logging.debug("Finished query: %s | rows=%s", job_name, len(df))
        return df

    def person_ids(self) -> np.ndarray:
        if self._person_ids is None:
            df = self.run_query(
                f"SELECT DISTINCT person_id FROM {self.cases_table} ORDER BY person_id",
                None,
                job_name="sccs_person_ids",
            )
            self._person_ids = df["person_id"].to_numpy()
        return self._person_ids

    def fetch_batch(self, person_ids: np.ndarray) -> tuple[pd.DataFrame, pd.DataFrame]:
        # person_ids arrive sorted, so a range query selects exactly this chunk.
        params = [person_ids[0].item(), person_ids[-1].item()]
        cases = self.run_query(
            f"SELECT * FROM {self.cases_table} WHERE person_id BETWEEN ? AND ? ORDER BY case_id",
            params,
            job_name="sccs_batch_cases",
        )
        eras = self.run_query(
            f"""
SELECT e.*
FROM {self.eras_table} e
JOIN {self.cases_table} c
  ON e.case_id = c.case_id
WHERE c.person_id BETWEEN ? AND ?
ORDER BY e.case_id, e.era_type, e.era_id, e.start_day
""",
            params,
            job_name="sccs_batch_eras",
        )
        check_columns(cases, REQUIRED_CASE_COLUMNS, "cases")
        check_columns(eras, REQUIRED_ERA_COLUMNS, "eras")
        return cases, eras
