"""Error taxonomy for SCCS interval construction."""

from __future__ import annotations

import pandas as pd


class SccsConfigurationError(ValueError):
    """Malformed settings. Raised before any data is processed."""


class SccsDataError(ValueError):
    """Input tables are structurally unusable (missing columns, bad types)."""


class EmptyPopulationError(RuntimeError):
    """No case survived a study-population restriction."""

    def __init__(self, message: str, attrition: pd.DataFrame | None = None) -> None:
        super().__init__(message)
        self.attrition = attrition if attrition is not None else pd.DataFrame()


class CensorModelWarning(UserWarning):
    """Every censor-model candidate failed; the correction was skipped."""
