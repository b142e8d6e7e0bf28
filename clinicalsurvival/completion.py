"""
Completion of raw tables with missing values.

The estimation engine only accepts complete tables. A CompletionStrategy
turns a raw DataFrame into a complete one; the named variants are:

- 'drop': drop incomplete rows
- 'donor': fill each incomplete row from its nearest complete row
- 'multiple': fill from a donor drawn at random among the nearest complete
  rows; every imputation number gives one completed table. Pooling fits
  across completed tables is left to the caller.
"""

import warnings
from dataclasses import dataclass, replace
from typing import Callable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from .exceptions import CompletionWarning


@dataclass
class CompletionOptions:
    """
    Options for completing a raw table.

    Attributes
    ----------
    columns : list of str, optional
        Columns to complete (default: every column that is not an outcome)
    outcome_columns : sequence of str
        Duration/event columns; rows missing these are always dropped
    n_donors : int
        Number of nearest complete rows eligible as donors
    seed : int
        Random seed for multiple imputation
    imputation : int
        Imputation number for multiple imputation
    """
    columns: Optional[List[str]] = None
    outcome_columns: Sequence[str] = ()
    n_donors: int = 5
    seed: int = 0
    imputation: int = 0

    def __post_init__(self):
        if not isinstance(self.n_donors, int) or self.n_donors < 1:
            raise ValueError("Invalid n_donors")
        if not isinstance(self.imputation, int) or self.imputation < 0:
            raise ValueError("Invalid imputation")


@dataclass
class CompletionStrategy:
    """
    A named procedure completing a raw table.

    Attributes
    ----------
    f : Callable
        Function taking (raw_table, options) and returning the completed table
    name : str
        Name of the strategy
    text : str
        Summary text describing the strategy
    """
    f: Callable[[pd.DataFrame, CompletionOptions], pd.DataFrame]
    name: str
    text: str

    def complete(self, raw_table: pd.DataFrame,
                 options: Optional[CompletionOptions] = None) -> pd.DataFrame:
        """Return a completed copy of raw_table."""
        if options is None:
            options = CompletionOptions()
        return self.f(raw_table, options)

    def __str__(self) -> str:
        return f"Completion strategy: {self.name}\n{self.text}"


def _completion_columns(data: pd.DataFrame, options: CompletionOptions) -> List[str]:
    for col in list(options.outcome_columns) + list(options.columns or []):
        if col not in data.columns:
            raise ValueError(f"Column name {col} not found in data frame")
    if options.columns is not None:
        return list(options.columns)
    return [c for c in data.columns if c not in options.outcome_columns]


def _drop_missing_outcomes(data: pd.DataFrame, options: CompletionOptions) -> pd.DataFrame:
    outcomes = list(options.outcome_columns)
    if not outcomes:
        return data.copy()
    mask = data[outcomes].isna().any(axis=1)
    if mask.any():
        warnings.warn(f"Subjects {list(data.index[mask])} have a missing outcome and have been removed.",
                      CompletionWarning)
    return data[~mask].copy()


def _drop_incomplete(raw_table: pd.DataFrame, options: CompletionOptions) -> pd.DataFrame:
    data = _drop_missing_outcomes(raw_table, options)
    columns = _completion_columns(data, options)
    mask = data[columns].isna().any(axis=1)
    if mask.any():
        warnings.warn(f"Subjects {list(data.index[mask])} have missing values and have been removed.",
                      CompletionWarning)
    return data[~mask]


def _donor_fill(raw_table: pd.DataFrame, options: CompletionOptions,
                rng: Optional[np.random.Generator] = None) -> pd.DataFrame:
    """
    Nearest-neighbour donor imputation.

    Distances use the recipient's observed columns: squared differences of
    numeric columns scaled by the donors' standard deviation, plus one for
    every mismatching non-numeric value. Without ``rng`` the nearest donor is
    used (first row on ties); with ``rng`` a donor is drawn among the
    ``n_donors`` nearest.
    """
    data = _drop_missing_outcomes(raw_table, options)
    columns = _completion_columns(data, options)
    missing = data[columns].isna()
    incomplete = missing.any(axis=1)
    if not incomplete.any():
        return data

    donors = data.index[~incomplete]
    if len(donors) == 0:
        raise ValueError("No complete rows are available as donors")

    numeric = [c for c in columns if pd.api.types.is_numeric_dtype(data[c])]
    scale = data.loc[donors, numeric].std(ddof=0).fillna(1.0).replace(0.0, 1.0)
    donor_values = data.loc[donors, numeric].to_numpy(dtype=float) / scale.to_numpy()

    completed = data.copy()
    n_filled = 0
    for recipient in data.index[incomplete]:
        row_missing = missing.loc[recipient]
        observed = [c for c in columns if not row_missing[c]]
        distance = np.zeros(len(donors))

        observed_numeric = [c for c in observed if c in numeric]
        if observed_numeric:
            idx = [numeric.index(c) for c in observed_numeric]
            target = data.loc[recipient, observed_numeric].to_numpy(dtype=float) / scale[observed_numeric].to_numpy()
            distance += ((donor_values[:, idx] - target) ** 2).sum(axis=1)
        for c in observed:
            if c not in numeric:
                distance += (data.loc[donors, c].to_numpy() != data.at[recipient, c])

        nearest = np.argsort(distance, kind='mergesort')[:options.n_donors]
        pick = nearest[0] if rng is None else rng.choice(nearest)
        fill = [c for c in columns if row_missing[c]]
        completed.loc[recipient, fill] = data.loc[donors[pick], fill].to_numpy()
        n_filled += len(fill)

    warnings.warn(f"Imputed {n_filled} values in {int(incomplete.sum())} subjects from donors.",
                  CompletionWarning)
    return completed


def DropIncomplete() -> CompletionStrategy:
    """Create a strategy dropping rows with any missing value."""
    return CompletionStrategy(f=_drop_incomplete, name="drop",
                              text="Rows with any missing value are removed.")


def DonorImputation() -> CompletionStrategy:
    """Create a nearest-neighbour donor imputation strategy."""
    def f(raw_table: pd.DataFrame, options: CompletionOptions) -> pd.DataFrame:
        return _donor_fill(raw_table, options)

    return CompletionStrategy(f=f, name="donor",
                              text="Missing values are copied from the nearest complete row.")


def MultipleImputation() -> CompletionStrategy:
    """
    Create a multiple imputation strategy.

    Each call completes one table; the donor for each incomplete row is drawn
    among its ``n_donors`` nearest complete rows with a generator seeded by
    ``(seed, imputation)``, so a given imputation number is reproducible.
    """
    def f(raw_table: pd.DataFrame, options: CompletionOptions) -> pd.DataFrame:
        rng = np.random.default_rng([options.seed, options.imputation])
        return _donor_fill(raw_table, options, rng=rng)

    return CompletionStrategy(f=f, name="multiple",
                              text="Missing values are copied from a donor drawn among the "
                                   "nearest complete rows; one table per imputation number.")


COMPLETION_STRATEGIES = {
    'drop': DropIncomplete,
    'donor': DonorImputation,
    'multiple': MultipleImputation,
}


def get_completion_strategy(name: str) -> CompletionStrategy:
    """Look up a completion strategy by name ('drop', 'donor' or 'multiple')."""
    if name not in COMPLETION_STRATEGIES:
        raise ValueError(f"Unknown completion strategy '{name}': "
                         f"must be one of {list(COMPLETION_STRATEGIES)}")
    return COMPLETION_STRATEGIES[name]()


def completions(strategy: CompletionStrategy, raw_table: pd.DataFrame,
                options: Optional[CompletionOptions] = None, m: int = 5) -> Iterator[pd.DataFrame]:
    """
    Yield m completed tables, one per imputation number.

    Deterministic strategies yield the same table m times.
    """
    if m < 1:
        raise ValueError("Invalid m")
    if options is None:
        options = CompletionOptions()
    for imputation in range(m):
        yield strategy.complete(raw_table, replace(options, imputation=imputation))
