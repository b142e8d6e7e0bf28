"""
EventTable class: the canonical per-subject record used by all estimators.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np
import pandas as pd

from .exceptions import EventTableError

if TYPE_CHECKING:
    from .cox_model import CoxModel, CoxFitOptions
    from .kaplan_meier import KaplanMeierResult


DEFAULT_STRATUM = 'all'
RESERVED_COLUMNS = ('duration', 'event_observed', 'strata')


def _check_covariate_names(names: Sequence[str]) -> None:
    """Raise if a covariate would overwrite one of the reserved columns."""
    clash = [name for name in names if name in RESERVED_COLUMNS]
    if clash:
        raise EventTableError(f"Covariate names {clash} clash with the reserved columns "
                              f"{list(RESERVED_COLUMNS)}; rename them before building the table")


@dataclass(frozen=True, eq=False)
class EventTable:
    """
    Complete, validated time-to-event data.

    Instances are immutable: the constructor copies ``subject_data`` and the
    accessors hand out copies, so a table can be shared between independent
    fits without locking.

    Attributes
    ----------
    subject_data : pd.DataFrame
        DataFrame with columns: duration, event_observed, strata and one
        column per covariate. The index holds the row labels reported in
        validation errors.
    covariates : tuple of str
        Ordered covariate names used for regression
    """
    subject_data: pd.DataFrame
    covariates: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, 'covariates', tuple(self.covariates))
        object.__setattr__(self, 'subject_data', self._validate(self.subject_data.copy()))

    def _validate(self, data: pd.DataFrame) -> pd.DataFrame:
        """Check the invariants and return the normalised frame."""
        _check_covariate_names(self.covariates)
        required = ['duration', 'event_observed', 'strata'] + list(self.covariates)
        for col in required:
            if col not in data.columns:
                raise EventTableError(f"Missing required column: {col}")

        if len(data) == 0:
            raise EventTableError("Event table has no rows")
        if data.index.duplicated().any():
            raise EventTableError("Row labels must be unique",
                                  rows=list(data.index[data.index.duplicated()]))
        if len(set(self.covariates)) != len(self.covariates):
            raise EventTableError("Covariate names must be unique")

        duration = data['duration']
        if not pd.api.types.is_numeric_dtype(duration):
            raise EventTableError("duration must be numeric")
        duration = duration.astype(float)
        bad = duration.isna() | ~np.isfinite(duration)
        if bad.any():
            raise EventTableError("duration is missing or not finite", rows=list(data.index[bad]))
        bad = duration <= 0
        if bad.any():
            raise EventTableError("subjects cannot have non-positive duration",
                                  rows=list(data.index[bad]))

        event = data['event_observed']
        bad = event.isna()
        if bad.any():
            raise EventTableError("event_observed is missing", rows=list(data.index[bad]))
        if pd.api.types.is_bool_dtype(event):
            bad = pd.Series(False, index=data.index)
        else:
            bad = ~event.isin([0, 1])
        if bad.any():
            raise EventTableError("event_observed must be 0/1 or boolean", rows=list(data.index[bad]))

        bad = data['strata'].isna()
        if bad.any():
            raise EventTableError("strata key is missing", rows=list(data.index[bad]))

        normalised = pd.DataFrame({
            'duration': duration,
            'event_observed': event.astype(bool),
            'strata': data['strata'],
        }, index=data.index)

        for name in self.covariates:
            values = data[name]
            if not pd.api.types.is_numeric_dtype(values):
                raise EventTableError(f"covariate '{name}' is not numeric; "
                                      "encode categorical covariates before building the table")
            values = values.astype(float)
            bad = values.isna() | ~np.isfinite(values)
            if bad.any():
                raise EventTableError(f"covariate '{name}' is missing or not finite",
                                      rows=list(data.index[bad]))
            normalised[name] = values

        return normalised

    @classmethod
    def from_records(cls, records: Iterable[Sequence],
                     covariate_names: Sequence[str] = ()) -> 'EventTable':
        """
        Build a table from ``(duration, event_observed, strata_key, covariates)`` rows.

        Parameters
        ----------
        records : iterable of sequences
            One tuple per subject; ``covariates`` is a sequence whose length
            must equal ``len(covariate_names)``
        covariate_names : sequence of str
            Ordered covariate names

        Returns
        -------
        EventTable
        """
        covariate_names = list(covariate_names)
        _check_covariate_names(covariate_names)
        records = list(records)

        bad = [i for i, rec in enumerate(records) if len(rec) != 4]
        if bad:
            raise EventTableError("records must be (duration, event_observed, strata_key, covariates)",
                                  rows=bad)
        bad = [i for i, rec in enumerate(records) if len(rec[3]) != len(covariate_names)]
        if bad:
            raise EventTableError(f"covariate vector length differs from the "
                                  f"{len(covariate_names)} declared covariates", rows=bad)

        data = pd.DataFrame({
            'duration': [rec[0] for rec in records],
            'event_observed': [rec[1] for rec in records],
            'strata': [rec[2] for rec in records],
        })
        for j, name in enumerate(covariate_names):
            data[name] = [rec[3][j] for rec in records]

        return cls(subject_data=data, covariates=tuple(covariate_names))

    @property
    def n_subjects(self) -> int:
        """Number of subjects."""
        return len(self.subject_data)

    @property
    def n_events(self) -> int:
        """Number of observed events."""
        return int(self.subject_data['event_observed'].sum())

    @property
    def durations(self) -> np.ndarray:
        return self.subject_data['duration'].to_numpy(dtype=float, copy=True)

    @property
    def events(self) -> np.ndarray:
        return self.subject_data['event_observed'].to_numpy(dtype=bool, copy=True)

    @property
    def index(self) -> pd.Index:
        return self.subject_data.index

    @property
    def strata_levels(self) -> List:
        """Distinct strata keys, sorted when the keys are orderable."""
        levels = list(pd.unique(self.subject_data['strata']))
        try:
            return sorted(levels)
        except TypeError:
            return levels

    def covariate_matrix(self) -> np.ndarray:
        """Return the (n_subjects, n_covariates) covariate matrix."""
        if not self.covariates:
            return np.empty((self.n_subjects, 0))
        return self.subject_data[list(self.covariates)].to_numpy(dtype=float, copy=True)

    def by_stratum(self) -> Dict[object, 'EventTable']:
        """Split the table into one sub-table per stratum."""
        strata = self.subject_data['strata']
        return {
            level: EventTable(subject_data=self.subject_data[strata == level],
                              covariates=self.covariates)
            for level in self.strata_levels
        }

    def summary(self) -> str:
        """Return a summary string of the data."""
        df = self.subject_data
        lines = [f"Number of subjects: {self.n_subjects}",
                 f"Number of events: {self.n_events}",
                 f"Number censored: {self.n_subjects - self.n_events}",
                 f"Follow up: {df['duration'].min():g} to {df['duration'].max():g}"]

        levels = self.strata_levels
        if len(levels) > 1:
            for level in levels:
                sub = df[df['strata'] == level]
                lines.append(f"  Stratum {level}: {len(sub)} subjects, "
                             f"{int(sub['event_observed'].sum())} events")
        if self.covariates:
            lines.append(f"Covariates: {', '.join(self.covariates)}")
        return '\n'.join(lines)

    def __str__(self) -> str:
        return self.summary()

    def fit_kaplan_meier(self, conf_level: float = 0.95,
                         conf_type: str = 'log-log') -> Dict[object, 'KaplanMeierResult']:
        """
        Kaplan-Meier curve per stratum.

        Returns
        -------
        dict
            Stratum key -> KaplanMeierResult
        """
        from .kaplan_meier import kaplan_meier_by_stratum
        return kaplan_meier_by_stratum(self, conf_level=conf_level, conf_type=conf_type)

    def fit_cox(self, options: Optional['CoxFitOptions'] = None, **kwargs) -> 'CoxModel':
        """
        Fit a Cox proportional hazards model to the table's covariates.

        Parameters
        ----------
        options : CoxFitOptions, optional
            Fitting options; keyword arguments build one when omitted

        Returns
        -------
        CoxModel
        """
        from .cox_model import CoxModel, CoxFitOptions
        if options is None:
            options = CoxFitOptions(**kwargs)
        elif kwargs:
            raise ValueError("Pass either options or keyword arguments, not both")
        return CoxModel.from_event_table(self, options)


def EventTable_from_dataframe(data: pd.DataFrame,
                              duration: str,
                              event: str,
                              strata: Optional[str] = None,
                              covariates: Optional[Sequence[str]] = None) -> EventTable:
    """
    Constructor for EventTable from a DataFrame.

    Parameters
    ----------
    data : pd.DataFrame
        Complete input data (missing values must be resolved upstream)
    duration : str
        Column name for time to event or censoring
    event : str
        Column name for the event indicator (1/True = event, 0/False = censored)
    strata : str, optional
        Column name for the stratification key; a single stratum if omitted
    covariates : sequence of str, optional
        Ordered covariate columns for regression

    Returns
    -------
    EventTable
    """
    covariates = list(covariates) if covariates is not None else []
    _check_covariate_names(covariates)
    required = [duration, event] + ([strata] if strata is not None else []) + covariates
    for col in required:
        if col not in data.columns:
            raise EventTableError(f"Column name {col} not found in data frame")

    subject_data = pd.DataFrame({
        'duration': data[duration],
        'event_observed': data[event],
        'strata': data[strata] if strata is not None else DEFAULT_STRATUM,
    }, index=data.index)
    for name in covariates:
        subject_data[name] = data[name]

    return EventTable(subject_data=subject_data, covariates=tuple(covariates))
