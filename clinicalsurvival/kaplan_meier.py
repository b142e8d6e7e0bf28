"""
Kaplan-Meier estimation and the log-rank test.

This module provides:
- Kaplan-Meier survival curves with Greenwood variance and confidence bands
- Per-stratum curves for an EventTable
- The (k-sample) log-rank test between strata

Example Usage:
    from clinicalsurvival import EventTable_from_dataframe, kaplan_meier_by_stratum, logrank_test

    table = EventTable_from_dataframe(df, duration='time', event='status', strata='arm')
    curves = kaplan_meier_by_stratum(table)
    result = logrank_test(table)
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .event_table import EventTable
from .exceptions import DegenerateStratumWarning, EventTableError
from .utils import chi2_p_value, step_function_lookup, z_critical

CONF_TYPES = ('log-log', 'log')


@dataclass
class KaplanMeierResult:
    """
    Result from Kaplan-Meier estimation.

    The first entry of every array describes the origin (time 0, survival 1);
    the remaining entries follow the distinct observed times in ascending order.

    Attributes
    ----------
    time : np.ndarray
        Distinct observed times (event or censoring)
    survival : np.ndarray
        Survival probability at each time
    variance : np.ndarray
        Greenwood variance of the survival probability
    n_risk : np.ndarray
        Number at risk just before each time
    n_event : np.ndarray
        Number of events at each time
    n_censor : np.ndarray
        Number censored at each time
    ci_lower : np.ndarray
        Lower confidence bound
    ci_upper : np.ndarray
        Upper confidence bound
    conf_level : float
        Confidence level of the bounds
    label : object
        Stratum key, if any
    """
    time: np.ndarray
    survival: np.ndarray
    variance: np.ndarray
    n_risk: np.ndarray
    n_event: np.ndarray
    n_censor: np.ndarray
    ci_lower: np.ndarray
    ci_upper: np.ndarray
    conf_level: float = 0.95
    label: Optional[object] = None

    @property
    def cumulative_events(self) -> np.ndarray:
        """Cumulative number of events."""
        return np.cumsum(self.n_event)

    @property
    def has_events(self) -> bool:
        return bool(self.n_event.sum() > 0)

    def rows(self) -> List[Tuple[float, float, float, int, int]]:
        """(time, survival, variance, at_risk, events) for each time after the origin."""
        return [
            (float(t), float(s), float(v), int(n), int(d))
            for t, s, v, n, d in zip(self.time[1:], self.survival[1:], self.variance[1:],
                                     self.n_risk[1:], self.n_event[1:])
        ]

    def survival_at(self, times) -> np.ndarray:
        """Survival probability at arbitrary times (right-continuous step function)."""
        return step_function_lookup(self.time, self.survival, times, before=1.0)

    def median_survival_time(self) -> float:
        """First time at which survival drops to 0.5 or below (inf if it never does)."""
        below = np.flatnonzero(self.survival <= 0.5)
        if len(below) == 0:
            return np.inf
        return float(self.time[below[0]])

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            'time': self.time,
            'n_risk': self.n_risk,
            'n_event': self.n_event,
            'n_censor': self.n_censor,
            'survival': self.survival,
            'variance': self.variance,
            'ci_lower': self.ci_lower,
            'ci_upper': self.ci_upper,
        })


def kaplan_meier_estimate(times: np.ndarray,
                          events: np.ndarray,
                          conf_level: float = 0.95,
                          conf_type: str = 'log-log',
                          label: Optional[object] = None) -> KaplanMeierResult:
    """
    Calculate Kaplan-Meier survival estimates.

    Parameters
    ----------
    times : np.ndarray
        Time to event or censoring for each subject (all positive)
    events : np.ndarray
        Event indicator (1/True = event, 0/False = censored)
    conf_level : float
        Confidence level for intervals (default 0.95)
    conf_type : str
        'log-log' (default) or 'log' transform for the confidence band
    label : object, optional
        Stratum key used in warnings and stored on the result

    Returns
    -------
    KaplanMeierResult
        Kaplan-Meier estimates with confidence intervals

    Example
    -------
    >>> times = np.array([5, 10, 15, 20, 25])
    >>> events = np.array([1, 0, 1, 1, 0])
    >>> km = kaplan_meier_estimate(times, events)
    >>> print(km.survival)
    """
    if conf_type not in CONF_TYPES:
        raise ValueError(f"conf_type must be one of {list(CONF_TYPES)}")
    z = z_critical(conf_level)

    times = np.asarray(times, dtype=float)
    events = np.asarray(events).astype(bool)
    if times.shape != events.shape or times.ndim != 1:
        raise ValueError("times and events must be 1-d arrays of the same length")
    if len(times) == 0:
        raise ValueError("No subjects!")
    bad = np.flatnonzero(~np.isfinite(times) | (times <= 0))
    if len(bad):
        raise EventTableError("subjects cannot have non-positive duration", rows=list(bad))

    unique_times, inverse = np.unique(times, return_inverse=True)
    n_event_at = np.bincount(inverse, weights=events.astype(float), minlength=len(unique_times)).astype(int)
    n_leave_at = np.bincount(inverse, minlength=len(unique_times))

    n_times = len(unique_times) + 1
    survival = np.ones(n_times)
    var_sum = np.zeros(n_times)
    n_risk = np.zeros(n_times, dtype=int)
    n_event = np.zeros(n_times, dtype=int)
    n_censor = np.zeros(n_times, dtype=int)

    at_risk = len(times)
    n_risk[0] = at_risk
    s, greenwood = 1.0, 0.0

    for i in range(1, n_times):
        d = n_event_at[i - 1]
        c = n_leave_at[i - 1] - d
        n_risk[i], n_event[i], n_censor[i] = at_risk, d, c

        if d > 0:
            s *= 1 - d / at_risk
            # Greenwood's term is infinite once everyone at risk fails; S is 0 from here on
            if at_risk > d:
                greenwood += d / (at_risk * (at_risk - d))
        survival[i] = s
        var_sum[i] = greenwood

        at_risk -= d + c

    if n_event.sum() == 0:
        name = "" if label is None else f" {label}"
        warnings.warn(f"Stratum{name} has no observed events; survival is 1 up to the last "
                      f"censoring time {unique_times[-1]:g}", DegenerateStratumWarning)

    variance = survival ** 2 * var_sum
    ci_lower, ci_upper = _confidence_band(survival, var_sum, z, conf_type)

    return KaplanMeierResult(
        time=np.concatenate([[0.0], unique_times]),
        survival=survival,
        variance=variance,
        n_risk=n_risk,
        n_event=n_event,
        n_censor=n_censor,
        ci_lower=ci_lower,
        ci_upper=ci_upper,
        conf_level=conf_level,
        label=label,
    )


def _confidence_band(survival: np.ndarray, var_sum: np.ndarray, z: float,
                     conf_type: str) -> Tuple[np.ndarray, np.ndarray]:
    """Pointwise confidence band from the Greenwood sum of log S."""
    lower = survival.copy()
    upper = survival.copy()
    inside = (survival > 0) & (survival < 1)
    s = survival[inside]
    se_log = np.sqrt(var_sum[inside])

    if conf_type == 'log-log':
        log_log_se = se_log / np.abs(np.log(s))
        lower[inside] = s ** np.exp(z * log_log_se)
        upper[inside] = s ** np.exp(-z * log_log_se)
    else:
        lower[inside] = s * np.exp(-z * se_log)
        upper[inside] = s * np.exp(z * se_log)

    return np.clip(lower, 0, 1), np.clip(upper, 0, 1)


def kaplan_meier_by_stratum(table: EventTable,
                            conf_level: float = 0.95,
                            conf_type: str = 'log-log') -> Dict[object, KaplanMeierResult]:
    """
    Kaplan-Meier curve for every stratum of an EventTable.

    Returns
    -------
    dict
        Stratum key -> KaplanMeierResult, in the order of ``table.strata_levels``
    """
    return {
        level: kaplan_meier_estimate(sub.durations, sub.events, conf_level=conf_level,
                                     conf_type=conf_type, label=level)
        for level, sub in table.by_stratum().items()
    }


@dataclass
class LogrankResult:
    """
    Results from a log-rank test.

    Attributes
    ----------
    chi_square : float
        Log-rank chi-square statistic
    df : int
        Degrees of freedom (number of strata - 1)
    p_value : float
        Upper tail chi-square probability
    strata : list
        Strata keys in the order used
    observed_events : dict
        Observed events per stratum
    expected_events : dict
        Expected events per stratum under equal hazards
    variance : np.ndarray
        Covariance matrix of observed minus expected counts
    z_statistic : float or None
        Signed statistic for the last stratum (two strata only)
    """
    chi_square: float
    df: int
    p_value: float
    strata: List
    observed_events: Dict[object, int]
    expected_events: Dict[object, float]
    variance: np.ndarray = field(repr=False)
    z_statistic: Optional[float] = None


def logrank_test(table: EventTable) -> LogrankResult:
    """
    Log-rank test comparing survival between the strata of an EventTable.

    At every distinct failure time of the pooled sample, observed and expected
    event counts are accumulated per stratum together with the hypergeometric
    covariance. The statistic is the quadratic form of observed minus expected
    over the first k-1 strata.

    Parameters
    ----------
    table : EventTable
        Data with at least two strata

    Returns
    -------
    LogrankResult
    """
    levels = table.strata_levels
    k = len(levels)
    if k < 2:
        raise ValueError("Log-rank test requires at least 2 strata")

    times = table.durations
    events = table.events
    codes = pd.Categorical(table.subject_data['strata'], categories=levels).codes

    observed = np.zeros(k)
    expected = np.zeros(k)
    variance = np.zeros((k, k))

    for t in np.unique(times[events]):
        at_risk = times >= t
        n_g = np.bincount(codes[at_risk], minlength=k)
        d_g = np.bincount(codes[(times == t) & events], minlength=k)
        n = n_g.sum()
        d = d_g.sum()

        frac = n_g / n
        observed += d_g
        expected += d * frac
        if n > 1:
            variance += d * (n - d) / (n - 1) * (np.diag(frac) - np.outer(frac, frac))

    u = observed - expected
    if not np.any(variance):
        chi_square = 0.0
    else:
        v = variance[:-1, :-1]
        try:
            chi_square = float(u[:-1] @ np.linalg.solve(v, u[:-1]))
        except np.linalg.LinAlgError:
            chi_square = float(u[:-1] @ np.linalg.pinv(v) @ u[:-1])

    z_statistic = None
    if k == 2 and variance[1, 1] > 0:
        z_statistic = float(u[1] / np.sqrt(variance[1, 1]))

    return LogrankResult(
        chi_square=chi_square,
        df=k - 1,
        p_value=chi2_p_value(chi_square, k - 1),
        strata=list(levels),
        observed_events={level: int(o) for level, o in zip(levels, observed)},
        expected_events={level: float(e) for level, e in zip(levels, expected)},
        variance=variance,
        z_statistic=z_statistic,
    )
