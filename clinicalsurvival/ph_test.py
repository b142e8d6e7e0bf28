"""
Proportional hazards diagnostic based on scaled Schoenfeld residuals.

Let s_k be the Schoenfeld residual at the k-th event: the covariate vector of
the failing subject minus its risk-weighted expectation over the risk set.
With V the model covariance and d the number of events, the scaled residual
s_k* = d V s_k + beta estimates beta(t_k), so a trend in s_k* against a
transform g(t_k) of time indicates a hazard ratio that is not constant.
The test statistics follow Grambsch and Therneau (1994).
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .cox_model import CoxModel, PartialLikelihoodData, failure_time_moments
from .display_options import DisplayOptions
from .event_table import EventTable
from .kaplan_meier import kaplan_meier_estimate
from .utils import chi2_p_value, format_p_value

TIME_TRANSFORMS = ('identity', 'log', 'rank', 'km')


@dataclass
class PHTestResult:
    """
    Results from the proportional hazards test.

    Attributes
    ----------
    summary : pd.DataFrame
        One row per covariate plus 'GLOBAL'; columns rho, chisq, df, p
    scaled_residuals : pd.DataFrame
        Scaled Schoenfeld residuals indexed by event time
    transformed_times : np.ndarray
        g(t) at each event time
    time_transform : str
        Name of the transform g
    """
    summary: pd.DataFrame
    scaled_residuals: pd.DataFrame = field(repr=False)
    transformed_times: np.ndarray = field(repr=False)
    time_transform: str = 'rank'

    @property
    def global_test(self) -> pd.Series:
        return self.summary.loc['GLOBAL']

    def violations(self, alpha: float = 0.05) -> List[str]:
        """Covariates whose test is significant at level alpha."""
        per_covariate = self.summary.drop(index='GLOBAL')
        return list(per_covariate.index[per_covariate['p'] < alpha])

    def summary_text(self, display: Optional[DisplayOptions] = None) -> str:
        if display is None:
            display = DisplayOptions()
        dp = display.dp
        table = self.summary.copy()
        table['p'] = [format_p_value(p, dp) for p in table['p']]
        return '\n'.join([
            display.header(f"Proportional hazards test (time transform: {self.time_transform})"),
            table.to_string(float_format=lambda v: f"{v:.{dp}f}", na_rep='')])

    def __str__(self) -> str:
        return self.summary_text()


def _schoenfeld(model: CoxModel, table: EventTable) -> Tuple[np.ndarray, np.ndarray]:
    """Event times and unscaled Schoenfeld residuals, in time order."""
    if list(table.covariates) != model.covariates:
        raise ValueError(f"Table covariates {list(table.covariates)} do not match "
                         f"the model covariates {model.covariates}")

    data = PartialLikelihoodData.from_event_table(table)
    beta = model.coefficients.to_numpy()
    p = len(beta)

    times, residuals = [], []
    for t, events, _, means, _ in failure_time_moments(data, beta, model.ties):
        # Efron: expectation averaged over the tied terms
        expected = means.mean(axis=0)
        for i in events:
            times.append(t)
            residuals.append(data.X[i] - expected)

    return np.array(times), np.array(residuals).reshape(-1, p)


def schoenfeld_residuals(model: CoxModel, table: EventTable) -> pd.DataFrame:
    """
    Schoenfeld residuals of a fitted model.

    A positive value shows a covariate value higher than expected at that
    event time.

    Returns
    -------
    pd.DataFrame
        One row per event, indexed by event time, one column per covariate
    """
    times, residuals = _schoenfeld(model, table)
    return pd.DataFrame(residuals, index=pd.Index(times, name='time'), columns=model.covariates)


def scaled_schoenfeld_residuals(model: CoxModel, table: EventTable) -> pd.DataFrame:
    """Scaled Schoenfeld residuals n_events * V s_k + beta, indexed by event time."""
    times, residuals = _schoenfeld(model, table)
    scaled = len(times) * residuals @ model.covariance_matrix.to_numpy() + model.coefficients.to_numpy()
    return pd.DataFrame(scaled, index=pd.Index(times, name='time'), columns=model.covariates)


def transform_times(times: np.ndarray, time_transform: str,
                    table: Optional[EventTable] = None) -> np.ndarray:
    """
    Apply a monotone transform to event times.

    Parameters
    ----------
    times : np.ndarray
        Event times
    time_transform : str
        'identity', 'log', 'rank' (average rank for ties) or 'km'
        (1 - pooled Kaplan-Meier survival; needs ``table``)
    table : EventTable, optional
        Data for the 'km' transform

    Returns
    -------
    np.ndarray
    """
    times = np.asarray(times, dtype=float)
    if time_transform == 'identity':
        return times.copy()
    if time_transform == 'log':
        return np.log(times)
    if time_transform == 'rank':
        return stats.rankdata(times)
    if time_transform == 'km':
        if table is None:
            raise ValueError("The 'km' transform needs the event table")
        km = kaplan_meier_estimate(table.durations, table.events)
        return 1 - km.survival_at(times)
    raise ValueError(f"time_transform must be one of {list(TIME_TRANSFORMS)}")


def proportional_hazards_test(model: CoxModel, table: EventTable,
                              time_transform: str = 'rank') -> PHTestResult:
    """
    Test the proportional hazards assumption of a fitted Cox model.

    For each covariate the statistic measures the linear trend of the scaled
    Schoenfeld residuals in g(t) and is chi-square with 1 df under
    proportional hazards; the global statistic is chi-square with one df per
    covariate.

    Parameters
    ----------
    model : CoxModel
        Fitted model
    table : EventTable
        The data the model was fitted to
    time_transform : str
        'rank' (default), 'km', 'log' or 'identity'

    Returns
    -------
    PHTestResult
    """
    if time_transform not in TIME_TRANSFORMS:
        raise ValueError(f"time_transform must be one of {list(TIME_TRANSFORMS)}")

    times, residuals = _schoenfeld(model, table)
    n_events = len(times)
    if n_events < 2:
        raise ValueError("At least 2 events are needed to test proportional hazards")

    variance = model.covariance_matrix.to_numpy()
    beta = model.coefficients.to_numpy()
    g = transform_times(times, time_transform, table)
    centred = g - g.mean()
    ss_time = float(centred @ centred)
    if ss_time == 0:
        raise ValueError("Transformed event times are all equal; the test is undefined")

    scaled = n_events * residuals @ variance
    trend = centred @ scaled
    chisq = trend ** 2 / (np.diag(variance) * n_events * ss_time)
    rho = np.array([_correlation(centred, scaled[:, j]) for j in range(len(beta))])

    u = centred @ residuals
    global_chisq = float(u @ variance @ u) * n_events / ss_time

    names = model.covariates
    summary = pd.DataFrame({
        'rho': np.append(rho, np.nan),
        'chisq': np.append(chisq, global_chisq),
        'df': [1] * len(names) + [len(names)],
        'p': [chi2_p_value(c, 1) for c in chisq] + [chi2_p_value(global_chisq, len(names))],
    }, index=names + ['GLOBAL'])

    return PHTestResult(
        summary=summary,
        scaled_residuals=pd.DataFrame(scaled + beta, index=pd.Index(times, name='time'),
                                      columns=names),
        transformed_times=g,
        time_transform=time_transform,
    )


def _correlation(x: np.ndarray, y: np.ndarray) -> float:
    y = y - y.mean()
    denom = np.sqrt((x @ x) * (y @ y))
    if denom == 0:
        return np.nan
    return float((x @ y) / denom)
