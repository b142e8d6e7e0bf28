"""
Utility functions used throughout the clinicalsurvival package.
"""

from typing import Iterable

import numpy as np
from scipy import stats


def z_critical(conf_level: float) -> float:
    """
    Two-sided standard normal critical value for a confidence level.

    Parameters
    ----------
    conf_level : float
        Confidence level in (0, 1), e.g. 0.95

    Returns
    -------
    float
    """
    check_conf_level(conf_level)
    return float(stats.norm.ppf((1 + conf_level) / 2))


def check_conf_level(conf_level: float) -> None:
    """Raise if conf_level is not a probability strictly between 0 and 1."""
    if not isinstance(conf_level, (int, float)) or not 0 < conf_level < 1:
        raise ValueError("Invalid conf_level")


def chi2_p_value(statistic: float, df: int) -> float:
    """Upper tail probability of a chi-square statistic."""
    return float(stats.chi2.sf(statistic, df))


def two_sided_p_value(z: np.ndarray) -> np.ndarray:
    """Two-sided normal p-values for z statistics."""
    return 2 * stats.norm.sf(np.abs(z))


def step_function_lookup(knots: np.ndarray, values: np.ndarray,
                         times: Iterable[float], before: float) -> np.ndarray:
    """
    Evaluate a right-continuous step function.

    Parameters
    ----------
    knots : np.ndarray
        Ascending jump times
    values : np.ndarray
        Function value from each knot onwards
    times : iterable of float
        Evaluation times
    before : float
        Value before the first knot

    Returns
    -------
    np.ndarray
    """
    times = np.atleast_1d(np.asarray(times, dtype=float))
    idx = np.searchsorted(knots, times, side='right') - 1
    out = np.full(times.shape, before, dtype=float)
    inside = idx >= 0
    out[inside] = np.asarray(values, dtype=float)[idx[inside]]
    return out


def round_force_output_zeros(number: float, dp: int) -> str:
    """
    Round a number and force trailing zeros to be output.

    Parameters
    ----------
    number : float
        Number to round
    dp : int
        Number of decimal places

    Returns
    -------
    str
        Formatted number string
    """
    if dp < 1:
        raise ValueError("dp must be positive")
    return f"{number:.{dp}f}"


def format_p_value(p: float, dp: int) -> str:
    """Format a p-value, showing '<0.001'-style output for tiny values."""
    floor = 10 ** (-dp)
    if p < floor:
        return f"<{round_force_output_zeros(floor, dp)}"
    return round_force_output_zeros(p, dp)
