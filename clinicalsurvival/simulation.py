"""
Simulation of censored data from a proportional hazards model.

Event times follow a Weibull proportional hazards model with baseline
cumulative hazard H0(t) = baseline_hazard * t^shape, so that
H(t | x) = H0(t) * exp(x . beta). Censoring is exponential with an optional
administrative cut-off.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd


def simulate_cox_data(n: int,
                      coefficients: Sequence[float],
                      baseline_hazard: float = 0.1,
                      shape: float = 1.0,
                      censoring_rate: float = 0.05,
                      follow_up: float = np.inf,
                      covariate_sd: float = 1.0,
                      binary: Sequence[int] = (),
                      seed: Optional[int] = None,
                      round_to: Optional[float] = None) -> pd.DataFrame:
    """
    Simulate subjects from a Weibull proportional hazards model.

    Args:
        n: Number of subjects
        coefficients: True log hazard ratios, one per covariate
        baseline_hazard: Scale of the baseline cumulative hazard
        shape: Weibull shape (1 = exponential)
        censoring_rate: Rate of exponential censoring (0 = none)
        follow_up: Administrative censoring time
        covariate_sd: Standard deviation of the normal covariates
        binary: Positions of covariates drawn as Bernoulli(0.5) instead
        seed: Random seed for reproducibility
        round_to: Round durations up to multiples of this unit (creates ties)

    Returns:
        DataFrame with columns [duration, event, x1, ..., xp]
    """
    if n < 1:
        raise ValueError("Invalid n")
    if baseline_hazard <= 0:
        raise ValueError("baseline_hazard must be > 0")
    if shape <= 0:
        raise ValueError("shape must be > 0")
    if censoring_rate < 0:
        raise ValueError("censoring_rate must be non-negative")
    if follow_up <= 0:
        raise ValueError("Invalid follow_up")
    if round_to is not None and round_to <= 0:
        raise ValueError("round_to must be > 0")

    rng = np.random.default_rng(seed)
    beta = np.asarray(coefficients, dtype=float)
    p = len(beta)

    X = rng.normal(0.0, covariate_sd, size=(n, p))
    for j in binary:
        X[:, j] = rng.binomial(1, 0.5, size=n)

    # Invert H(t | x) = Exp(1) draw
    hazard_scale = baseline_hazard * np.exp(X @ beta)
    event_times = (rng.exponential(1.0, size=n) / hazard_scale) ** (1 / shape)

    if censoring_rate > 0:
        censor_times = rng.exponential(1 / censoring_rate, size=n)
    else:
        censor_times = np.full(n, np.inf)
    censor_times = np.minimum(censor_times, follow_up)

    duration = np.minimum(event_times, censor_times)
    if round_to is not None:
        duration = np.ceil(duration / round_to) * round_to

    data = pd.DataFrame({
        'duration': duration,
        'event': (event_times <= censor_times).astype(int),
    })
    for j in range(p):
        data[f'x{j + 1}'] = X[:, j]
    return data
