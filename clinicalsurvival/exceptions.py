"""
Exception and warning classes for the clinicalsurvival package.
"""

from typing import List, Optional

import numpy as np


class SurvivalError(Exception):
    """Base class for errors raised by the estimation engine."""


class EventTableError(SurvivalError, ValueError):
    """
    Invalid input reached the event table.

    Attributes
    ----------
    rows : list
        Labels of the offending rows (empty if the problem is not row specific)
    """

    def __init__(self, message: str, rows: Optional[List] = None):
        self.rows = list(rows) if rows is not None else []
        if self.rows:
            shown = self.rows[:10]
            more = f" (and {len(self.rows) - len(shown)} more)" if len(self.rows) > len(shown) else ""
            message = f"{message}: rows {shown}{more}"
        super().__init__(message)


class SingularInformationError(SurvivalError):
    """
    The observed information matrix is singular or near-singular.

    Raised for collinear or constant covariates and for perfect separation,
    where a coefficient drifts to infinity while the information vanishes.

    Attributes
    ----------
    coefficients : np.ndarray
        Last coefficient iterate
    iterations : int
        Newton-Raphson iterations completed
    covariate : str or None
        Covariate contributing most to the singular direction
    """

    def __init__(self, message: str, coefficients: np.ndarray, iterations: int,
                 covariate: Optional[str] = None):
        self.coefficients = np.asarray(coefficients, dtype=float).copy()
        self.iterations = iterations
        self.covariate = covariate
        super().__init__(message)


class ConvergenceError(SurvivalError):
    """
    Newton-Raphson did not converge within its budget.

    Attributes
    ----------
    coefficients : np.ndarray
        Last coefficient iterate
    iterations : int
        Newton-Raphson iterations completed
    score_norm : float
        Norm of the score vector at the last iterate
    """

    def __init__(self, message: str, coefficients: np.ndarray, iterations: int,
                 score_norm: float):
        self.coefficients = np.asarray(coefficients, dtype=float).copy()
        self.iterations = iterations
        self.score_norm = score_norm
        super().__init__(message)


class DegenerateStratumWarning(UserWarning):
    """A stratum has no observed events; its curve is flat at 1."""


class CompletionWarning(UserWarning):
    """Rows were dropped or values imputed while completing a raw table."""
