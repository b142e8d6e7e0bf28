"""
CoxModel class for fitted proportional hazards models.

The fit maximises the Cox partial log-likelihood by Newton-Raphson. Tied
failure times are handled with the Efron approximation (default) or the
Breslow approximation. Covariates are centred internally; the likelihood and
its derivatives do not depend on the centring.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import linalg

from .display_options import DisplayOptions
from .event_table import EventTable
from .exceptions import ConvergenceError, EventTableError, SingularInformationError
from .utils import (chi2_p_value, check_conf_level, format_p_value, step_function_lookup,
                    two_sided_p_value, z_critical)

TIES = ('efron', 'breslow')


@dataclass
class CoxFitOptions:
    """
    Options for fitting a Cox model.

    Attributes
    ----------
    ties : str
        Tie handling: 'efron' (default) or 'breslow'
    tol : float
        Convergence tolerance on the norm of the score vector
    max_iter : int
        Maximum number of Newton-Raphson iterations
    singular_tol : float
        Smallest acceptable eigenvalue of the information matrix after
        normalising by the null-model information diagonal
    conf_level : float
        Confidence level for hazard ratio intervals
    max_seconds : float, optional
        Wall-clock budget for the iterations
    """
    ties: str = 'efron'
    tol: float = 1e-9
    max_iter: int = 50
    singular_tol: float = 1e-7
    conf_level: float = 0.95
    max_seconds: Optional[float] = None

    def __post_init__(self):
        if self.ties not in TIES:
            raise ValueError(f"Invalid ties: must be one of {list(TIES)}")
        if not self.tol > 0:
            raise ValueError("Invalid tol")
        if not isinstance(self.max_iter, int) or self.max_iter < 1:
            raise ValueError("Invalid max_iter")
        if not 0 < self.singular_tol < 1:
            raise ValueError("Invalid singular_tol")
        check_conf_level(self.conf_level)
        if self.max_seconds is not None and not self.max_seconds > 0:
            raise ValueError("Invalid max_seconds")


@dataclass(frozen=True, eq=False)
class PartialLikelihoodData:
    """
    Event table rearranged for partial likelihood computations.

    Attributes
    ----------
    X : np.ndarray
        Centred covariates, rows sorted by ascending duration
    T : np.ndarray
        Sorted durations
    E : np.ndarray
        Sorted event indicators
    order : np.ndarray
        Row positions in the original table for each sorted row
    means : np.ndarray
        Covariate means removed by the centring
    failures : tuple
        ``(time, start, events)`` per distinct failure time, where ``start``
        is the first sorted row with that duration (the risk set is every row
        from ``start`` on) and ``events`` the sorted rows failing at that time
    """
    X: np.ndarray
    T: np.ndarray
    E: np.ndarray
    order: np.ndarray
    means: np.ndarray
    failures: Tuple[Tuple[float, int, np.ndarray], ...]

    @classmethod
    def from_event_table(cls, table: EventTable) -> 'PartialLikelihoodData':
        order = np.argsort(table.durations, kind='mergesort')
        X = table.covariate_matrix()[order]
        T = table.durations[order]
        E = table.events[order]
        means = X.mean(axis=0)

        failures = []
        unique_times, starts, counts = np.unique(T, return_index=True, return_counts=True)
        for t, start, count in zip(unique_times, starts, counts):
            events = start + np.flatnonzero(E[start:start + count])
            if len(events):
                failures.append((float(t), int(start), events))

        return cls(X=X - means, T=T, E=E, order=order, means=means, failures=tuple(failures))

    @property
    def n_events(self) -> int:
        return int(self.E.sum())


@dataclass
class NewtonStep:
    """
    One Newton-Raphson step.

    Attributes
    ----------
    coefficients : np.ndarray
        Next iterate (equal to the input when converged)
    log_likelihood : float
        Partial log-likelihood at the input coefficients
    score : np.ndarray
        Score vector at the input coefficients
    information : np.ndarray
        Observed information (negative Hessian) at the input coefficients
    converged : bool
        True if the score norm at the input coefficients is below tolerance
    """
    coefficients: np.ndarray
    log_likelihood: float
    score: np.ndarray
    information: np.ndarray
    converged: bool


@dataclass
class ChiSquareResult:
    """A chi-square test against the null model."""
    name: str
    statistic: float
    df: int
    p_value: float


def _tie_fractions(n_tied: int, ties: str) -> np.ndarray:
    """Share of the tied subjects' risk removed from each tied term."""
    if ties == 'efron':
        return np.arange(n_tied) / n_tied
    return np.zeros(n_tied)


def failure_time_moments(data: PartialLikelihoodData, beta: np.ndarray, ties: str):
    """
    Risk-set moments at every distinct failure time.

    Yields
    ------
    tuple
        ``(time, events, denominators, means, second_moments)`` where, for the
        l-th of the d tied terms, ``denominators[l]`` is the weighted risk-set
        sum, ``means[l]`` the risk-weighted covariate mean and
        ``second_moments[l]`` the risk-weighted mean of x x'.
    """
    risk = np.exp(data.X @ beta)
    wx = risk[:, None] * data.X
    # Sums over the risk set {j : T_j >= t}, i.e. reverse cumulative sums on sorted rows
    s0 = np.cumsum(risk[::-1])[::-1]
    s1 = np.cumsum(wx[::-1], axis=0)[::-1]
    s2 = np.cumsum((wx[:, :, None] * data.X[:, None, :])[::-1], axis=0)[::-1]

    for t, start, events in data.failures:
        frac = _tie_fractions(len(events), ties)
        denominators = s0[start] - frac * risk[events].sum()
        means = (s1[start] - np.outer(frac, wx[events].sum(axis=0))) / denominators[:, None]
        tied_x_x = wx[events].T @ data.X[events]
        second = (s2[start] - frac[:, None, None] * tied_x_x) / denominators[:, None, None]
        yield t, events, denominators, means, second


def partial_likelihood_derivatives(beta: np.ndarray, data: PartialLikelihoodData,
                                   ties: str = 'efron') -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Partial log-likelihood, score vector and observed information at beta.

    Returns
    -------
    tuple
        (log_likelihood, score, information)
    """
    p = data.X.shape[1]
    eta = data.X @ beta
    log_lik = 0.0
    score = np.zeros(p)
    information = np.zeros((p, p))

    for _, events, denominators, means, second in failure_time_moments(data, beta, ties):
        log_lik += eta[events].sum() - np.log(denominators).sum()
        score += data.X[events].sum(axis=0) - means.sum(axis=0)
        information += second.sum(axis=0) - means.T @ means

    return float(log_lik), score, information


def newton_raphson_step(beta: np.ndarray, data: PartialLikelihoodData,
                        ties: str = 'efron', tol: float = 1e-9) -> NewtonStep:
    """
    Compute the next Newton-Raphson iterate from beta.

    Pure function: the same inputs always give the same step. A failed linear
    solve yields non-finite coefficients, which the caller reports.
    """
    beta = np.asarray(beta, dtype=float)
    log_lik, score, information = partial_likelihood_derivatives(beta, data, ties)

    if np.linalg.norm(score) < tol:
        return NewtonStep(beta.copy(), log_lik, score, information, True)

    try:
        delta = linalg.solve(information, score, assume_a='pos')
    except (np.linalg.LinAlgError, ValueError):
        delta = np.full_like(beta, np.nan)

    return NewtonStep(beta + delta, log_lik, score, information, False)


def _check_information(information: np.ndarray, null_diagonal: np.ndarray, beta: np.ndarray,
                       iteration: int, names, singular_tol: float) -> None:
    """Raise SingularInformationError if the information matrix is (near-)singular."""
    if not np.all(np.isfinite(information)):
        raise SingularInformationError("Information matrix contains nan or inf values",
                                       beta, iteration)

    constant = np.flatnonzero(null_diagonal <= 0)
    if len(constant):
        name = names[constant[0]]
        raise SingularInformationError(f"Covariate '{name}' does not vary within the risk sets",
                                       beta, iteration, covariate=name)

    scale = 1 / np.sqrt(null_diagonal)
    eigenvalues, eigenvectors = np.linalg.eigh(information * np.outer(scale, scale))
    if eigenvalues[0] < singular_tol:
        name = names[int(np.argmax(np.abs(eigenvectors[:, 0])))]
        raise SingularInformationError(
            f"Information matrix is singular or near-singular (smallest normalised eigenvalue "
            f"{eigenvalues[0]:.3g} after {iteration} iterations). Suspect collinearity or "
            f"complete separation involving '{name}'",
            beta, iteration, covariate=name)


def _newton_raphson(data: PartialLikelihoodData, names,
                    options: CoxFitOptions) -> Tuple[np.ndarray, NewtonStep, NewtonStep, int]:
    """
    Iterate Newton-Raphson from zero.

    Returns
    -------
    tuple
        (coefficients, final step, step at beta = 0, iterations)
    """
    beta = np.zeros(data.X.shape[1])
    started = time.monotonic()
    null_step = None
    accepted, accepted_beta = None, None
    score_norm = np.inf

    for iteration in range(1, options.max_iter + 1):
        step = newton_raphson_step(beta, data, options.ties, options.tol)
        score_norm = float(np.linalg.norm(step.score))
        if null_step is None:
            null_step = step

        if accepted is not None and \
                step.log_likelihood < accepted.log_likelihood - 1e-10 * (1 + abs(accepted.log_likelihood)):
            # Overshot: retreat halfway toward the last accepted iterate
            beta = (beta + accepted_beta) / 2
            continue

        _check_information(step.information, np.diag(null_step.information), beta, iteration,
                           names, options.singular_tol)
        if step.converged:
            return beta, step, null_step, iteration
        if not np.all(np.isfinite(step.coefficients)):
            raise SingularInformationError("Newton-Raphson step could not be solved; "
                                           "suspect collinearity", beta, iteration)

        accepted, accepted_beta = step, beta
        beta = step.coefficients

        if options.max_seconds is not None and time.monotonic() - started > options.max_seconds:
            raise ConvergenceError(f"Newton-Raphson exceeded its {options.max_seconds:g}s budget "
                                   f"after {iteration} iterations", beta, iteration, score_norm)

    raise ConvergenceError(f"Newton-Raphson failed to converge in {options.max_iter} iterations "
                           f"(score norm {score_norm:.3g})", beta, options.max_iter, score_norm)


def breslow_cumulative_hazard(data: PartialLikelihoodData, beta: np.ndarray) -> pd.Series:
    """Breslow estimate of the baseline cumulative hazard at covariates = 0."""
    risk_sums = np.cumsum(np.exp(data.X @ beta)[::-1])[::-1]
    times = [t for t, _, _ in data.failures]
    increments = np.array([len(events) / risk_sums[start] for _, start, events in data.failures])
    # Undo the centring: the risk sums above are scaled by exp(-means . beta)
    hazard = np.cumsum(increments) * np.exp(-data.means @ beta)
    return pd.Series(hazard, index=pd.Index(times, name='time'), name='baseline_cumulative_hazard')


def concordance_index(durations: np.ndarray, risk_scores: np.ndarray, events: np.ndarray) -> float:
    """
    Harrell's concordance index.

    A pair is comparable when the shorter duration ends in an event; it is
    concordant when that subject has the higher risk score. Tied scores count
    one half.
    """
    durations = np.asarray(durations, dtype=float)
    risk_scores = np.asarray(risk_scores, dtype=float)
    events = np.asarray(events).astype(bool)

    concordant, comparable = 0.0, 0
    for i in np.flatnonzero(events):
        later = durations > durations[i]
        comparable += int(later.sum())
        concordant += np.sum(risk_scores[later] < risk_scores[i]) \
            + 0.5 * np.sum(risk_scores[later] == risk_scores[i])

    if comparable == 0:
        return np.nan
    return float(concordant / comparable)


@dataclass(frozen=True, eq=False)
class CoxModel:
    """
    A fitted Cox proportional hazards model.

    Instances are immutable; refitting produces a new instance.

    Attributes
    ----------
    coefficients : pd.Series
        Log hazard ratio per covariate
    covariance_matrix : pd.DataFrame
        Inverse of the observed information at convergence
    information_matrix : pd.DataFrame
        Observed information at convergence
    baseline_cumulative_hazard : pd.Series
        Breslow estimate at covariates = 0, indexed by failure time
    log_likelihood : float
        Partial log-likelihood at the estimate
    log_likelihood_null : float
        Partial log-likelihood at beta = 0
    null_score : np.ndarray
        Score vector at beta = 0
    null_information : np.ndarray
        Observed information at beta = 0
    n_iterations : int
        Newton-Raphson iterations used
    n_subjects : int
        Number of subjects
    n_events : int
        Number of events
    ties : str
        Tie handling used
    conf_level : float
        Confidence level for hazard ratio intervals
    concordance : float
        Harrell's concordance index on the fitted data
    """
    coefficients: pd.Series
    covariance_matrix: pd.DataFrame
    information_matrix: pd.DataFrame
    baseline_cumulative_hazard: pd.Series
    log_likelihood: float
    log_likelihood_null: float
    null_score: np.ndarray = field(repr=False)
    null_information: np.ndarray = field(repr=False)
    n_iterations: int = 0
    n_subjects: int = 0
    n_events: int = 0
    ties: str = 'efron'
    conf_level: float = 0.95
    concordance: float = np.nan

    @classmethod
    def from_event_table(cls, table: EventTable,
                         options: Optional[CoxFitOptions] = None) -> 'CoxModel':
        """
        Fit a Cox model to an EventTable.

        Parameters
        ----------
        table : EventTable
            Data with at least one covariate
        options : CoxFitOptions, optional
            Fitting options (Efron ties by default)

        Returns
        -------
        CoxModel

        Raises
        ------
        SingularInformationError
            Collinear or constant covariates, or complete separation
        ConvergenceError
            Iteration or time budget exhausted
        """
        if options is None:
            options = CoxFitOptions()
        if not table.covariates:
            raise ValueError("At least one covariate is required to fit a Cox model")
        if table.n_events == 0:
            raise EventTableError("Cannot fit a Cox model to data with no events")

        names = list(table.covariates)
        data = PartialLikelihoodData.from_event_table(table)
        beta, step, null_step, iterations = _newton_raphson(data, names, options)

        covariance = linalg.inv(step.information)
        covariance = (covariance + covariance.T) / 2
        risk_scores = table.covariate_matrix() @ beta

        return cls(
            coefficients=pd.Series(beta, index=names, name='coef'),
            covariance_matrix=pd.DataFrame(covariance, index=names, columns=names),
            information_matrix=pd.DataFrame(step.information, index=names, columns=names),
            baseline_cumulative_hazard=breslow_cumulative_hazard(data, beta),
            log_likelihood=step.log_likelihood,
            log_likelihood_null=null_step.log_likelihood,
            null_score=null_step.score,
            null_information=null_step.information,
            n_iterations=iterations,
            n_subjects=table.n_subjects,
            n_events=table.n_events,
            ties=options.ties,
            conf_level=options.conf_level,
            concordance=concordance_index(table.durations, risk_scores, table.events),
        )

    @property
    def covariates(self):
        return list(self.coefficients.index)

    @property
    def standard_errors(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.covariance_matrix.to_numpy())),
                         index=self.coefficients.index, name='se(coef)')

    @property
    def hazard_ratios(self) -> pd.Series:
        return pd.Series(np.exp(self.coefficients.to_numpy()),
                         index=self.coefficients.index, name='exp(coef)')

    @property
    def confidence_intervals(self) -> pd.DataFrame:
        """Hazard ratio confidence intervals, exp(coef -/+ z * se)."""
        z = z_critical(self.conf_level)
        coef = self.coefficients.to_numpy()
        se = self.standard_errors.to_numpy()
        pct = f"{self.conf_level * 100:g}%"
        return pd.DataFrame({
            f'exp(coef) lower {pct}': np.exp(coef - z * se),
            f'exp(coef) upper {pct}': np.exp(coef + z * se),
        }, index=self.coefficients.index)

    @property
    def summary(self) -> pd.DataFrame:
        """Per-covariate estimates, Wald tests and hazard ratio intervals."""
        coef = self.coefficients.to_numpy()
        se = self.standard_errors.to_numpy()
        z = coef / se
        df = pd.DataFrame({
            'coef': coef,
            'exp(coef)': self.hazard_ratios.to_numpy(),
            'se(coef)': se,
            'z': z,
            'p': two_sided_p_value(z),
        }, index=self.coefficients.index)
        return pd.concat([df, self.confidence_intervals], axis=1)

    @property
    def likelihood_ratio_test(self) -> ChiSquareResult:
        statistic = 2 * (self.log_likelihood - self.log_likelihood_null)
        df = len(self.coefficients)
        return ChiSquareResult('likelihood ratio', statistic, df, chi2_p_value(statistic, df))

    @property
    def wald_test(self) -> ChiSquareResult:
        beta = self.coefficients.to_numpy()
        statistic = float(beta @ self.information_matrix.to_numpy() @ beta)
        df = len(beta)
        return ChiSquareResult('Wald', statistic, df, chi2_p_value(statistic, df))

    @property
    def score_test(self) -> ChiSquareResult:
        u = self.null_score
        statistic = float(u @ linalg.solve(self.null_information, u, assume_a='pos'))
        df = len(u)
        return ChiSquareResult('score (log-rank)', statistic, df, chi2_p_value(statistic, df))

    def _covariate_values(self, X) -> Tuple[np.ndarray, Optional[pd.Index]]:
        if isinstance(X, EventTable):
            X = X.subject_data
        if isinstance(X, pd.DataFrame):
            missing = [c for c in self.covariates if c not in X.columns]
            if missing:
                raise ValueError(f"Missing covariate columns: {missing}")
            return X[self.covariates].to_numpy(dtype=float), X.index
        values = np.atleast_2d(np.asarray(X, dtype=float))
        if values.shape[1] != len(self.covariates):
            raise ValueError(f"Expected {len(self.covariates)} covariates per row, "
                             f"got {values.shape[1]}")
        return values, None

    def predict_partial_hazard(self, X) -> pd.Series:
        """exp(x . beta) for each row of X (DataFrame, EventTable or array)."""
        values, index = self._covariate_values(X)
        return pd.Series(np.exp(values @ self.coefficients.to_numpy()), index=index,
                         name='partial_hazard')

    def predict_cumulative_hazard(self, X, times=None) -> pd.DataFrame:
        """
        Cumulative hazard H0(t) * exp(x . beta).

        Returns
        -------
        pd.DataFrame
            One row per time (failure times by default), one column per subject
        """
        partial = self.predict_partial_hazard(X)
        base = self.baseline_cumulative_hazard
        if times is None:
            times = base.index.to_numpy()
        times = np.atleast_1d(np.asarray(times, dtype=float))
        h0 = step_function_lookup(base.index.to_numpy(), base.to_numpy(), times, before=0.0)
        return pd.DataFrame(np.outer(h0, partial.to_numpy()),
                            index=pd.Index(times, name='time'), columns=partial.index)

    def predict_survival_function(self, X, times=None) -> pd.DataFrame:
        """Survival exp(-H0(t) * exp(x . beta)); same layout as predict_cumulative_hazard."""
        return np.exp(-self.predict_cumulative_hazard(X, times))

    def summary_text(self, display: Optional[DisplayOptions] = None) -> str:
        if display is None:
            display = DisplayOptions()
        dp = display.dp
        lines = [display.header("Cox proportional hazards model"),
                 f"Subjects: {self.n_subjects}   Events: {self.n_events}   "
                 f"Ties: {self.ties}   Iterations: {self.n_iterations}",
                 "",
                 self.summary.to_string(float_format=lambda v: f"{v:.{dp}f}"),
                 "",
                 f"Concordance: {self.concordance:.{dp}f}"]
        for test in (self.likelihood_ratio_test, self.wald_test, self.score_test):
            lines.append(f"{test.name.capitalize()} test: {test.statistic:.{dp}f} on {test.df} df, "
                         f"p={format_p_value(test.p_value, dp)}")
        return '\n'.join(lines)

    def __str__(self) -> str:
        return self.summary_text()


def fit_cox(table: EventTable, ties: str = 'efron', **kwargs) -> CoxModel:
    """
    Fit a Cox model with the given tie handling.

    Parameters
    ----------
    table : EventTable
        Data with at least one covariate
    ties : str
        'efron' (default) or 'breslow'
    **kwargs
        Other CoxFitOptions fields

    Returns
    -------
    CoxModel
    """
    return CoxModel.from_event_table(table, CoxFitOptions(ties=ties, **kwargs))
