"""
Survival Estimation for Clinical Time-to-Event Data

This Python package estimates survival curves from censored data, compares
them between groups with the log-rank test, fits Cox proportional hazards
models by Newton-Raphson with Efron or Breslow tie handling, and tests the
proportional hazards assumption with scaled Schoenfeld residuals.
"""

__version__ = "1.0.0"

from .event_table import EventTable, EventTable_from_dataframe
from .kaplan_meier import (
    KaplanMeierResult, LogrankResult, kaplan_meier_estimate, kaplan_meier_by_stratum, logrank_test
)
from .cox_model import (
    CoxModel, CoxFitOptions, ChiSquareResult, NewtonStep, PartialLikelihoodData,
    fit_cox, newton_raphson_step, partial_likelihood_derivatives, concordance_index
)
from .ph_test import (
    PHTestResult, proportional_hazards_test, schoenfeld_residuals, scaled_schoenfeld_residuals
)
from .completion import (
    CompletionStrategy, CompletionOptions, DropIncomplete, DonorImputation, MultipleImputation,
    get_completion_strategy, completions
)
from .simulation import simulate_cox_data
from .display_options import DisplayOptions
from .exceptions import (
    SurvivalError, EventTableError, SingularInformationError, ConvergenceError,
    DegenerateStratumWarning, CompletionWarning
)

__all__ = [
    # Data
    'EventTable', 'EventTable_from_dataframe',
    # Kaplan-Meier
    'KaplanMeierResult', 'LogrankResult', 'kaplan_meier_estimate', 'kaplan_meier_by_stratum',
    'logrank_test',
    # Cox model
    'CoxModel', 'CoxFitOptions', 'ChiSquareResult', 'NewtonStep', 'PartialLikelihoodData',
    'fit_cox', 'newton_raphson_step', 'partial_likelihood_derivatives', 'concordance_index',
    # Proportional hazards test
    'PHTestResult', 'proportional_hazards_test', 'schoenfeld_residuals',
    'scaled_schoenfeld_residuals',
    # Completion
    'CompletionStrategy', 'CompletionOptions', 'DropIncomplete', 'DonorImputation',
    'MultipleImputation', 'get_completion_strategy', 'completions',
    # Simulation
    'simulate_cox_data',
    # Display
    'DisplayOptions',
    # Errors
    'SurvivalError', 'EventTableError', 'SingularInformationError', 'ConvergenceError',
    'DegenerateStratumWarning', 'CompletionWarning',
]
