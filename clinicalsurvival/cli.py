#!/usr/bin/env python3
"""
Survival analysis CLI.

Reads a CSV of subject-level data, completes missing values, and prints
Kaplan-Meier curves, the log-rank test, the Cox model and the proportional
hazards test.

Usage:
    clinicalsurvival trial.csv --duration days --event death --group arm
    clinicalsurvival trial.csv --duration days --event death --group arm --covariates age treated
    clinicalsurvival trial.csv --duration days --event death --covariates age --ties breslow --completion donor
"""

import argparse
import sys

import pandas as pd

from .completion import COMPLETION_STRATEGIES, CompletionOptions, get_completion_strategy
from .cox_model import TIES, CoxFitOptions
from .display_options import DisplayOptions
from .event_table import EventTable_from_dataframe
from .exceptions import SurvivalError
from .kaplan_meier import logrank_test
from .ph_test import TIME_TRANSFORMS, proportional_hazards_test
from .utils import format_p_value


def print_header(text, display):
    """Print a formatted header."""
    print("\n" + display.header(text))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinicalsurvival",
        description="Kaplan-Meier, log-rank, Cox regression and proportional hazards test",
    )
    parser.add_argument("path", help="CSV file with one row per subject")
    parser.add_argument("--duration", required=True, help="Time to event or censoring column")
    parser.add_argument("--event", required=True, help="Event indicator column (1 = event)")
    parser.add_argument("--group", help="Stratification column for curves and the log-rank test")
    parser.add_argument("--covariates", nargs="+", default=[], help="Covariate columns for the Cox model")
    parser.add_argument("--ties", choices=TIES, default="efron", help="Tie handling (default: efron)")
    parser.add_argument("--completion", choices=list(COMPLETION_STRATEGIES), default="drop",
                        help="Missing data strategy (default: drop)")
    parser.add_argument("--imputation", type=int, default=0,
                        help="Imputation number for --completion multiple")
    parser.add_argument("--seed", type=int, default=0, help="Random seed for multiple imputation")
    parser.add_argument("--time-transform", choices=TIME_TRANSFORMS, default="rank",
                        help="Time transform for the proportional hazards test")
    parser.add_argument("--conf-level", type=float, default=0.95, help="Confidence level")
    parser.add_argument("--dp", type=int, default=3, help="Decimal places")
    return parser


def run(args) -> None:
    display = DisplayOptions(dp=args.dp)
    raw = pd.read_csv(args.path)

    # The group column may also be a covariate
    columns = list(dict.fromkeys(
        [args.duration, args.event] + ([args.group] if args.group else []) + args.covariates))
    missing = [c for c in columns if c not in raw.columns]
    if missing:
        raise ValueError(f"Columns not found in {args.path}: {missing}")

    options = CompletionOptions(columns=[c for c in columns if c not in (args.duration, args.event)],
                                outcome_columns=[args.duration, args.event],
                                seed=args.seed, imputation=args.imputation)
    strategy = get_completion_strategy(args.completion)
    complete = strategy.complete(raw[columns], options)

    table = EventTable_from_dataframe(complete, duration=args.duration, event=args.event,
                                      strata=args.group, covariates=args.covariates)

    print_header("DATA", display)
    print(f"Completion: {strategy.name}")
    print(table.summary())

    dp = display.dp
    curves = table.fit_kaplan_meier(conf_level=args.conf_level)
    for level, km in curves.items():
        print_header(f"KAPLAN-MEIER: {level}", display)
        print(km.to_dataframe().to_string(index=False, float_format=lambda v: f"{v:.{dp}f}"))
        print(f"Median survival: {km.median_survival_time():g}")

    if len(curves) > 1:
        result = logrank_test(table)
        print_header("LOG-RANK TEST", display)
        for level in result.strata:
            print(f"  {level}: observed {result.observed_events[level]}, "
                  f"expected {result.expected_events[level]:.{dp}f}")
        print(f"  Chi-square: {result.chi_square:.{dp}f} on {result.df} df, "
              f"p={format_p_value(result.p_value, dp)}")

    if args.covariates:
        model = table.fit_cox(CoxFitOptions(ties=args.ties, conf_level=args.conf_level))
        print()
        print(model.summary_text(display))
        print()
        print(proportional_hazards_test(model, table, args.time_transform).summary_text(display))


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        run(args)
    except (SurvivalError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
