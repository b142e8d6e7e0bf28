"""
Tests for the proportional hazards test.
"""

import pytest
import numpy as np
import pandas as pd

from clinicalsurvival import (
    EventTable_from_dataframe, proportional_hazards_test, scaled_schoenfeld_residuals,
    schoenfeld_residuals, simulate_cox_data
)
from clinicalsurvival.ph_test import transform_times


def make_table(df, covariates=('x1', 'x2')):
    return EventTable_from_dataframe(df, duration='duration', event='event',
                                     covariates=list(covariates))


class TestSchoenfeldResiduals:
    """Tests for Schoenfeld residuals."""

    @pytest.fixture
    def fitted(self):
        table = make_table(simulate_cox_data(300, [0.5, -0.3], seed=31, round_to=1.0))
        return table.fit_cox(), table

    def test_residuals_sum_to_score(self, fitted):
        """Test that residuals sum to the score, which vanishes at the estimate."""
        model, table = fitted

        residuals = schoenfeld_residuals(model, table)

        assert residuals.shape == (table.n_events, 2)
        np.testing.assert_allclose(residuals.sum().to_numpy(), 0.0, atol=1e-8)
        assert residuals.index.is_monotonic_increasing

    def test_scaled_residuals_centre_on_coefficients(self, fitted):
        """Test that scaled residuals average to the coefficient estimates."""
        model, table = fitted

        scaled = scaled_schoenfeld_residuals(model, table)

        np.testing.assert_allclose(scaled.mean().to_numpy(), model.coefficients.to_numpy(),
                                   atol=1e-8)

    def test_covariate_mismatch(self, fitted):
        """Test that the table must carry the model's covariates."""
        model, table = fitted
        other = EventTable_from_dataframe(table.subject_data, duration='duration',
                                          event='event_observed', covariates=['x2', 'x1'])

        with pytest.raises(ValueError, match="do not match"):
            schoenfeld_residuals(model, other)


class TestProportionalHazardsTest:
    """Tests for proportional_hazards_test function."""

    @pytest.fixture
    def ph_data(self):
        table = make_table(simulate_cox_data(300, [0.5, -0.3], seed=41))
        return table.fit_cox(), table

    def test_output_layout(self, ph_data):
        """Test the summary table and residual shapes."""
        model, table = ph_data

        result = proportional_hazards_test(model, table)

        assert list(result.summary.index) == ['x1', 'x2', 'GLOBAL']
        assert list(result.summary.columns) == ['rho', 'chisq', 'df', 'p']
        assert list(result.summary['df']) == [1, 1, 2]
        assert result.scaled_residuals.shape == (table.n_events, 2)
        assert len(result.transformed_times) == table.n_events
        assert result.time_transform == 'rank'
        assert np.isnan(result.global_test['rho'])
        assert np.all((result.summary['p'] >= 0) & (result.summary['p'] <= 1))

    @pytest.mark.parametrize("time_transform", ['identity', 'log', 'rank', 'km'])
    def test_time_transforms(self, ph_data, time_transform):
        """Test that every transform yields finite statistics."""
        model, table = ph_data

        result = proportional_hazards_test(model, table, time_transform=time_transform)

        assert np.all(np.isfinite(result.summary['chisq']))
        assert np.all(result.summary['chisq'] >= 0)
        assert np.all(np.abs(result.summary['rho'].iloc[:-1]) <= 1)
        assert result.time_transform == time_transform

    def test_invalid_transform(self, ph_data):
        """Test that an unknown transform is rejected."""
        model, table = ph_data

        with pytest.raises(ValueError, match="time_transform"):
            proportional_hazards_test(model, table, time_transform='sqrt')

    def test_crossing_hazards_detected(self):
        """Test that crossing hazards give a significant global test."""
        rng = np.random.default_rng(7)
        n = 400
        group = rng.binomial(1, 0.5, n)
        # Increasing hazard in group 0, decreasing hazard in group 1
        times = np.where(group == 1, rng.weibull(0.5, n), rng.weibull(2.0, n))
        df = pd.DataFrame({'duration': times, 'event': 1, 'x1': group.astype(float)})
        table = make_table(df, covariates=['x1'])

        result = proportional_hazards_test(table.fit_cox(), table)

        assert result.global_test['p'] < 0.001
        assert result.violations(alpha=0.01) == ['x1']

    def test_type_one_error(self):
        """Test that data with proportional hazards are rarely rejected."""
        rejections = 0
        for seed in range(100, 130):
            table = make_table(simulate_cox_data(150, [0.5], seed=seed), covariates=['x1'])
            result = proportional_hazards_test(table.fit_cox(), table)
            rejections += result.global_test['p'] < 0.05

        assert rejections <= 6

    def test_summary_text(self, ph_data):
        """Test the printable summary."""
        model, table = ph_data

        text = proportional_hazards_test(model, table, time_transform='km').summary_text()

        assert 'Proportional hazards test (time transform: km)' in text
        assert 'GLOBAL' in text


class TestTransformTimes:
    """Tests for transform_times function."""

    def test_identity_log_rank(self):
        """Test the identity, log and rank transforms."""
        times = np.array([2.0, 5.0, 5.0, 9.0])

        np.testing.assert_array_equal(transform_times(times, 'identity'), times)
        np.testing.assert_allclose(transform_times(times, 'log'), np.log(times))
        np.testing.assert_array_equal(transform_times(times, 'rank'), [1, 2.5, 2.5, 4])

    def test_km_transform(self):
        """Test the Kaplan-Meier transform."""
        df = pd.DataFrame({'duration': [1.0, 2.0, 3.0, 4.0], 'event': [1, 1, 1, 1],
                           'x1': [0.0, 1.0, 0.0, 1.0]})
        table = make_table(df, covariates=['x1'])

        g = transform_times(np.array([1.0, 2.0, 3.0, 4.0]), 'km', table)

        np.testing.assert_allclose(g, [0.25, 0.5, 0.75, 1.0])

    def test_km_needs_table(self):
        """Test that the Kaplan-Meier transform needs the data."""
        with pytest.raises(ValueError, match="needs the event table"):
            transform_times(np.array([1.0, 2.0]), 'km')


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
