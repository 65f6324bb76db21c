# tests/test_centiles.py
"""Tests for centile prediction, crossing detection and residual scores."""

import warnings

import numpy as np
import pytest

from bcpe_centiles.centiles import (
    CentileCurve,
    centiles_to_frame,
    predict_centiles,
    residual_summary,
    z_scores,
)
from bcpe_centiles.config import DEFAULT_CENTILE_LEVELS
from bcpe_centiles.distributions import BCPEDistribution
from bcpe_centiles.errors import ConvergenceFailure


class ReversedBCPE(BCPEDistribution):
    """Quantiles mirrored around the median, so centiles cross"""

    def quantile(self, p, mu, sigma, nu, tau, tol=None, max_iter=None):
        return super().quantile(1.0 - np.asarray(p), mu, sigma, nu, tau, tol=tol, max_iter=max_iter)


AGES = np.linspace(20, 80, 13)


class TestPredictCentiles:

    def test_median_equals_mu_for_symmetric_kernel(self, symmetric_model):
        curves = predict_centiles(symmetric_model, AGES, [0.5])
        mu = symmetric_model.parameter('mu')(AGES)
        np.testing.assert_allclose(curves[0].values, mu, rtol=1e-6)

    def test_default_levels_ordered_without_warnings(self, symmetric_model):
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            curves = predict_centiles(symmetric_model, AGES)
        assert [c.level for c in curves] == DEFAULT_CENTILE_LEVELS
        stacked = np.vstack([c.values for c in curves])
        assert np.all(np.diff(stacked, axis=0) > 0)
        assert all(c.warnings == () for c in curves)

    def test_age_order_preserved(self, symmetric_model):
        ages = AGES[::-1]
        curve = predict_centiles(symmetric_model, ages, [0.5])[0]
        np.testing.assert_array_equal(curve.ages, ages)
        assert np.all(np.diff(curve.values) < 0)

    def test_extrapolated_ages(self, symmetric_model):
        curves = predict_centiles(symmetric_model, [10.0, 90.0], [0.1, 0.9])
        assert all(np.all(np.isfinite(c.values)) for c in curves)

    def test_crossing_reported(self, symmetric_model):
        symmetric_model.distribution = ReversedBCPE()
        with pytest.warns(RuntimeWarning, match="falls below"):
            curves = predict_centiles(symmetric_model, AGES, [0.1, 0.5, 0.9])
        assert curves[0].warnings == ()
        assert len(curves[1].warnings) == 1
        assert len(curves[2].warnings) == 1
        assert "13 age(s)" in curves[2].warnings[0]

    def test_non_converged_model_refused(self, model_factory):
        model = model_factory(converged=False)
        with pytest.raises(ConvergenceFailure) as excinfo:
            predict_centiles(model, AGES)
        assert excinfo.value.model is model

    def test_curve_z(self):
        curve = CentileCurve(level=0.97725, ages=AGES, values=np.ones_like(AGES))
        assert curve.z == pytest.approx(2.0, abs=1e-3)
        assert list(curve.to_frame().columns) == ['age', 'threshold']


class TestCentilesFrame:

    def test_columns(self, symmetric_model):
        curves = predict_centiles(symmetric_model, AGES, [0.1, 0.5, 0.9])
        frame = centiles_to_frame(curves)
        assert list(frame.columns) == ['age', 'threshold_1', 'threshold_2', 'threshold_3']
        assert frame.attrs['levels'] == [0.1, 0.5, 0.9]
        assert len(frame) == len(AGES)

    def test_mismatched_grids(self):
        a = CentileCurve(0.1, np.array([1.0, 2.0]), np.array([1.0, 2.0]))
        b = CentileCurve(0.9, np.array([1.0, 3.0]), np.array([3.0, 4.0]))
        with pytest.raises(ValueError):
            centiles_to_frame([a, b])
        with pytest.raises(ValueError):
            centiles_to_frame([])


class TestResiduals:

    def test_z_scores_of_centiles(self, symmetric_model):
        curve = predict_centiles(symmetric_model, AGES, [0.84134])[0]
        z = z_scores(symmetric_model, AGES, curve.values)
        np.testing.assert_allclose(z, 1.0, atol=1e-4)

    def test_residual_summary(self, rng):
        summary = residual_summary(rng.normal(size=1000))
        assert abs(summary['mean_residuals']) < 0.1
        assert summary['std_residuals'] == pytest.approx(1.0, abs=0.1)
        assert summary['n_observations'] == 1000
        assert 0.0 <= summary['shapiro_pvalue'] <= 1.0

    def test_residual_summary_small_sample(self):
        summary = residual_summary([0.1, -0.2, np.nan])
        assert summary['n_observations'] == 2
        assert np.isnan(summary['shapiro_pvalue'])
