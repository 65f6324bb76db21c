# tests/test_population.py
"""Tests for the population (GAMLSS-style) fit."""

import numpy as np
import pytest

from bcpe_centiles.config import ReferenceConfig
from bcpe_centiles.data import pool_samples
from bcpe_centiles.errors import ConvergenceFailure, InsufficientData
from bcpe_centiles.flat_fit import fit_flat
from bcpe_centiles.population import FittedModel, fit_population
from bcpe_centiles.screening import LinkSpec
from bcpe_centiles.smoothing import ConstantTerm, PSplineTerm

MU_ONLY = LinkSpec(mu='smooth', sigma='constant', nu='constant', tau='constant')


@pytest.fixture
def smooth_model(cohort_samples):
    return fit_population(cohort_samples, MU_ONLY, ReferenceConfig(max_outer_cycles=50))


class TestConstantLinks:

    def test_equivalent_to_flat_fit(self, cohort_samples):
        samples = cohort_samples[:8]
        pooled = pool_samples(samples, weighting='equal')
        config = ReferenceConfig(tolerance=1e-5, max_outer_cycles=200)

        flat, _ = fit_flat(pooled.y, config=config)
        model = fit_population(pooled, LinkSpec.all_constant(), config,
                               weights=np.ones(pooled.n))

        params = model.predict(np.array([30.0, 60.0]))
        for name in ('mu', 'sigma', 'nu', 'tau'):
            np.testing.assert_allclose(params[name], getattr(flat, name), rtol=1e-8)
            assert np.ptp(params[name]) == 0.0

    def test_default_weighting_matches_flat_fit(self, cohort_samples):
        """Equal-size samples under the default 1/n_i weights and tolerances."""
        samples = cohort_samples[:8]
        pooled = pool_samples(samples)
        assert np.ptp(pooled.weights) == 0.0

        flat, _ = fit_flat(pooled.y)
        model = fit_population(samples, LinkSpec.all_constant(), ReferenceConfig(max_outer_cycles=100))
        assert model.converged

        # the weighted deviance is scaled by 1/60, so the stopping rule is looser
        params = model.predict(np.array([45.0]))
        np.testing.assert_allclose(params['mu'], flat.mu, rtol=1e-2)
        np.testing.assert_allclose(params['sigma'], flat.sigma, rtol=0.1)
        np.testing.assert_allclose(params['tau'], flat.tau, rtol=0.1)
        np.testing.assert_allclose(params['nu'], flat.nu, atol=0.1)

    def test_constant_links_need_one_age_only(self, cohort_samples):
        model = fit_population(cohort_samples[:1], LinkSpec.all_constant(), ReferenceConfig(max_outer_cycles=100))
        assert model.converged
        assert all(isinstance(model.term(n), ConstantTerm) for n in model.param_names)


class TestSmoothLinks:

    def test_recovers_median_trend(self, smooth_model, mu_trend):
        ages = np.linspace(30, 70, 9)
        mu = smooth_model.parameter('mu')(ages)
        np.testing.assert_allclose(mu, mu_trend(ages), rtol=0.1)
        assert isinstance(smooth_model.term('mu'), PSplineTerm)
        assert isinstance(smooth_model.term('sigma'), ConstantTerm)

    def test_diagnostics(self, smooth_model):
        diag = smooth_model.diagnostics
        assert diag.converged
        assert diag.stop_reason == 'tolerance'
        assert 1 <= diag.iterations <= 50
        assert diag.edf['mu'] >= 1.5
        assert diag.edf['sigma'] == 1.0
        assert diag.total_edf == pytest.approx(sum(diag.edf.values()))
        assert diag.aic == pytest.approx(diag.deviance + 2 * diag.total_edf)
        assert diag.lambdas['mu'] > 0
        assert diag.n_obs == 25 * 60
        assert 'edf_mu' in diag.as_dict()

    def test_predicts_outside_training_range(self, smooth_model):
        params = smooth_model.predict(np.array([5.0, 95.0]))
        for values in params.values():
            assert np.all(np.isfinite(values))
        assert params['mu'][1] > params['mu'][0]

    def test_frame(self, smooth_model):
        frame = smooth_model.to_frame(n_points=11)
        assert list(frame.columns) == ['age', 'mu', 'sigma', 'nu', 'tau']
        assert len(frame) == 11
        assert frame['age'].iloc[0] == pytest.approx(20.0)
        assert frame['age'].iloc[-1] == pytest.approx(80.0)
        assert 'BCPE' in repr(smooth_model)


class TestFailures:

    def test_too_few_distinct_ages(self, cohort_samples):
        with pytest.raises(InsufficientData, match="distinct ages"):
            fit_population(cohort_samples[:3], MU_ONLY)

    def test_non_convergence_attaches_partial_model(self, cohort_samples):
        config = ReferenceConfig(max_outer_cycles=1, tolerance=1e-12)
        with pytest.raises(ConvergenceFailure) as excinfo:
            fit_population(cohort_samples, MU_ONLY, config)
        model = excinfo.value.model
        assert isinstance(model, FittedModel)
        assert not model.converged
        assert model.diagnostics.stop_reason == 'max_cycles'
        assert excinfo.value.iterations == 1

    def test_inner_cap_is_not_convergence(self, cohort_samples):
        config = ReferenceConfig(max_inner_iter=1, tolerance=1e-12, max_outer_cycles=3)
        with pytest.raises(ConvergenceFailure) as excinfo:
            fit_population(cohort_samples, MU_ONLY, config)
        assert not excinfo.value.model.converged
        assert excinfo.value.model.diagnostics.stop_reason == 'max_cycles'

    def test_weights_must_match(self, cohort_samples):
        pooled = pool_samples(cohort_samples)
        with pytest.raises(ValueError, match="weights shape"):
            fit_population(pooled, MU_ONLY, weights=np.ones(3))

    def test_normal_family_rejected(self, cohort_samples):
        with pytest.raises(ValueError):
            fit_population(cohort_samples, MU_ONLY, distribution='NO')
