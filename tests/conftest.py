# tests/conftest.py
"""Shared fixtures for bcpe_centiles tests."""

import tempfile
from pathlib import Path
from typing import Dict, Generator, List

import numpy as np
import pandas as pd
import pytest
import yaml

from bcpe_centiles.distributions import BCPEDistribution
from bcpe_centiles.data import Sample
from bcpe_centiles.population import FitDiagnostics, FittedModel
from bcpe_centiles.screening import LinkSpec
from bcpe_centiles.smoothing import ConstantTerm, PSplineTerm


def true_mu(age):
    """Median trend used by the synthetic cohorts"""
    return 0.4 + 0.004 * (np.asarray(age, dtype=float) - 20.0)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def bcpe() -> BCPEDistribution:
    return BCPEDistribution()


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(20240917)


@pytest.fixture
def cohort_samples(bcpe) -> List[Sample]:
    """25 subjects aged 20-80, 60 values each, median rising linearly with age."""
    rng = np.random.default_rng(7)
    ages = np.linspace(20, 80, 25)
    samples = []
    for i, age in enumerate(ages):
        values = bcpe.rvs(60, random_state=rng, mu=float(true_mu(age)),
                          sigma=0.2, nu=1.0, tau=2.0)
        samples.append(Sample(f"S{i:03d}", float(age), tuple(values)))
    return samples


@pytest.fixture
def cohort_frame(cohort_samples) -> pd.DataFrame:
    """Long-format table of the cohort."""
    rows = [
        {'subject_id': s.subject_id, 'age': s.age, 'value': v}
        for s in cohort_samples for v in s.values
    ]
    return pd.DataFrame(rows)


def make_model(mu_fn=true_mu, sigma=0.2, nu=1.0, tau=2.0, converged=True) -> FittedModel:
    """Hand-built population model: smooth mu(age), constant sigma, nu, tau."""
    bcpe = BCPEDistribution()
    ages = np.linspace(20, 80, 61)
    mu_term = PSplineTerm.from_data(ages).fit(ages, np.log(mu_fn(ages)), np.ones_like(ages), lam=1e-3)
    terms = {
        'mu': mu_term,
        'sigma': ConstantTerm(np.log(sigma)),
        'nu': ConstantTerm(nu),
        'tau': ConstantTerm(np.log(tau)),
    }
    diagnostics = FitDiagnostics(
        iterations=1, converged=converged, stop_reason='tolerance' if converged else 'max_cycles',
        deviance=0.0, penalized_deviance=0.0,
        edf={k: float(t.edf) for k, t in terms.items()}, total_edf=0.0,
        gaic=0.0, aic=0.0, bic=0.0, n_obs=len(ages),
    )
    return FittedModel(bcpe, terms, LinkSpec(), diagnostics, (20.0, 80.0))


@pytest.fixture
def mu_trend():
    return true_mu


@pytest.fixture
def model_factory():
    return make_model


@pytest.fixture
def symmetric_model() -> FittedModel:
    """Model with nu = 1, tau = 2 (symmetric kernel)."""
    return make_model()


@pytest.fixture
def sample_config_dict() -> Dict:
    """Provide a sample configuration dictionary."""
    return {
        'effect_size_threshold': 0.05,
        'gaic_penalty': 2.0,
        'max_outer_cycles': 30,
        'centile_levels': [0.05, 0.5, 0.95],
        'time_budget': None,
    }


@pytest.fixture
def sample_config_file(temp_dir: Path, sample_config_dict: Dict) -> Path:
    """Create a sample config file."""
    config_path = temp_dir / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(sample_config_dict, f)
    return config_path
