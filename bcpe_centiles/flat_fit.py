"""
Per-subject (flat) distribution fits

Each subject's values are fitted with an age-independent distribution,
giving one (mu, sigma, nu, tau) estimate per subject. Fits are independent
and fan out over joblib workers; failures are collected next to successes
rather than aborting the batch.
"""

import logging
from dataclasses import dataclass
from typing import Hashable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .backfitting import (BackfitProblem, BackfitSettings, initial_state,
                          params_from_eta, run_backfitting)
from .config import ReferenceConfig
from .data import subject_sort_key
from .distributions import (BCPEDistribution, Distribution, DistributionParams,
                            get_distribution)
from .errors import CentileError, ConvergenceFailure, InsufficientData
from .smoothing import ConstantTerm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlatFitResult:
    """Outcome of one subject's fit; `params` is None when the fit failed"""
    subject_id: Hashable
    age: float
    n: int
    params: Optional[DistributionParams]
    converged: bool
    iterations: int = 0
    deviance: float = float('nan')
    error: Optional[str] = None

    @property
    def ok(self):
        return self.params is not None and self.converged


def require_box_cox(distribution: Distribution) -> Distribution:
    if not isinstance(distribution, BCPEDistribution):
        raise ValueError(
            f"Fitting requires a Box-Cox family (BCCG or BCPE), got {distribution.name}"
        )
    return distribution


def fit_flat(values, weights=None, config: Optional[ReferenceConfig] = None,
             distribution: Union[str, Distribution] = 'BCPE', label='flat fit'):
    """
    Maximum-likelihood fit of a covariate-free distribution.

    Parameters:
    -----------
    values : array-like
        Positive measurements
    weights : array-like or None
        Prior weights (default: all ones)
    config : ReferenceConfig or None
        Supplies flat_tolerance, flat_max_cycles, min_sample_size
    distribution : str or Distribution
        'BCPE' (default) or 'BCCG'

    Returns:
    --------
    params : DistributionParams
    state : BackfitState
        Final fit state (cycles, deviance history)

    Raises:
    -------
    InsufficientData
        Fewer than min_sample_size values, or values without spread
    ConvergenceFailure
        Deviance tolerance not met within flat_max_cycles
    """
    config = config or ReferenceConfig()
    dist = require_box_cox(get_distribution(distribution, quantile_tol=config.quantile_tol,
                                            quantile_max_iter=config.quantile_max_iter))
    y = np.asarray(values, dtype=float)
    dist.check_support(y)
    if len(y) < config.min_sample_size:
        raise InsufficientData(
            f"{label}: {len(y)} values, at least {config.min_sample_size} required"
        )
    if np.ptp(y) == 0:
        raise InsufficientData(f"{label}: all values are identical")
    weights = np.ones_like(y) if weights is None else np.asarray(weights, dtype=float)

    problem = BackfitProblem(distribution=dist, x=np.zeros_like(y), y=y, weights=weights)
    settings = BackfitSettings(tolerance=config.flat_tolerance,
                               max_cycles=config.flat_max_cycles,
                               max_inner=config.max_inner_iter,
                               gaic_penalty=config.gaic_penalty,
                               time_budget=config.time_budget)
    terms = {name: ConstantTerm() for name in dist.param_names}
    state = run_backfitting(problem, initial_state(problem, terms), settings, label=label)

    if not state.converged:
        raise ConvergenceFailure(
            f"{label}: no convergence after {state.cycles} cycles ({state.stop_reason})",
            iterations=state.cycles, deviance=state.penalized_deviance,
        )

    fitted = {name: float(value[0]) for name, value in params_from_eta(dist, state.eta).items()}
    return DistributionParams.from_dict(fitted), state


def fit_sample(sample, config: Optional[ReferenceConfig] = None,
               distribution: Union[str, Distribution] = 'BCPE') -> FlatFitResult:
    """
    Fit one subject. Errors are captured in the result instead of raised.
    """
    config = config or ReferenceConfig()
    label = f"subject {sample.subject_id}"
    try:
        params, state = fit_flat(sample.values, config=config,
                                 distribution=distribution, label=label)
    except ConvergenceFailure as e:
        logger.warning(f"{label}: {e}")
        return FlatFitResult(sample.subject_id, sample.age, sample.n, None, False,
                             iterations=e.iterations, deviance=e.deviance,
                             error=f"ConvergenceFailure: {e}")
    except (CentileError, np.linalg.LinAlgError) as e:
        logger.warning(f"{label}: {type(e).__name__}: {e}")
        return FlatFitResult(sample.subject_id, sample.age, sample.n, None, False,
                             error=f"{type(e).__name__}: {e}")

    logger.debug(f"{label}: converged in {state.cycles} cycles, deviance {state.deviance:.4f}")
    return FlatFitResult(sample.subject_id, sample.age, sample.n, params, True,
                         iterations=state.cycles, deviance=state.deviance)


def fit_samples(samples: Sequence, config: Optional[ReferenceConfig] = None,
                distribution: Union[str, Distribution] = 'BCPE',
                n_jobs: Optional[int] = None) -> List[FlatFitResult]:
    """
    Fit every subject independently.

    Parameters:
    -----------
    samples : sequence of Sample
    config : ReferenceConfig or None
    distribution : str or Distribution
    n_jobs : int or None
        Number of parallel jobs (1 = sequential, -1 = all cores);
        defaults to config.n_jobs

    Returns:
    --------
    results : list of FlatFitResult
        Ordered by subject id, failures included
    """
    config = config or ReferenceConfig()
    n_jobs = config.n_jobs if n_jobs is None else n_jobs

    if n_jobs == 1:
        results = [fit_sample(s, config, distribution) for s in samples]
    else:
        results = Parallel(n_jobs=n_jobs)(
            delayed(fit_sample)(s, config, distribution) for s in samples
        )

    results = sorted(results, key=lambda r: subject_sort_key(r.subject_id))
    n_failed = sum(not r.ok for r in results)
    logger.info(f"Flat fits: {len(results) - n_failed} succeeded, {n_failed} failed")
    return results


def flat_fits_to_frame(results: Sequence[FlatFitResult]) -> pd.DataFrame:
    """One row per subject: id, age, n, mu, sigma, nu, tau, converged, iterations, error"""
    rows = []
    for r in results:
        params = r.params.as_dict() if r.params is not None else {}
        rows.append({
            'subject_id': r.subject_id,
            'age': r.age,
            'n': r.n,
            'mu': params.get('mu', np.nan),
            'sigma': params.get('sigma', np.nan),
            'nu': params.get('nu', np.nan),
            'tau': params.get('tau', np.nan),
            'converged': r.converged,
            'iterations': r.iterations,
            'deviance': r.deviance,
            'error': r.error,
        })
    return pd.DataFrame(rows)
