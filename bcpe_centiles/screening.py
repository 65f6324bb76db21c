"""
Effect-size screening of age dependence

Each per-subject parameter estimate is regressed on age with a P-spline
(smoothing chosen by Gaussian GAIC). The variance explained, R^2, decides
whether the parameter is modelled as a smooth function of age or as a
constant in the population fit. The R^2 cutoff is configuration
(`effect_size_threshold`), not a property of the method.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .config import ReferenceConfig
from .errors import InsufficientData
from .smoothing import PSplineTerm, gaussian_gaic

logger = logging.getLogger(__name__)

PARAM_NAMES = ('mu', 'sigma', 'nu', 'tau')
LINK_KINDS = ('constant', 'smooth')

# Screening happens on the same scale the population model uses
SCREEN_TRANSFORMS = {'mu': np.log, 'sigma': np.log, 'nu': np.asarray, 'tau': np.log}


@dataclass(frozen=True)
class LinkSpec:
    """Per-parameter choice of 'constant' or 'smooth' (function of age)"""
    mu: str = 'smooth'
    sigma: str = 'smooth'
    nu: str = 'constant'
    tau: str = 'constant'

    def __post_init__(self):
        for name in PARAM_NAMES:
            if getattr(self, name) not in LINK_KINDS:
                raise ValueError(f"{name} link must be one of {LINK_KINDS}, got {getattr(self, name)!r}")

    @classmethod
    def all_constant(cls):
        return cls('constant', 'constant', 'constant', 'constant')

    @classmethod
    def all_smooth(cls):
        return cls('smooth', 'smooth', 'smooth', 'smooth')

    @classmethod
    def from_dict(cls, links):
        return cls(**{name: links.get(name, 'constant') for name in PARAM_NAMES})

    def as_dict(self):
        return {name: getattr(self, name) for name in PARAM_NAMES}

    def __getitem__(self, name):
        return getattr(self, name)

    @property
    def smooth_params(self):
        return tuple(name for name in PARAM_NAMES if getattr(self, name) == 'smooth')


@dataclass(frozen=True)
class ScreeningResult:
    """Smooth regression of one parameter on age"""
    param: str
    r_squared: float
    p_value: float
    edf: float
    n: int
    link: str


@dataclass(frozen=True)
class ScreeningReport:
    results: Dict[str, ScreeningResult]
    threshold: float

    def __getitem__(self, name):
        return self.results[name]

    def link_spec(self):
        return LinkSpec.from_dict({name: r.link for name, r in self.results.items()})

    def to_frame(self):
        return pd.DataFrame([
            {'param': r.param, 'r_squared': r.r_squared, 'p_value': r.p_value,
             'edf': r.edf, 'n': r.n, 'link': r.link}
            for r in self.results.values()
        ])


def smooth_r_squared(age, values, gaic_penalty=3.84, n_segments=20, degree=3, order=2):
    """
    Fit a P-spline of values on age and report R^2 and an approximate F-test.

    Returns:
    --------
    r_squared : float
        1 - RSS / TSS
    p_value : float
        Upper tail of F((TSS - RSS)/(edf - 1), RSS/(n - edf))
    edf : float
        Effective degrees of freedom of the smooth (intercept included)
    """
    age = np.asarray(age, dtype=float)
    values = np.asarray(values, dtype=float)
    n = len(values)

    if np.ptp(values) == 0.0:
        return 0.0, 1.0, 1.0
    tss = float(np.sum((values - values.mean()) ** 2))

    term = PSplineTerm.from_data(age, n_segments=n_segments, degree=degree,
                                 order=order, criterion=gaussian_gaic)
    term = term.fit(age, values, np.ones(n), penalty=gaic_penalty)
    rss = float(np.sum((values - term(age)) ** 2))

    r_squared = max(0.0, 1.0 - rss / tss)
    df_model = term.edf - 1.0
    df_resid = n - term.edf
    if df_model <= 0 or df_resid <= 0 or rss == 0.0:
        p_value = np.nan
    else:
        f_stat = ((tss - rss) / df_model) / (rss / df_resid)
        p_value = float(stats.f.sf(f_stat, df_model, df_resid))
    return r_squared, p_value, float(term.edf)


def screen_parameters(ages, estimates: Dict[str, Sequence[float]],
                      config: Optional[ReferenceConfig] = None) -> ScreeningReport:
    """
    Screen each parameter for age dependence.

    Parameters:
    -----------
    ages : array-like
        One age per subject
    estimates : dict
        Parameter name -> per-subject estimates (aligned with ages)
    config : ReferenceConfig or None
        Supplies effect_size_threshold, gaic_penalty and spline settings

    Returns:
    --------
    report : ScreeningReport
        Link recommendation is 'smooth' iff R^2 >= effect_size_threshold
    """
    config = config or ReferenceConfig()
    ages = np.asarray(ages, dtype=float)
    if len(np.unique(ages)) < config.min_distinct_ages:
        raise InsufficientData(
            f"Screening needs at least {config.min_distinct_ages} distinct ages, "
            f"got {len(np.unique(ages))}"
        )

    results = {}
    for name, values in estimates.items():
        values = np.asarray(values, dtype=float)
        if len(values) != len(ages):
            raise ValueError(f"{name}: {len(values)} estimates for {len(ages)} ages")
        transformed = SCREEN_TRANSFORMS.get(name, np.asarray)(values)
        r2, p_value, edf = smooth_r_squared(
            ages, transformed, gaic_penalty=config.gaic_penalty,
            n_segments=config.n_segments, degree=config.spline_degree,
            order=config.penalty_order,
        )
        link = 'smooth' if r2 >= config.effect_size_threshold else 'constant'
        results[name] = ScreeningResult(name, r2, p_value, edf, len(values), link)
        logger.info(f"Screening {name}: R2={r2:.4f}, p={p_value:.3g}, edf={edf:.2f} -> {link}")

    return ScreeningReport(results=results, threshold=config.effect_size_threshold)


def screen_flat_fits(flat_results, config: Optional[ReferenceConfig] = None) -> ScreeningReport:
    """Screen the successful per-subject fits (failed subjects are skipped)"""
    ok = [r for r in flat_results if r.ok]
    skipped = len(flat_results) - len(ok)
    if skipped:
        logger.info(f"Screening skips {skipped} failed subject fits")
    ages = [r.age for r in ok]
    estimates = {name: [getattr(r.params, name) for r in ok] for name in PARAM_NAMES}
    return screen_parameters(ages, estimates, config)
