"""
Centile curves from a fitted population model

For each target age the model's parameters are evaluated and the cdf is
inverted at each requested probability level. Curves at a fixed age must be
non-decreasing in level; crossings are attached to the curve as warnings.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .config import DEFAULT_CENTILE_LEVELS
from .errors import ConvergenceFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CentileCurve:
    """Thresholds at one probability level over an ordered age grid"""
    level: float
    ages: np.ndarray
    values: np.ndarray
    warnings: Tuple[str, ...] = ()

    @property
    def z(self):
        """Standard-normal equivalent of the level"""
        return float(stats.norm.ppf(self.level))

    def to_frame(self):
        return pd.DataFrame({'age': self.ages, 'threshold': self.values})


def _require_converged(model):
    if not model.converged:
        raise ConvergenceFailure(
            "Centiles requested from a population model that did not converge",
            iterations=model.diagnostics.iterations,
            deviance=model.diagnostics.penalized_deviance,
            model=model,
        )


def predict_centiles(model, ages, levels: Optional[Sequence[float]] = None):
    """
    Predict centile curves at specified ages

    Parameters:
    -----------
    model : FittedModel
        Converged population model
    ages : array-like
        Ages at which to predict (order is preserved)
    levels : sequence of float or None
        Probability levels in (0, 1); default Phi(-2), ..., Phi(2)

    Returns:
    --------
    curves : list of CentileCurve
        One per level, in the order given

    Raises:
    -------
    ConvergenceFailure
        If the model did not converge
    NumericalNonConvergence
        If a quantile cannot be resolved
    """
    _require_converged(model)
    levels = np.asarray(DEFAULT_CENTILE_LEVELS if levels is None else levels, dtype=float)
    ages = np.atleast_1d(np.asarray(ages, dtype=float))

    params = model.predict(ages)
    # (k levels) x (n ages)
    thresholds = model.distribution.quantile(levels[:, None], **{
        name: values[None, :] for name, values in params.items()
    })
    thresholds = np.broadcast_to(thresholds, (len(levels), len(ages)))

    messages = _crossing_warnings(levels, ages, thresholds)
    curves = []
    for i, level in enumerate(levels):
        curve_warnings = tuple(messages.get(i, ()))
        for message in curve_warnings:
            warnings.warn(message, RuntimeWarning)
        curves.append(CentileCurve(level=float(level), ages=ages.copy(),
                                   values=np.array(thresholds[i]),
                                   warnings=curve_warnings))
    return curves


def _crossing_warnings(levels, ages, thresholds):
    """
    Map curve index -> messages for ages where that curve falls below the
    curve of the next lower level.
    """
    order = np.argsort(levels)
    messages = {}
    for lower, upper in zip(order[:-1], order[1:]):
        if levels[upper] == levels[lower]:
            continue
        crossed = thresholds[upper] < thresholds[lower]
        if np.any(crossed):
            bad_ages = ages[crossed]
            messages.setdefault(upper, []).append(
                f"Centile {levels[upper]:.5f} falls below centile {levels[lower]:.5f} "
                f"at {len(bad_ages)} age(s), first at age {bad_ages[0]:g}"
            )
    return messages


def centiles_to_frame(curves: Sequence[CentileCurve]) -> pd.DataFrame:
    """
    Row-per-age table: age, threshold_1 .. threshold_k (in curve order).
    The levels are kept in frame.attrs['levels'].
    """
    if not curves:
        raise ValueError("No centile curves to tabulate")
    ages = curves[0].ages
    for curve in curves[1:]:
        if len(curve.ages) != len(ages) or not np.allclose(curve.ages, ages):
            raise ValueError("Centile curves must share one age grid")

    frame = pd.DataFrame({'age': ages})
    for i, curve in enumerate(curves, start=1):
        frame[f'threshold_{i}'] = curve.values
    frame.attrs['levels'] = [curve.level for curve in curves]
    return frame


def z_scores(model, ages, values, eps=1e-6):
    """
    Normalized quantile residuals Phi^-1(F(y | age))

    Parameters:
    -----------
    model : FittedModel
    ages, values : array-like
        Observations to score
    eps : float
        cdf values are clipped to [eps, 1 - eps]
    """
    ages = np.atleast_1d(np.asarray(ages, dtype=float))
    values = np.atleast_1d(np.asarray(values, dtype=float))
    params = model.predict(ages)
    cdf_vals = model.distribution.cdf(values, **params)
    return stats.norm.ppf(np.clip(cdf_vals, eps, 1 - eps))


def residual_summary(z):
    """
    Moments of normalized residuals and a Shapiro-Wilk test; for a well
    calibrated model mean ~ 0, std ~ 1, skewness ~ 0, excess kurtosis ~ 0.
    """
    z = np.asarray(z, dtype=float)
    z = z[np.isfinite(z)]
    if len(z) > 3:
        # Limit for large n
        shapiro_stat, shapiro_p = stats.shapiro(z[:5000])
    else:
        shapiro_stat, shapiro_p = np.nan, np.nan

    return {
        'mean_residuals': float(np.mean(z)),
        'std_residuals': float(np.std(z)),
        'skewness': float(stats.skew(z)),
        'kurtosis': float(stats.kurtosis(z)),
        'shapiro_statistic': float(shapiro_stat),
        'shapiro_pvalue': float(shapiro_p),
        'n_observations': int(len(z)),
    }
