"""
End-to-end reference-centile workflow

1. Flat BCPE fit per subject (parallel, partial failures tolerated)
2. Screen each parameter's age dependence on the successful fits
3. Population fit with the screened LinkSpec, 1/n_i subject weights
4. Centile curves over an age grid
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from .centiles import CentileCurve, centiles_to_frame, predict_centiles
from .config import ReferenceConfig, validate_config
from .data import Sample, pool_samples, samples_from_frame
from .errors import InsufficientData
from .flat_fit import FlatFitResult, fit_samples, flat_fits_to_frame
from .population import FittedModel, fit_population
from .screening import LinkSpec, ScreeningReport, screen_flat_fits

logger = logging.getLogger(__name__)


@dataclass
class ReferenceResult:
    """All intermediate and final outputs of one workflow run"""
    flat_fits: List[FlatFitResult]
    screening: ScreeningReport
    link_spec: LinkSpec
    model: FittedModel
    curves: List[CentileCurve]

    @property
    def excluded_subjects(self):
        return [r.subject_id for r in self.flat_fits if not r.ok]

    def flat_fits_frame(self):
        return flat_fits_to_frame(self.flat_fits)

    def centiles_frame(self):
        return centiles_to_frame(self.curves)

    def summary(self):
        return {
            'n_subjects': len(self.flat_fits),
            'n_excluded': len(self.excluded_subjects),
            'links': self.link_spec.as_dict(),
            'r_squared': {k: r.r_squared for k, r in self.screening.results.items()},
            **self.model.diagnostics.as_dict(),
            'curve_warnings': sum(len(c.warnings) for c in self.curves),
        }


def build_reference(data: Union[pd.DataFrame, List[Sample]],
                    config: Optional[ReferenceConfig] = None,
                    link_spec: Optional[LinkSpec] = None,
                    ages=None, distribution='BCPE',
                    subject_col='subject_id', age_col='age',
                    value_col='value') -> ReferenceResult:
    """
    Run the full workflow

    Parameters:
    -----------
    data : pd.DataFrame or list of Sample
        Long-format measurements or pre-built samples
    config : ReferenceConfig or None
    link_spec : LinkSpec or None
        Skip screening's recommendation and force these links
    ages : array-like or None
        Prediction grid (default: config.age_grid_points across the
        training age range)
    distribution : str
        'BCPE' (default) or 'BCCG'

    Returns:
    --------
    result : ReferenceResult

    Raises:
    -------
    InsufficientData
        If no subject could be fitted
    ConvergenceFailure
        If the population fit does not converge
    """
    config = config or ReferenceConfig()
    validate_config(config)

    if isinstance(data, pd.DataFrame):
        samples = samples_from_frame(data, subject_col=subject_col, age_col=age_col,
                                     value_col=value_col)
    else:
        samples = list(data)
    logger.info(f"Building reference from {len(samples)} subjects")

    flat_fits = fit_samples(samples, config, distribution=distribution)
    ok_ids = {r.subject_id for r in flat_fits if r.ok}
    for r in flat_fits:
        if not r.ok:
            logger.warning(f"Excluding subject {r.subject_id}: {r.error}")
    if not ok_ids:
        raise InsufficientData("No subject could be fitted")

    screening = screen_flat_fits(flat_fits, config)
    if link_spec is None:
        link_spec = screening.link_spec()
    logger.info(f"Link specification: {link_spec.as_dict()}")

    kept = [s for s in samples if s.subject_id in ok_ids]
    pooled = pool_samples(kept, weighting=config.weighting)
    model = fit_population(pooled, link_spec, config, distribution=distribution)

    if ages is None:
        ages = np.linspace(model.age_range[0], model.age_range[1], config.age_grid_points)
    curves = predict_centiles(model, ages, config.centile_levels)

    return ReferenceResult(flat_fits=flat_fits, screening=screening,
                           link_spec=link_spec, model=model, curves=curves)
