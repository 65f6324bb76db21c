"""
Age-conditioned reference centiles from Box-Cox power-exponential models

Fits BCPE distributions per subject, screens the age dependence of each
parameter, fits a GAMLSS-style population model with P-spline age effects
and derives centile curves by numerical inversion of the cdf.
"""

from .centiles import (CentileCurve, centiles_to_frame, predict_centiles,
                       residual_summary, z_scores)
from .config import (DEFAULT_CENTILE_LEVELS, ReferenceConfig, load_config,
                     validate_config)
from .data import (Observation, PooledData, Sample, pool_samples,
                   samples_from_frame, samples_from_observations)
from .distributions import (BCCGDistribution, BCPEDistribution,
                            DistributionParams, NormalDistribution,
                            get_distribution)
from .errors import (CentileError, ConfigError, ConvergenceFailure,
                     InsufficientData, InvalidParameter,
                     NumericalNonConvergence)
from .flat_fit import FlatFitResult, fit_flat, fit_sample, fit_samples, flat_fits_to_frame
from .pipeline import ReferenceResult, build_reference
from .population import FitDiagnostics, FittedModel, fit_population
from .screening import LinkSpec, ScreeningReport, ScreeningResult, screen_flat_fits, screen_parameters

__version__ = '0.1.0'
