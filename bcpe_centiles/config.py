"""
Configuration for the reference-centile workflow.

All thresholds the workflow depends on live here rather than in the fitting
code: the effect-size cutoff used to decide age dependence, the GAIC penalty,
convergence tolerances and iteration caps, and the default centile levels.
Configurations can be built directly or loaded from YAML via OmegaConf.
"""

import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional, Union

import yaml
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .errors import ConfigError

logger = logging.getLogger(__name__)


# Phi(-2), Phi(-1), Phi(0), Phi(1), Phi(2)
DEFAULT_CENTILE_LEVELS = [0.02275, 0.15866, 0.50, 0.84134, 0.97725]

WEIGHTING_SCHEMES = ('inverse_n', 'equal')


@dataclass
class ReferenceConfig:
    """Settings shared by the flat fitter, screener, population fitter and predictor"""

    # Screening
    effect_size_threshold: float = 0.04

    # Smoothing selection: GAIC = deviance + gaic_penalty * edf
    gaic_penalty: float = 3.84
    n_segments: int = 20
    spline_degree: int = 3
    penalty_order: int = 2

    # Population fit
    tolerance: float = 1e-3
    max_outer_cycles: int = 20
    max_inner_iter: int = 100
    weighting: str = 'inverse_n'
    min_distinct_ages: int = 5
    time_budget: Optional[float] = None

    # Per-subject fit
    flat_tolerance: float = 1e-5
    flat_max_cycles: int = 200
    min_sample_size: int = 10
    n_jobs: int = 1

    # Quantile inversion
    quantile_tol: float = 1e-8
    quantile_max_iter: int = 200

    # Centile prediction
    centile_levels: List[float] = field(default_factory=lambda: list(DEFAULT_CENTILE_LEVELS))
    age_grid_points: int = 100

    def to_dict(self):
        return asdict(self)


def validate_config(cfg: ReferenceConfig) -> None:
    """
    Check ranges of every field.

    Raises:
    -------
    ConfigError
        On the first invalid field
    """
    if not 0.0 <= cfg.effect_size_threshold <= 1.0:
        raise ConfigError(f"effect_size_threshold must be in [0, 1], got {cfg.effect_size_threshold}")
    if cfg.gaic_penalty < 0:
        raise ConfigError(f"gaic_penalty must be >= 0, got {cfg.gaic_penalty}")
    for name in ('tolerance', 'flat_tolerance', 'quantile_tol'):
        if getattr(cfg, name) <= 0:
            raise ConfigError(f"{name} must be > 0, got {getattr(cfg, name)}")
    for name in ('max_outer_cycles', 'max_inner_iter', 'flat_max_cycles',
                 'quantile_max_iter', 'min_sample_size', 'age_grid_points'):
        if getattr(cfg, name) < 1:
            raise ConfigError(f"{name} must be >= 1, got {getattr(cfg, name)}")
    if cfg.spline_degree < 1:
        raise ConfigError(f"spline_degree must be >= 1, got {cfg.spline_degree}")
    if cfg.penalty_order < 1 or cfg.penalty_order > cfg.spline_degree + 1:
        raise ConfigError(f"penalty_order must be in [1, spline_degree + 1], got {cfg.penalty_order}")
    if cfg.n_segments < 1:
        raise ConfigError(f"n_segments must be >= 1, got {cfg.n_segments}")
    if cfg.min_distinct_ages < 2:
        raise ConfigError(f"min_distinct_ages must be >= 2, got {cfg.min_distinct_ages}")
    if cfg.weighting not in WEIGHTING_SCHEMES:
        raise ConfigError(f"weighting must be one of {WEIGHTING_SCHEMES}, got {cfg.weighting!r}")
    if cfg.time_budget is not None and cfg.time_budget <= 0:
        raise ConfigError(f"time_budget must be > 0 or None, got {cfg.time_budget}")
    if cfg.n_jobs == 0:
        raise ConfigError("n_jobs must be non-zero")

    levels = list(cfg.centile_levels)
    if not levels:
        raise ConfigError("centile_levels must not be empty")
    if any(not 0.0 < p < 1.0 for p in levels):
        raise ConfigError(f"centile_levels must lie in (0, 1), got {levels}")
    if sorted(levels) != levels or len(set(levels)) != len(levels):
        raise ConfigError(f"centile_levels must be strictly increasing, got {levels}")


def load_config(
    config_path: Union[str, Path],
    overrides: Optional[List[str]] = None,
) -> ReferenceConfig:
    """Load a ReferenceConfig from YAML with optional CLI-style overrides.

    Keys absent from the file keep their dataclass defaults.

    Args:
        config_path: Path to YAML configuration file.
        overrides: List of overrides in "key=value" format.
            Example: ["gaic_penalty=2", "max_outer_cycles=50"]

    Returns:
        Validated ReferenceConfig.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ConfigError: If the file cannot be parsed, has unknown keys,
            or holds out-of-range values.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        schema = OmegaConf.structured(ReferenceConfig)
        cfg = OmegaConf.merge(schema, OmegaConf.load(config_path))
        if overrides:
            cfg = OmegaConf.merge(cfg, OmegaConf.from_dotlist(overrides))
            logger.info(f"Applied overrides: {overrides}")
        result = OmegaConf.to_object(cfg)
    except (OmegaConfBaseException, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    logger.info(f"Loaded config from: {config_path}")
    validate_config(result)
    return result
