"""
Error kinds raised by the centile engine
"""


class CentileError(Exception):
    """Base class for all errors raised by bcpe_centiles"""


class InvalidParameter(CentileError, ValueError):
    """Non-positive mu/sigma/tau, or a value outside the positive support"""


class NumericalNonConvergence(CentileError, ArithmeticError):
    """The quantile root-finder did not meet its tolerance within the cap"""


class ConvergenceFailure(CentileError, RuntimeError):
    """
    A fitter exceeded its cycle cap (or time budget) without meeting the
    deviance-change tolerance.

    Attributes:
    -----------
    iterations : int
        Outer cycles completed
    deviance : float
        Last (penalized) deviance reached
    subject_id : hashable or None
        Set for per-subject failures
    model : FittedModel or None
        Partial population model, set for population failures
    """

    def __init__(self, message, iterations=0, deviance=float('nan'),
                 subject_id=None, model=None):
        super().__init__(message)
        self.iterations = iterations
        self.deviance = deviance
        self.subject_id = subject_id
        self.model = model


class InsufficientData(CentileError, ValueError):
    """Too few values in a sample, or too few distinct ages for a smooth fit"""


class ConfigError(CentileError, ValueError):
    """Configuration validation error"""
