"""
Distribution families for reference-centile modelling

Provides the Box-Cox power-exponential (BCPE) family, following
Rigby & Stasinopoulos (2004), and its special cases:
- NO   : Normal (mu = mean, sigma = standard deviation)
- BCCG : Box-Cox Cole and Green, i.e. BCPE with tau = 2
- BCPE : mu (median), sigma (scale), nu (Box-Cox power / skew), tau (kurtosis)

BCPE quantiles are obtained by numerically inverting the cdf with a
bracketed Newton/bisection root-finder (`bracketed_newton`).
"""

import numpy as np
from dataclasses import dataclass
from typing import Union
from scipy import stats
from scipy.special import gammaln, gammainc, gammaincc

from .errors import InvalidParameter, NumericalNonConvergence

LOG2 = np.log(2.0)

# Below this |nu| the Box-Cox transform is taken as its log limit
NU_EPS = 1e-10


# ============================================================================
# Parameter container
# ============================================================================

@dataclass(frozen=True, eq=False)
class DistributionParams:
    """
    BCPE parameters: mu (median, > 0), sigma (scale, > 0),
    nu (skewness, real), tau (kurtosis, > 0).

    Fields are scalars for a flat fit, or equal-length arrays when a
    population model is evaluated over an age grid.
    """
    mu: Union[float, np.ndarray]
    sigma: Union[float, np.ndarray]
    nu: Union[float, np.ndarray] = 1.0
    tau: Union[float, np.ndarray] = 2.0

    def __post_init__(self):
        check_bcpe_params(self.mu, self.sigma, self.nu, self.tau)

    @classmethod
    def from_dict(cls, params):
        return cls(**{k: params[k] for k in ('mu', 'sigma', 'nu', 'tau') if k in params})

    def as_dict(self):
        return {'mu': self.mu, 'sigma': self.sigma, 'nu': self.nu, 'tau': self.tau}

    def as_tuple(self):
        return (self.mu, self.sigma, self.nu, self.tau)


def check_bcpe_params(mu, sigma, nu=1.0, tau=2.0):
    """Raise InvalidParameter unless mu, sigma, tau > 0 and all are finite"""
    for name, value in (('mu', mu), ('sigma', sigma), ('tau', tau)):
        value = np.asarray(value, dtype=float)
        if not np.all(np.isfinite(value)) or np.any(value <= 0):
            raise InvalidParameter(f"{name} must be finite and > 0, got {_describe(value)}")
    nu = np.asarray(nu, dtype=float)
    if not np.all(np.isfinite(nu)):
        raise InvalidParameter(f"nu must be finite, got {_describe(nu)}")


def _describe(value):
    if value.size == 1:
        return f"{float(value):g}"
    return f"array with min {np.nanmin(value):g}"


# ============================================================================
# Root finding
# ============================================================================

def bracketed_newton(func, dfunc, target, x0, step=1.0, tol=1e-8, max_iter=200,
                     max_expand=64):
    """
    Vectorized solve of func(x) = target for increasing func.

    A bracket [lo, hi] is first grown geometrically around x0, then each
    iteration takes a Newton step from the current point and falls back to
    bisection whenever that step leaves the bracket. An element has converged
    once |func(x) - target| <= tol or the bracket is narrower than tol.

    Parameters:
    -----------
    func : callable
        Increasing function of x, evaluated elementwise
    dfunc : callable
        Derivative of func
    target : array-like
        Values to hit
    x0 : array-like
        Starting points (broadcast against target)
    step : float
        Initial half-width of the bracket
    tol : float
        Convergence tolerance
    max_iter : int
        Maximum Newton/bisection iterations

    Returns:
    --------
    x : array
        Roots, same shape as the broadcast inputs

    Raises:
    -------
    NumericalNonConvergence
        If the bracket cannot be formed or the tolerance is not met
    """
    target, x0 = np.broadcast_arrays(np.asarray(target, dtype=float),
                                     np.asarray(x0, dtype=float))
    target = target.copy()
    x = x0.astype(float).copy()

    lo = x - step
    hi = x + step
    width = np.full(x.shape, float(step))
    for _ in range(max_expand):
        below = func(lo) > target
        above = func(hi) < target
        if not (np.any(below) or np.any(above)):
            break
        width = width * 2.0
        lo = np.where(below, lo - width, lo)
        hi = np.where(above, hi + width, hi)
    if np.any(func(lo) > target) or np.any(func(hi) < target):
        raise NumericalNonConvergence(
            f"Could not bracket root after {max_expand} expansions"
        )

    x = np.clip(x, lo, hi)
    done = np.zeros(x.shape, dtype=bool)
    for _ in range(max_iter):
        resid = func(x) - target
        done = done | (np.abs(resid) <= tol) | ((hi - lo) <= tol)
        if np.all(done):
            return x

        active = ~done
        lo = np.where(active & (resid < 0), x, lo)
        hi = np.where(active & (resid > 0), x, hi)

        with np.errstate(divide='ignore', invalid='ignore'):
            newton = x - resid / dfunc(x)
        inside = np.isfinite(newton) & (newton > lo) & (newton < hi)
        candidate = np.where(inside, newton, 0.5 * (lo + hi))
        x = np.where(active, candidate, x)

    raise NumericalNonConvergence(
        f"Root-finder did not reach tol={tol:g} within {max_iter} iterations "
        f"({int(np.sum(~done))} of {done.size} unresolved)"
    )


# ============================================================================
# Distribution Classes
# ============================================================================

class Distribution:
    """Base class for reference-centile distributions"""

    name = ''
    param_names = ()
    # Link function per parameter: 'log' or 'identity'
    links = {}

    def logpdf(self, y, **params):
        """Log probability density"""
        raise NotImplementedError

    def pdf(self, y, **params):
        """Probability density function"""
        return np.exp(self.logpdf(y, **params))

    def cdf(self, y, **params):
        """Cumulative distribution function"""
        raise NotImplementedError

    def quantile(self, p, **params):
        """Quantile function (inverse CDF)"""
        raise NotImplementedError

    def loglik(self, y, weights=None, **params):
        """(Weighted) log-likelihood"""
        ll = self.logpdf(y, **params)
        if weights is None:
            return float(np.sum(ll))
        return float(np.sum(np.asarray(weights) * ll))

    def rvs(self, size, random_state=None, **params):
        """Random draws by inversion of uniforms"""
        rng = np.random.default_rng(random_state)
        u = rng.uniform(size=size)
        return self.quantile(u, **params)

    def initialize_params(self, y, weights=None):
        """Initialize parameters from data"""
        raise NotImplementedError

    def check_support(self, y):
        pass

    def check_params(self, **params):
        pass

    # Link functions

    def link(self, name, theta):
        if self.links[name] == 'log':
            return np.log(theta)
        return np.asarray(theta, dtype=float)

    def inverse_link(self, name, eta):
        if self.links[name] == 'log':
            return np.exp(eta)
        return np.asarray(eta, dtype=float)


def _check_probabilities(p):
    p = np.asarray(p, dtype=float)
    if np.any(~np.isfinite(p)) or np.any(p <= 0) or np.any(p >= 1):
        raise InvalidParameter("probabilities must lie strictly inside (0, 1)")
    return p


def _weighted_moments(y, weights):
    y = np.asarray(y, dtype=float)
    if weights is None:
        weights = np.ones_like(y)
    weights = np.asarray(weights, dtype=float)
    mean = np.average(y, weights=weights)
    sd = np.sqrt(np.average((y - mean) ** 2, weights=weights))
    return mean, sd


class NormalDistribution(Distribution):
    """
    Normal (Gaussian) distribution
    Parameters: mu (mean), sigma (standard deviation)
    """

    name = 'NO'
    param_names = ('mu', 'sigma')
    links = {'mu': 'identity', 'sigma': 'log'}

    def check_params(self, mu, sigma):
        sigma = np.asarray(sigma, dtype=float)
        if not np.all(np.isfinite(sigma)) or np.any(sigma <= 0):
            raise InvalidParameter("sigma must be finite and > 0")

    def logpdf(self, y, mu, sigma):
        self.check_params(mu, sigma)
        return stats.norm.logpdf(y, loc=mu, scale=sigma)

    def cdf(self, y, mu, sigma):
        self.check_params(mu, sigma)
        return stats.norm.cdf(y, loc=mu, scale=sigma)

    def quantile(self, p, mu, sigma):
        self.check_params(mu, sigma)
        return stats.norm.ppf(_check_probabilities(p), loc=mu, scale=sigma)

    def initialize_params(self, y, weights=None):
        mean, sd = _weighted_moments(y, weights)
        return {'mu': mean, 'sigma': max(sd, 1e-8)}


class BCPEDistribution(Distribution):
    """
    Box-Cox power exponential distribution
    Parameters: mu (median), sigma (scale, approx. coefficient of variation),
    nu (Box-Cox power, skewness), tau (power-exponential kurtosis)

    If nu != 0: z = ((y/mu)^nu - 1) / (nu * sigma)
    If nu == 0: z = log(y/mu) / sigma
    and z follows a power-exponential distribution truncated to the range
    reachable from y > 0. tau = 2 is the normal kernel, tau < 2 heavier tails.
    """

    name = 'BCPE'
    param_names = ('mu', 'sigma', 'nu', 'tau')
    links = {'mu': 'log', 'sigma': 'log', 'nu': 'identity', 'tau': 'log'}

    def __init__(self, quantile_tol=1e-8, quantile_max_iter=200):
        self.quantile_tol = quantile_tol
        self.quantile_max_iter = quantile_max_iter

    def check_support(self, y):
        y = np.asarray(y, dtype=float)
        if np.any(~np.isfinite(y)) or np.any(y <= 0):
            raise InvalidParameter(f"{self.name} support is the positive reals; got non-positive values")

    def check_params(self, mu, sigma, nu, tau):
        check_bcpe_params(mu, sigma, nu, tau)

    # Power-exponential kernel

    @staticmethod
    def _log_c(tau):
        return 0.5 * (-(2.0 / tau) * LOG2 + gammaln(1.0 / tau) - gammaln(3.0 / tau))

    def _pe_logpdf(self, t, tau):
        log_c = self._log_c(tau)
        return (np.log(tau) - log_c - 0.5 * np.abs(t / np.exp(log_c)) ** tau
                - (1.0 + 1.0 / tau) * LOG2 - gammaln(1.0 / tau))

    def _pe_cdf(self, t, tau):
        s = 0.5 * np.abs(t / np.exp(self._log_c(tau))) ** tau
        return 0.5 + 0.5 * np.sign(t) * gammainc(1.0 / tau, s)

    def _pe_upper_tail(self, t, tau):
        # P(T > t) for t >= 0
        s = 0.5 * np.abs(t / np.exp(self._log_c(tau))) ** tau
        return 0.5 * gammaincc(1.0 / tau, s)

    # Box-Cox

    def _box_cox_z(self, y, mu, sigma, nu):
        """Box-Cox transform to the standardized scale"""
        log_ratio = np.log(y) - np.log(mu)
        nu = np.asarray(nu, dtype=float)
        near_zero = np.abs(nu) < NU_EPS
        nu_safe = np.where(near_zero, 1.0, nu)
        # expm1 keeps the transform continuous as nu -> 0
        return np.where(near_zero,
                        log_ratio / sigma,
                        np.expm1(nu_safe * log_ratio) / (nu_safe * sigma))

    def _truncation(self, sigma, nu, tau):
        """Mass F_T(1 / (sigma |nu|)) of the kernel reachable from y > 0, and its complement"""
        nu = np.asarray(nu, dtype=float)
        near_zero = np.abs(nu) < NU_EPS
        with np.errstate(divide='ignore'):
            bound = np.where(near_zero, np.inf, 1.0 / (sigma * np.abs(np.where(near_zero, 1.0, nu))))
        outside = self._pe_upper_tail(bound, tau)
        return 1.0 - outside, outside

    def logpdf(self, y, mu, sigma, nu, tau):
        """Log-density of BCPE"""
        self.check_params(mu, sigma, nu, tau)
        self.check_support(y)
        y = np.asarray(y, dtype=float)
        z = self._box_cox_z(y, mu, sigma, nu)
        mass, _ = self._truncation(sigma, nu, tau)
        return (nu * (np.log(y) - np.log(mu)) - np.log(sigma) - np.log(y)
                + self._pe_logpdf(z, tau) - np.log(mass))

    def _cdf_unchecked(self, y, mu, sigma, nu, tau):
        z = self._box_cox_z(y, mu, sigma, nu)
        mass, outside = self._truncation(sigma, nu, tau)
        # For nu > 0 the lower tail below z = -1/(sigma nu) is unreachable
        lower = np.where(np.asarray(nu) > NU_EPS, outside, 0.0)
        return np.clip((self._pe_cdf(z, tau) - lower) / mass, 0.0, 1.0)

    def cdf(self, y, mu, sigma, nu, tau):
        """CDF of BCPE"""
        self.check_params(mu, sigma, nu, tau)
        self.check_support(y)
        return self._cdf_unchecked(np.asarray(y, dtype=float), mu, sigma, nu, tau)

    def quantile(self, p, mu, sigma, nu, tau, tol=None, max_iter=None):
        """
        Quantile function, solving cdf(y) = p on the log(y) scale.

        Parameters:
        -----------
        p : array-like
            Probabilities in (0, 1); broadcast against the parameters
        tol, max_iter : optional
            Override the root-finder tolerance and iteration cap

        Raises:
        -------
        NumericalNonConvergence
            If the root-finder does not converge
        """
        self.check_params(mu, sigma, nu, tau)
        p = _check_probabilities(p)
        tol = self.quantile_tol if tol is None else tol
        max_iter = self.quantile_max_iter if max_iter is None else max_iter

        p, mu, sigma, nu, tau = np.broadcast_arrays(
            p, *(np.asarray(v, dtype=float) for v in (mu, sigma, nu, tau))
        )

        def cdf_log(u):
            return self._cdf_unchecked(np.exp(u), mu, sigma, nu, tau)

        def dcdf_log(u):
            y = np.exp(u)
            z = self._box_cox_z(y, mu, sigma, nu)
            mass, _ = self._truncation(sigma, nu, tau)
            # f(y) * dy/du = f(y) * y
            return np.exp(nu * (u - np.log(mu)) - np.log(sigma)
                          + self._pe_logpdf(z, tau) - np.log(mass))

        with np.errstate(over='ignore', divide='ignore', invalid='ignore'):
            u = bracketed_newton(cdf_log, dcdf_log, p, np.log(mu),
                                 step=np.maximum(np.max(sigma), 0.1),
                                 tol=tol, max_iter=max_iter)
        return np.exp(u)

    def initialize_params(self, y, weights=None):
        """Moment-based start: mean, coefficient of variation, nu = 1, tau = 2"""
        mean, sd = _weighted_moments(y, weights)
        return {'mu': mean, 'sigma': max(sd / mean, 1e-4), 'nu': 1.0, 'tau': 2.0}


class BCCGDistribution(BCPEDistribution):
    """
    Box-Cox Cole and Green distribution
    Parameters: mu (median), sigma (coefficient of variation), nu (skewness/Box-Cox power)

    BCPE with a normal kernel (tau = 2).
    """

    name = 'BCCG'
    param_names = ('mu', 'sigma', 'nu')
    links = {'mu': 'log', 'sigma': 'log', 'nu': 'identity'}

    def check_params(self, mu, sigma, nu, tau=2.0):
        check_bcpe_params(mu, sigma, nu, tau)

    def logpdf(self, y, mu, sigma, nu):
        return super().logpdf(y, mu, sigma, nu, 2.0)

    def cdf(self, y, mu, sigma, nu):
        return super().cdf(y, mu, sigma, nu, 2.0)

    def quantile(self, p, mu, sigma, nu, tol=None, max_iter=None):
        return super().quantile(p, mu, sigma, nu, 2.0, tol=tol, max_iter=max_iter)

    def initialize_params(self, y, weights=None):
        params = super().initialize_params(y, weights)
        del params['tau']
        return params


def get_distribution(distribution: Union[str, Distribution] = 'BCPE', **kwargs) -> Distribution:
    """Resolve a family name ('NO', 'BCCG', 'BCPE') or pass an instance through"""
    if isinstance(distribution, Distribution):
        return distribution
    if distribution == 'NO':
        return NormalDistribution()
    elif distribution == 'BCCG':
        return BCCGDistribution(**kwargs)
    elif distribution == 'BCPE':
        return BCPEDistribution(**kwargs)
    raise ValueError(f"Unknown distribution: {distribution}")
