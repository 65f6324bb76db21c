"""
Smoothing terms for distribution-parameter regression

Each distribution parameter is modelled on its link scale by one term:
- ConstantTerm : a single intercept
- PSplineTerm  : a penalized B-spline (P-spline, Eilers & Marx 1996) of age

Smoothing parameters are chosen by minimizing a generalized information
criterion, GAIC = deviance + k * edf, over log10(lambda).
"""

import numpy as np
from scipy import interpolate, optimize

# Search range for log10(lambda)
LOG_LAMBDA_BOUNDS = (-8.0, 10.0)

# Small ridge added to every penalized system for numerical stability
RIDGE = 1e-8


# ============================================================================
# Basis and penalty
# ============================================================================

def pspline_knots(x_min, x_max, n_segments=20, degree=3):
    """
    Equally spaced knots extending `degree` segments beyond [x_min, x_max]

    Returns:
    --------
    knots : array
        n_segments + 2 * degree + 1 knot positions
    """
    if x_max <= x_min:
        # Degenerate range: widen so the basis is still defined
        x_min, x_max = x_min - 0.5, x_max + 0.5
    dx = (x_max - x_min) / n_segments
    return np.linspace(x_min - degree * dx, x_max + degree * dx,
                       n_segments + 2 * degree + 1)


def difference_penalty(n_coef, order=2):
    """
    Penalty matrix P = D^T D, where D is the order-th difference operator
    on a coefficient vector of length n_coef.

    For order 2: (D beta)[i] = beta[i] - 2*beta[i+1] + beta[i+2]
    """
    if n_coef <= order:
        raise ValueError(f"n_coef must exceed penalty order {order}, got {n_coef}")
    D = np.diff(np.eye(n_coef), n=order, axis=0)
    return D.T @ D


def penalized_wls(B, z, w, lam, P):
    """
    Solve min_beta sum w (z - B beta)^2 + lam * beta^T P beta

    Parameters:
    -----------
    B : array (n, K)
        Design matrix
    z : array (n,)
        Working response
    w : array (n,)
        Working weights
    lam : float
        Smoothing parameter (>= 0)
    P : array (K, K)
        Penalty matrix

    Returns:
    --------
    coef : array (K,)
    fitted : array (n,)
    edf : float
        trace of the hat matrix, (B'WB + lam P)^-1 B'WB
    """
    BtW = B.T * w
    BtWB = BtW @ B
    A = BtWB + lam * P + RIDGE * np.eye(B.shape[1])
    coef = np.linalg.solve(A, BtW @ z)
    edf = float(np.trace(np.linalg.solve(A, BtWB)))
    return coef, B @ coef, edf


def working_gaic(z, w, fitted, edf, penalty):
    """GAIC on the working scale: weighted RSS approximates deviance"""
    return float(np.sum(w * (z - fitted) ** 2) + penalty * edf)


def gaussian_gaic(z, w, fitted, edf, penalty):
    """GAIC for a Gaussian response with unknown variance"""
    n = np.sum(w)
    rss = max(float(np.sum(w * (z - fitted) ** 2)), np.finfo(float).tiny)
    return float(n * np.log(rss / n) + penalty * edf)


def select_lambda(B, z, w, P, penalty, criterion=working_gaic, bounds=LOG_LAMBDA_BOUNDS):
    """
    Choose lambda minimizing criterion(z, w, fitted, edf, penalty)

    Returns:
    --------
    lam : float
    coef, fitted : arrays
    edf : float
    """
    def objective(log_lam):
        _, fitted, edf = penalized_wls(B, z, w, 10.0 ** log_lam, P)
        return criterion(z, w, fitted, edf, penalty)

    result = optimize.minimize_scalar(objective, bounds=bounds, method='bounded',
                                      options={'xatol': 1e-3})
    lam = 10.0 ** result.x
    coef, fitted, edf = penalized_wls(B, z, w, lam, P)
    return lam, coef, fitted, edf


# ============================================================================
# Terms
# ============================================================================

class ConstantTerm:
    """Intercept-only term"""

    kind = 'constant'

    def __init__(self, value=0.0):
        self.value = float(value)
        self.edf = 1.0
        self.lam = 0.0

    def fit(self, x, z, w, penalty=None, lam=None):
        """Weighted mean of the working response"""
        return ConstantTerm(np.sum(w * z) / np.sum(w))

    def blend(self, other, fraction):
        """Move `fraction` of the way from other towards self"""
        return ConstantTerm(other.value + fraction * (self.value - other.value))

    def with_lambda(self, lam):
        return self

    def clip(self, lower, upper):
        return ConstantTerm(np.clip(self.value, lower, upper))

    @property
    def penalty_value(self):
        return 0.0

    def __call__(self, x):
        return np.full(np.shape(x), self.value, dtype=float)

    def __repr__(self):
        return f"ConstantTerm({self.value:.6g})"


class PSplineTerm:
    """
    Penalized B-spline of age

    Evaluable at any age: inside the training range by the spline itself,
    outside it by linear extrapolation from the boundary value and slope.
    """

    kind = 'smooth'

    def __init__(self, x_min, x_max, n_segments=20, degree=3, order=2,
                 coef=None, lam=None, edf=None, criterion=working_gaic):
        self.x_min = float(x_min)
        self.x_max = float(x_max)
        self.n_segments = n_segments
        self.degree = degree
        self.order = order
        self.criterion = criterion
        self.knots = pspline_knots(self.x_min, self.x_max, n_segments, degree)
        self.n_coef = len(self.knots) - degree - 1
        self.P = difference_penalty(self.n_coef, order)
        self.coef = np.zeros(self.n_coef) if coef is None else np.asarray(coef, dtype=float)
        self.lam = lam
        self.edf = edf
        self._basis = interpolate.BSpline(self.knots, np.eye(self.n_coef), degree)
        self._slope = self._basis.derivative()

    @classmethod
    def from_data(cls, x, **kwargs):
        x = np.asarray(x, dtype=float)
        return cls(np.min(x), np.max(x), **kwargs)

    def _like(self, coef, lam, edf):
        return PSplineTerm(self.x_min, self.x_max, self.n_segments, self.degree,
                           self.order, coef=coef, lam=lam, edf=edf,
                           criterion=self.criterion)

    def design(self, x):
        """Basis matrix at x, extrapolated linearly outside the training range"""
        x = np.atleast_1d(np.asarray(x, dtype=float))
        x_in = np.clip(x, self.x_min, self.x_max)
        B = self._basis(x_in)
        outside = (x < self.x_min) | (x > self.x_max)
        if np.any(outside):
            slope = self._slope(x_in[outside])
            B[outside] += (x[outside] - x_in[outside])[:, None] * slope
        return B

    def fit(self, x, z, w, penalty=2.0, lam=None):
        """
        Penalized weighted least-squares fit to working response z.

        If lam is None the smoothing parameter is chosen by GAIC with the
        given penalty factor.
        """
        B = self.design(x)
        if lam is None:
            lam, coef, _, edf = select_lambda(B, z, w, self.P, penalty, criterion=self.criterion)
        else:
            coef, _, edf = penalized_wls(B, z, w, lam, self.P)
        return self._like(coef, lam, edf)

    def blend(self, other, fraction):
        """Move `fraction` of the way from other towards self (same basis)"""
        coef = other.coef + fraction * (self.coef - other.coef)
        return self._like(coef, self.lam, self.edf)

    def with_lambda(self, lam):
        """Same coefficients, penalty evaluated at another lambda"""
        return self._like(self.coef, lam, self.edf)

    def clip(self, lower, upper):
        """
        Clip the coefficients to [lower, upper]. B-splines sum to one, so the
        term then stays within the bounds over the training range.
        """
        return self._like(np.clip(self.coef, lower, upper), self.lam, self.edf)

    @property
    def penalty_value(self):
        if not self.lam:
            return 0.0
        return float(self.lam * self.coef @ self.P @ self.coef)

    def __call__(self, x):
        return self.design(x) @ self.coef

    def __repr__(self):
        lam = 'None' if self.lam is None else f"{self.lam:.3g}"
        edf = 'None' if self.edf is None else f"{self.edf:.2f}"
        return f"PSplineTerm(range=[{self.x_min:g}, {self.x_max:g}], lambda={lam}, edf={edf})"


def make_term(kind, x, n_segments=20, degree=3, order=2, criterion=working_gaic):
    """Build an unfitted 'constant' or 'smooth' term over the range of x"""
    if kind == 'constant':
        return ConstantTerm()
    elif kind == 'smooth':
        return PSplineTerm.from_data(x, n_segments=n_segments, degree=degree,
                                     order=order, criterion=criterion)
    raise ValueError(f"Unknown term kind: {kind}")
