"""
RS (Rigby & Stasinopoulos) backfitting engine

Both the per-subject fitter and the population fitter run the same
algorithm: an outer cycle over the distribution parameters (mu, sigma, nu,
tau), where each parameter block is updated by penalized iteratively
reweighted least squares with the others held fixed.

For block k with linear predictor eta_k the working quantities are
    u_i = d l_i / d eta_k           (score, by central differences)
    w_i = prior_i * max(u_i^2, eps) (BHHH information)
    z_i = eta_k,i + u_i / max(u_i^2, eps)
and the block's term is refitted to (z, w). Observations whose score is
not finite get zero working weight, and log-link values of sigma and tau
are held inside LINK_BOUNDS. Steps that increase the deviance are halved.

A block that cannot take any step (halving exhausted on its first inner
iteration) stalls the fit, and a block that reaches the inner iteration cap
is flagged; neither may end in a converged state.

The fit state is an explicit, immutable BackfitState threaded through
`update_block` -> `rs_cycle` -> `run_backfitting`, so each step can be
replayed and tested in isolation.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Optional, Tuple

import numpy as np

from .distributions import Distribution

logger = logging.getLogger(__name__)

SCORE_STEP = 1e-5
MIN_INFORMATION = 1e-10
MAX_HALVINGS = 20

# Range of the linear predictor allowed for log-link scale parameters
LINK_BOUNDS = {
    'sigma': (np.log(1e-6), np.log(1e3)),
    'tau': (np.log(0.05), np.log(100.0)),
}


@dataclass(frozen=True)
class BackfitProblem:
    """Data of one fit: covariate, response and prior weights"""
    distribution: Distribution
    x: np.ndarray
    y: np.ndarray
    weights: np.ndarray


@dataclass(frozen=True)
class BackfitSettings:
    tolerance: float = 1e-3
    max_cycles: int = 20
    max_inner: int = 100
    gaic_penalty: float = 3.84
    time_budget: Optional[float] = None


@dataclass(frozen=True)
class BackfitState:
    """
    Current terms and linear predictors, with the penalized-deviance history
    (one entry per completed cycle, starting with the initial fit).
    """
    terms: Dict[str, object]
    eta: Dict[str, np.ndarray]
    deviance: float
    penalized_deviance: float
    history: Tuple[float, ...] = ()
    cycles: int = 0
    converged: bool = False
    stop_reason: str = ''
    inner_iterations: Dict[str, int] = field(default_factory=dict)
    # Blocks that hit the inner cap or could not move, in the current cycle
    capped: FrozenSet[str] = frozenset()
    stalled: FrozenSet[str] = frozenset()


# ============================================================================
# Likelihood pieces
# ============================================================================

def params_from_eta(distribution, eta):
    return {name: distribution.inverse_link(name, eta[name]) for name in distribution.param_names}


def global_deviance(problem, eta):
    """-2 * weighted log-likelihood"""
    params = params_from_eta(problem.distribution, eta)
    return -2.0 * problem.distribution.loglik(problem.y, weights=problem.weights, **params)


def penalized_deviance(deviance, terms):
    return deviance + sum(term.penalty_value for term in terms.values())


def score(problem, eta, name, h=SCORE_STEP):
    """Per-observation d logpdf / d eta[name] by central differences"""
    dist = problem.distribution
    up = dict(eta)
    down = dict(eta)
    up[name] = eta[name] + h
    down[name] = eta[name] - h
    ll_up = dist.logpdf(problem.y, **params_from_eta(dist, up))
    ll_down = dist.logpdf(problem.y, **params_from_eta(dist, down))
    return (ll_up - ll_down) / (2.0 * h)


# ============================================================================
# State construction and update steps
# ============================================================================

def initial_state(problem, terms, start=None):
    """
    Start every block at a constant (moment-based unless `start` is given)
    and fit each term to it.

    Parameters:
    -----------
    problem : BackfitProblem
    terms : dict
        Unfitted term per parameter name
    start : dict or None
        Starting parameter values on the natural scale
    """
    dist = problem.distribution
    if start is None:
        start = dist.initialize_params(problem.y, problem.weights)
    n = len(problem.y)
    fitted_terms = {}
    eta = {}
    ones = np.ones(n)
    for name in dist.param_names:
        value = np.full(n, float(dist.link(name, start[name])))
        fitted_terms[name] = terms[name].fit(problem.x, value, ones, lam=1.0)
        eta[name] = fitted_terms[name](problem.x)
    dev = global_deviance(problem, eta)
    pdev = penalized_deviance(dev, fitted_terms)
    return BackfitState(terms=fitted_terms, eta=eta, deviance=dev,
                        penalized_deviance=pdev, history=(pdev,))


def update_block(problem, state, name, settings):
    """
    Refit one parameter block by penalized IRLS with the others held fixed.

    Steps are accepted when they do not increase the penalized deviance,
    both sides evaluated under the smoothing parameter just selected.
    Returns a new BackfitState; `state` is left untouched.
    """
    term = state.terms[name]
    eta = dict(state.eta)
    dev = state.deviance
    bounds = LINK_BOUNDS.get(name) if problem.distribution.links[name] == 'log' else None
    iterations = 0
    capped = stalled = False

    for iterations in range(1, settings.max_inner + 1):
        u = score(problem, eta, name)
        usable = np.isfinite(u)
        if not np.any(usable):
            logger.warning(f"No finite scores for {name}; keeping previous estimate")
            stalled = iterations == 1
            break
        u = np.where(usable, u, 0.0)
        info = np.maximum(u * u, MIN_INFORMATION)
        z = eta[name] + u / info
        w = np.where(usable, problem.weights * info, 0.0)

        candidate = term.fit(problem.x, z, w, settings.gaic_penalty)
        if bounds is not None:
            candidate = candidate.clip(*bounds)
        base = dev + term.with_lambda(candidate.lam).penalty_value
        trial = dict(eta)
        trial[name] = candidate(problem.x)
        new_dev = _safe_deviance(problem, trial)

        halvings = 0
        while not _accept(new_dev + candidate.penalty_value, base) and halvings < MAX_HALVINGS:
            candidate = candidate.blend(term, 0.5)
            trial[name] = candidate(problem.x)
            new_dev = _safe_deviance(problem, trial)
            halvings += 1

        objective = new_dev + candidate.penalty_value
        if not _accept(objective, base):
            logger.warning(f"Step halving exhausted for {name}; keeping previous estimate")
            stalled = iterations == 1
            break

        change = base - objective
        term, eta, dev = candidate, trial, new_dev
        if abs(change) < settings.tolerance:
            break
    else:
        capped = True
        logger.debug(f"{name}: inner iteration cap {settings.max_inner} reached")

    terms = dict(state.terms)
    terms[name] = term
    inner = dict(state.inner_iterations)
    inner[name] = inner.get(name, 0) + iterations
    return replace(state, terms=terms, eta=eta, deviance=dev,
                   penalized_deviance=penalized_deviance(dev, terms),
                   inner_iterations=inner,
                   capped=state.capped | {name} if capped else state.capped,
                   stalled=state.stalled | {name} if stalled else state.stalled)


def _accept(objective, base):
    return objective <= base + 1e-10 * max(abs(base), 1.0)


def _safe_deviance(problem, eta):
    """Deviance, or +inf where the trial parameters leave the valid range"""
    with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
        try:
            dev = global_deviance(problem, eta)
        except (ValueError, FloatingPointError):
            return np.inf
    return dev if np.isfinite(dev) else np.inf


def rs_cycle(problem, state, settings):
    """One full pass over all parameter blocks"""
    state = replace(state, capped=frozenset(), stalled=frozenset())
    for name in problem.distribution.param_names:
        state = update_block(problem, state, name, settings)
    return replace(state, cycles=state.cycles + 1,
                   history=state.history + (state.penalized_deviance,))


def run_backfitting(problem, state, settings, label='fit'):
    """
    Repeat RS cycles until the penalized deviance changes by less than
    settings.tolerance over a full cycle, the cycle cap is reached, or the
    time budget runs out.

    A cycle only counts as converged if no block hit its inner iteration
    cap in it. A block that could not move at all ends the fit with
    stop_reason 'step_halving'.

    Returns:
    --------
    state : BackfitState
        Final state; `converged` and `stop_reason` record how it ended
    """
    start_time = time.monotonic()
    logger.debug(f"{label}: initial penalized deviance {state.penalized_deviance:.6f}")

    while state.cycles < settings.max_cycles:
        previous = state.penalized_deviance
        state = rs_cycle(problem, state, settings)
        logger.debug(f"{label}: cycle {state.cycles} penalized deviance {state.penalized_deviance:.6f}")

        if state.stalled:
            logger.warning(f"{label}: no admissible step for {sorted(state.stalled)}")
            return replace(state, stop_reason='step_halving')

        if abs(previous - state.penalized_deviance) < settings.tolerance:
            if not state.capped:
                return replace(state, converged=True, stop_reason='tolerance')
            logger.debug(f"{label}: inner cap reached for {sorted(state.capped)}; continuing")

        if settings.time_budget is not None and time.monotonic() - start_time > settings.time_budget:
            return replace(state, stop_reason='time_budget')

    return replace(state, stop_reason='max_cycles')
