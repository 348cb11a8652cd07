"""
Optimization Module

Generalized proximal gradient descent (FISTA) for the weighting vector g.

The objective is F(g) = f(g) + lam * ||g||_1 where f is the smooth
correlation loss of ``loss.py``. Every iteration takes a gradient step at the
extrapolated point z, applies the soft-threshold proximal operator and
chooses the step by backtracking until the sufficient-decrease condition

    F(g+) <= F(z) - sigma / step * ||g+ - z||^2

holds. If the point reached from z is worse than the current iterate, the
momentum is reset and the step is recomputed from the iterate itself, so the
recorded objective never increases.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np

from .constants import (
    DEFAULT_BACKTRACK_FACTOR,
    DEFAULT_MAX_BACKTRACKS,
    DEFAULT_MAXIT,
    DEFAULT_RESTART_TOLERANCE,
    DEFAULT_SUFFICIENT_DECREASE,
    DEFAULT_TOLERANCE,
    GRADIENT_EPS,
    MAX_INITIAL_STEP,
)
from .errors import ConfigurationError, NumericalError
from .logging_utils import get_logger
from .loss import loss_and_gradient, smooth_loss

logger = get_logger(__name__)


# =============================================================================
# Proximal operators
# =============================================================================

def soft_threshold(x: np.ndarray, thr: float) -> np.ndarray:
    return np.sign(x) * np.maximum(np.abs(x) - thr, 0.0)


def positive_soft_threshold(x: np.ndarray, thr: float) -> np.ndarray:
    """Soft threshold followed by projection onto g >= 0."""
    return np.maximum(x - thr, 0.0)


def initial_step(g: np.ndarray, grad: np.ndarray) -> float:
    """
    First step size: move the steepest coordinate by the scale of g.

    Args:
        g: Starting point
        grad: Gradient of the smooth loss at g

    Returns:
        Step size, capped at MAX_INITIAL_STEP
    """
    scale = float(np.max(np.abs(g))) if g.size else 1.0
    if scale <= 0.0:
        scale = 1.0
    steepest = max(float(np.max(np.abs(grad))) if grad.size else 0.0, GRADIENT_EPS)
    return min(scale / steepest, MAX_INITIAL_STEP)


# =============================================================================
# FISTA
# =============================================================================

class OptimizerStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"


@dataclass(frozen=True)
class OptimizerResult:
    """Outcome of one optimizer run; owns its final state."""
    g: np.ndarray
    status: OptimizerStatus
    n_iter: int
    loss_trace: np.ndarray  # objective at g0 and after every iteration
    lam: float
    step: float
    n_restarts: int
    g_trace: Optional[np.ndarray] = None  # (n_iter + 1) x features

    @property
    def converged(self) -> bool:
        return self.status is OptimizerStatus.CONVERGED

    @property
    def loss(self) -> float:
        return float(self.loss_trace[-1])

    @property
    def n_nonzero(self) -> int:
        return int(np.count_nonzero(self.g))


def _prox_step(
    z: np.ndarray,
    f_z: float,
    grad_z: np.ndarray,
    step: float,
    lam: float,
    prox: Callable[[np.ndarray, float], np.ndarray],
    smooth: Callable[[np.ndarray], float],
    max_backtracks: int,
    backtrack_factor: float,
    sufficient_decrease: float,
) -> Optional[Tuple[np.ndarray, float, float]]:
    """
    Backtracking proximal gradient step from z.

    A candidate whose weighted normal matrix is singular is rejected like one
    that fails the sufficient-decrease test.

    Returns:
        Tuple of (new point, its smooth loss, accepted step), or None if no
        step within ``max_backtracks`` halvings decreases the objective
    """
    F_z = f_z + lam * float(np.sum(np.abs(z)))
    for _ in range(max_backtracks):
        candidate = prox(z - step * grad_z, lam * step)
        try:
            f_candidate = smooth(candidate)
        except NumericalError:
            # thresholding left too little support for a solvable system
            step *= backtrack_factor
            continue
        F_candidate = f_candidate + lam * float(np.sum(np.abs(candidate)))
        distance = float(np.sum((candidate - z) ** 2))
        if F_candidate <= F_z - sufficient_decrease / step * distance:
            return candidate, f_candidate, step
        step *= backtrack_factor
    return None


def fista(
    X,
    Y,
    C,
    lam: float = 0.0,
    g0: Optional[np.ndarray] = None,
    maxit: int = DEFAULT_MAXIT,
    tol: float = DEFAULT_TOLERANCE,
    step_size: Optional[float] = None,
    ridge: float = 0.0,
    positive: bool = False,
    keep_history: bool = False,
    max_backtracks: int = DEFAULT_MAX_BACKTRACKS,
    backtrack_factor: float = DEFAULT_BACKTRACK_FACTOR,
    sufficient_decrease: float = DEFAULT_SUFFICIENT_DECREASE,
    restart_tolerance: float = DEFAULT_RESTART_TOLERANCE,
) -> OptimizerResult:
    """
    Learn the weighting vector g by accelerated proximal gradient descent.

    Args:
        X: Reference matrix (features x categories)
        Y: Training mixtures (features x mixtures)
        C: True compositions of the mixtures (categories x mixtures)
        lam: L1 regularization strength (>= 0)
        g0: Starting vector (default: all ones)
        maxit: Maximum number of iterations
        tol: Relative objective change that counts as converged
        step_size: First step; chosen from the gradient scale if None
        ridge: Value added to the diagonal of the weighted normal matrix
        positive: Constrain g to be non-negative
        keep_history: Record g after every iteration
        max_backtracks: Step halvings tried per iteration
        backtrack_factor: Step shrink factor of the line search
        sufficient_decrease: Constant sigma of the acceptance condition
        restart_tolerance: Relative objective increase tolerated before the
            momentum is reset

    Returns:
        OptimizerResult with the final g, the termination status and traces
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    C = np.asarray(C, dtype=np.float64)
    if lam < 0 or not math.isfinite(lam):
        raise ConfigurationError(f"lambda must be a finite non-negative number, got {lam}")
    if maxit < 1:
        raise ConfigurationError(f"maxit must be positive, got {maxit}")
    if tol <= 0:
        raise ConfigurationError(f"tol must be positive, got {tol}")
    if step_size is not None and step_size <= 0:
        raise ConfigurationError(f"step_size must be positive, got {step_size}")

    n_features = X.shape[0]
    if g0 is None:
        g = np.ones(n_features)
    else:
        g = np.array(g0, dtype=np.float64).ravel()
        if g.shape[0] != n_features:
            raise ConfigurationError(
                f"Start vector has {g.shape[0]} entries, reference has {n_features} features"
            )
    prox = positive_soft_threshold if positive else soft_threshold
    if positive:
        g = np.maximum(g, 0.0)

    def smooth(vector: np.ndarray) -> float:
        return smooth_loss(vector, X, Y, C, ridge)

    def penalized(f_value: float, vector: np.ndarray) -> float:
        return f_value + lam * float(np.sum(np.abs(vector)))

    f_g, grad_g = loss_and_gradient(g, X, Y, C, ridge)
    F_g = penalized(f_g, g)
    step = step_size if step_size is not None else initial_step(g, grad_g)

    z, f_z, grad_z = g, f_g, grad_g
    t = 1.0
    trace = [F_g]
    history = [g.copy()] if keep_history else None
    status = OptimizerStatus.MAX_ITERATIONS
    n_iter = 0
    n_restarts = 0
    search = dict(
        lam=lam,
        prox=prox,
        smooth=smooth,
        max_backtracks=max_backtracks,
        backtrack_factor=backtrack_factor,
        sufficient_decrease=sufficient_decrease,
    )

    for iteration in range(1, maxit + 1):
        n_iter = iteration
        accepted = _prox_step(z, f_z, grad_z, step, **search)

        worse = accepted is None or (
            penalized(accepted[1], accepted[0])
            > F_g + restart_tolerance * max(abs(F_g), 1.0)
        )
        if worse:
            if z is g:
                # no descent possible from the iterate itself
                status = OptimizerStatus.CONVERGED
                break
            n_restarts += 1
            t = 1.0
            if grad_g is None:
                f_g, grad_g = loss_and_gradient(g, X, Y, C, ridge)
            accepted = _prox_step(g, f_g, grad_g, step, **search)
            if accepted is None:
                status = OptimizerStatus.CONVERGED
                break

        g_previous = g
        g, f_g, step = accepted
        grad_g = None
        F_previous = F_g
        F_g = penalized(f_g, g)
        trace.append(F_g)
        if keep_history:
            history.append(g.copy())

        change = abs(F_previous - F_g) / max(abs(F_previous), GRADIENT_EPS)
        if change < tol:
            status = OptimizerStatus.CONVERGED
            break

        t_next = 0.5 * (1.0 + math.sqrt(1.0 + 4.0 * t * t))
        momentum = (t - 1.0) / t_next
        t = t_next
        if momentum > 0.0:
            z = g + momentum * (g - g_previous)
            try:
                f_z, grad_z = loss_and_gradient(z, X, Y, C, ridge)
            except NumericalError:
                momentum = 0.0
        if momentum <= 0.0:
            z = g
            f_g, grad_g = loss_and_gradient(g, X, Y, C, ridge)
            f_z, grad_z = f_g, grad_g

    logger.debug(
        "FISTA lambda=%.3e finished: %s after %d iterations, objective %.6f, "
        "%d non-zero weights, %d restarts",
        lam, status.value, n_iter, F_g, int(np.count_nonzero(g)), n_restarts,
    )
    return OptimizerResult(
        g=g,
        status=status,
        n_iter=n_iter,
        loss_trace=np.asarray(trace),
        lam=lam,
        step=step,
        n_restarts=n_restarts,
        g_trace=np.asarray(history) if keep_history else None,
    )


def lambda_upper_bound(
    X,
    Y,
    C,
    g0: Optional[np.ndarray] = None,
    ridge: float = 0.0,
    step_size: Optional[float] = None,
    sufficient_decrease: float = DEFAULT_SUFFICIENT_DECREASE,
) -> float:
    """
    Smallest lambda whose first proximal step from g0 yields g = 0.

    Two conditions must hold at the first step: the soft threshold lam * step
    covers every entry of g0 - step * grad, and the all-zero vector (smooth
    loss 0) passes the sufficient-decrease test against F(g0).

    Returns:
        The bound, slightly inflated so that it is strictly sufficient
    """
    X = np.asarray(X, dtype=np.float64)
    g = np.ones(X.shape[0]) if g0 is None else np.asarray(g0, dtype=np.float64).ravel()
    f0, grad0 = loss_and_gradient(g, X, Y, C, ridge)
    step = step_size if step_size is not None else initial_step(g, grad0)

    l1 = float(np.sum(np.abs(g)))
    if l1 <= 0.0:
        return 0.0
    zeroing = float(np.max(np.abs(g - step * grad0))) / step
    accepting = (sufficient_decrease / step * float(np.sum(g ** 2)) - f0) / l1
    return max(zeroing, accepting, 0.0) * (1.0 + 1e-6)
