"""
Loss Module

Correlation loss between true and estimated compositions and its gradient
with respect to the weighting vector g.

    L(g) = - sum_j corr(C[:, j], C_hat(g)[:, j]) + lam * ||g||_1

Correlations are Pearson correlations of one mixture column across
categories. A column whose true or estimated composition has (numerically)
zero variance has no defined correlation; it contributes 0 to the loss and
to the gradient. An all-zero g selects no features and estimates nothing, so
every column is degenerate: the smooth loss and its gradient are both 0.

The gradient of the smooth term is the closed-form adjoint of the weighted
normal equations. With w = g^2, M = X^T W X + ridge * I, C_hat = M^{-1} X^T W Y
and R = Y - X C_hat, for any loss l(C_hat) with V = dl/dC_hat:

    dl/dw_i = sum_j (X M^{-1} V)_{ij} R_{ij}
    dl/dg   = 2 g * dl/dw

All functions take plain arrays in the row order of X; pandas objects are
converted with ``np.asarray`` and must already be aligned.
"""

from typing import Tuple

import numpy as np

from .constants import CORRELATION_EPS
from .estimation import solve_weighted


def _centered(M: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    centered = M - M.mean(axis=0, keepdims=True)
    return centered, np.sqrt(np.sum(centered ** 2, axis=0))


def _correlations_with_adjoint(C: np.ndarray, C_hat: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-column Pearson correlations and their derivative w.r.t. C_hat.

    Returns:
        Tuple of (correlations (n,), d corr / d C_hat (categories x n))
    """
    C_c, norm_c = _centered(C)
    H_c, norm_h = _centered(C_hat)
    valid = (norm_c > CORRELATION_EPS) & (norm_h > CORRELATION_EPS)

    corr = np.zeros(C.shape[1])
    d_corr = np.zeros_like(C_hat)
    if not np.any(valid):
        return corr, d_corr

    u = C_c[:, valid] / norm_c[valid]
    e = H_c[:, valid] / norm_h[valid]
    rho = np.sum(u * e, axis=0)
    corr[valid] = rho
    # u and e are centered, so the centering projection leaves (u - rho e) unchanged
    d_corr[:, valid] = (u - rho * e) / norm_h[valid]
    return corr, d_corr


def column_correlations(C, C_hat) -> np.ndarray:
    """
    Pearson correlation of each mixture column across categories.

    Args:
        C: True compositions (categories x mixtures)
        C_hat: Estimated compositions, same shape

    Returns:
        Array of correlations, one per mixture; 0 for degenerate columns
    """
    C = np.asarray(C, dtype=np.float64)
    C_hat = np.asarray(C_hat, dtype=np.float64)
    if C.shape != C_hat.shape:
        raise ValueError(f"Composition shapes differ: {C.shape} vs {C_hat.shape}")
    corr, _ = _correlations_with_adjoint(C, C_hat)
    return corr


def smooth_loss(g, X, Y, C, ridge: float = 0.0) -> float:
    """Negative sum of per-mixture correlations (no penalty)."""
    g = np.asarray(g, dtype=np.float64)
    if not np.any(g):
        return 0.0
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    C_hat, _ = solve_weighted(X, Y, g ** 2, ridge)
    return -float(np.sum(column_correlations(C, C_hat)))


def evaluate_loss(g, X, Y, C, lam: float = 0.0, ridge: float = 0.0) -> float:
    """
    Full objective: smooth correlation loss plus lam * ||g||_1.

    Args:
        g: Weighting vector (features,)
        X: Reference matrix (features x categories)
        Y: Mixtures (features x mixtures)
        C: True compositions (categories x mixtures)
        lam: L1 regularization strength
        ridge: Value added to the diagonal of the weighted normal matrix

    Returns:
        Scalar loss
    """
    g = np.asarray(g, dtype=np.float64)
    return smooth_loss(g, X, Y, C, ridge) + lam * float(np.sum(np.abs(g)))


def loss_and_gradient(g, X, Y, C, ridge: float = 0.0) -> Tuple[float, np.ndarray]:
    """
    Smooth loss and its gradient with respect to g.

    Args:
        g: Weighting vector (features,)
        X: Reference matrix (features x categories)
        Y: Mixtures (features x mixtures)
        C: True compositions (categories x mixtures)
        ridge: Value added to the diagonal of the weighted normal matrix

    Returns:
        Tuple of (loss, gradient of shape (features,))
    """
    g = np.asarray(g, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    C = np.asarray(C, dtype=np.float64)
    if not np.any(g):
        return 0.0, np.zeros_like(g)

    C_hat, M = solve_weighted(X, Y, g ** 2, ridge)
    corr, d_corr = _correlations_with_adjoint(C, C_hat)
    loss = -float(np.sum(corr))

    adjoint = np.linalg.solve(M, -d_corr)
    residuals = Y - X @ C_hat
    grad_w = np.sum((X @ adjoint) * residuals, axis=1)
    return loss, 2.0 * g * grad_w
