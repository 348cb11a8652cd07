"""
Estimation Module

This module estimates cellular compositions from mixtures given a reference
matrix X and a per-feature weighting vector g.

For every mixture column y the composition c minimizes

    || diag(g) (y - X c) ||^2

i.e. weighted least squares with weights w = g^2. The unconstrained variant
has the closed form c = (X^T W X)^{-1} X^T W y; the non-negative variant is
solved with scipy's active-set NNLS on the row-scaled system.
"""

from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import nnls

from .constants import SINGULAR_RCOND
from .errors import ConfigurationError, NumericalError


# =============================================================================
# Numerical kernels (plain arrays)
# =============================================================================

def weighted_normal_matrix(X: np.ndarray, w: np.ndarray, ridge: float = 0.0) -> np.ndarray:
    """Return X^T diag(w) X + ridge * I."""
    M = (X.T * w) @ X
    if ridge:
        M[np.diag_indices_from(M)] += ridge
    return M


def check_conditioning(M: np.ndarray, mixture_ids: Optional[Sequence] = None) -> None:
    """
    Raise NumericalError if M is singular to working precision.

    Args:
        M: Square normal-equations matrix
        mixture_ids: Mixtures whose solve depends on M (for the message)
    """
    singular_values = np.linalg.svd(M, compute_uv=False)
    largest = singular_values[0] if singular_values.size else 0.0
    if not np.all(np.isfinite(singular_values)) or largest <= 0.0 or (
        singular_values[-1] <= SINGULAR_RCOND * largest
    ):
        if mixture_ids is None:
            where = ""
        else:
            mixture_ids = list(mixture_ids)
            shown = mixture_ids[:5]
            more = f" and {len(mixture_ids) - 5} more" if len(mixture_ids) > 5 else ""
            where = f" for mixtures {shown}{more}"
        rcond = singular_values[-1] / largest if largest > 0 else 0.0
        raise NumericalError(
            f"Weighted normal matrix is singular to working precision{where} "
            f"(reciprocal condition number {rcond:.3e}); "
            "check the weighting vector support or pass ridge > 0"
        )


def solve_weighted(
    X: np.ndarray,
    Y: np.ndarray,
    w: np.ndarray,
    ridge: float = 0.0,
    mixture_ids: Optional[Sequence] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Unconstrained weighted least squares for all mixture columns at once.

    Args:
        X: Reference matrix (features x categories)
        Y: Mixtures (features x mixtures)
        w: Feature weights (already squared)
        ridge: Value added to the diagonal of the normal matrix
        mixture_ids: Names used in error messages

    Returns:
        Tuple of (estimated compositions (categories x mixtures), normal matrix)
    """
    M = weighted_normal_matrix(X, w, ridge)
    if ridge <= 0:
        check_conditioning(M, mixture_ids)
    C_hat = np.linalg.solve(M, (X.T * w) @ Y)
    return C_hat, M


def solve_nonneg(
    X: np.ndarray,
    Y: np.ndarray,
    g: np.ndarray,
    ridge: float = 0.0,
    mixture_ids: Optional[Sequence] = None,
) -> np.ndarray:
    """
    Non-negative weighted least squares, one NNLS problem per mixture column.

    The ridge enters as extra rows sqrt(ridge) * I so both variants minimize
    the same objective.
    """
    w = g ** 2
    if ridge <= 0:
        check_conditioning(weighted_normal_matrix(X, w), mixture_ids)

    A = g[:, None] * X
    B = g[:, None] * Y
    n_categories = X.shape[1]
    if ridge > 0:
        A = np.vstack([A, np.sqrt(ridge) * np.eye(n_categories)])
        B = np.vstack([B, np.zeros((n_categories, Y.shape[1]))])

    C_hat = np.empty((n_categories, Y.shape[1]))
    for j in range(Y.shape[1]):
        C_hat[:, j], _ = nnls(A, B[:, j])
    return C_hat


# =============================================================================
# Public entry point
# =============================================================================

def _resolve_weights(g_or_model, features: Optional[pd.Index], n_features: int) -> np.ndarray:
    """Return the weighting vector as an array aligned with the rows of X."""
    if isinstance(g_or_model, pd.Series):
        g = g_or_model
    else:
        g = getattr(g_or_model, "weights", g_or_model)

    if isinstance(g, pd.Series):
        if features is not None:
            missing = features.difference(g.index)
            if len(missing):
                raise ConfigurationError(
                    f"Weighting vector lacks {len(missing)} reference features, "
                    f"e.g. {missing[:5].tolist()}"
                )
            g = g.reindex(features)
        values = g.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(g, dtype=np.float64).ravel()

    if values.shape[0] != n_features:
        raise ConfigurationError(
            f"Weighting vector has {values.shape[0]} entries, reference has {n_features} features"
        )
    if not np.all(np.isfinite(values)):
        raise ConfigurationError("Weighting vector contains non-finite values")
    return values


def estimate(X, g_or_model, Y, nonneg: bool = False, ridge: Optional[float] = None):
    """
    Estimate compositions of mixtures given a reference matrix and weights.

    Args:
        X: Reference matrix (features x categories), DataFrame or ndarray
        g_or_model: Weighting vector (Series indexed by feature, or array in
            the row order of X) or a trained DeconvolutionModel
        Y: Mixtures (features x mixtures), DataFrame, ndarray or 1-D vector
        nonneg: Constrain the compositions to be non-negative
        ridge: Value added to the diagonal of the weighted normal matrix;
            defaults to the model's own ridge for a model, else 0

    Returns:
        Estimated compositions (categories x mixtures); a DataFrame when X or
        Y is a DataFrame, otherwise an ndarray (1-D for a 1-D Y)

    Raises:
        NumericalError: If the weighted normal matrix is singular and
            ``ridge`` is zero
    """
    if ridge is None:
        ridge = 0.0 if isinstance(g_or_model, pd.Series) else getattr(g_or_model, "ridge", 0.0)
    if ridge < 0:
        raise ConfigurationError(f"ridge must be non-negative, got {ridge}")

    features = X.index if isinstance(X, pd.DataFrame) else None
    categories = X.columns if isinstance(X, pd.DataFrame) else None
    X_values = np.asarray(X, dtype=np.float64)
    if X_values.ndim != 2:
        raise ConfigurationError(f"Reference matrix must be 2-D, got shape {X_values.shape}")

    vector_input = False
    mixture_ids = None
    if isinstance(Y, pd.Series):
        Y = Y.to_frame()
    if isinstance(Y, pd.DataFrame):
        if features is not None:
            missing = features.difference(Y.index)
            if len(missing):
                raise ConfigurationError(
                    f"Mixtures lack {len(missing)} reference features, "
                    f"e.g. {missing[:5].tolist()}"
                )
            Y = Y.reindex(features)
        mixture_ids = Y.columns
        Y_values = Y.to_numpy(dtype=np.float64)
    else:
        Y_values = np.asarray(Y, dtype=np.float64)
        if Y_values.ndim == 1:
            vector_input = True
            Y_values = Y_values[:, None]

    if Y_values.shape[0] != X_values.shape[0]:
        raise ConfigurationError(
            f"Mixtures have {Y_values.shape[0]} features, reference has {X_values.shape[0]}"
        )

    g = _resolve_weights(g_or_model, features, X_values.shape[0])
    names = list(mixture_ids) if mixture_ids is not None else None
    if nonneg:
        C_hat = solve_nonneg(X_values, Y_values, g, ridge, names)
    else:
        C_hat, _ = solve_weighted(X_values, Y_values, g ** 2, ridge, names)

    if categories is not None or mixture_ids is not None:
        return pd.DataFrame(C_hat, index=categories, columns=mixture_ids)
    if vector_input:
        return C_hat[:, 0]
    return C_hat
