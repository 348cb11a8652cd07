"""
Cross-Validation Module

This module selects the L1 regularization strength lambda by k-fold
cross-validation over the training mixtures.

For every lambda and fold the optimizer is trained on the other folds and the
smooth loss (no penalty) is evaluated on the held-out fold. The lambda with
the smallest mean held-out loss wins; ties go to the larger lambda, which
gives the sparser weighting vector. The optimizer is then run once more on
all training mixtures with the selected lambda.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .constants import (
    DEFAULT_LAMBDA_RATIO,
    DEFAULT_N_FOLDS,
    DEFAULT_N_LAMBDA,
)
from .errors import ConfigurationError, NumericalError
from .logging_utils import get_logger
from .loss import smooth_loss
from .optimization import OptimizerResult, fista, lambda_upper_bound

logger = get_logger(__name__)

GRID_COLUMNS = ["lambda", "fold", "loss", "n_nonzero", "n_iter", "status"]


# =============================================================================
# Lambda sequence and folds
# =============================================================================

def validate_lambda_sequence(lambda_seq: Sequence[float]) -> np.ndarray:
    """
    Check a user-supplied lambda grid.

    Args:
        lambda_seq: Candidate regularization strengths

    Returns:
        Sorted (ascending) array of unique values
    """
    values = np.asarray(list(lambda_seq), dtype=np.float64).ravel()
    if values.size == 0:
        raise ConfigurationError("lambda sequence is empty")
    if not np.all(np.isfinite(values)):
        raise ConfigurationError(f"lambda sequence contains non-finite values: {values.tolist()}")
    if np.any(values <= 0):
        raise ConfigurationError(
            f"lambda sequence must be strictly positive, got {values.tolist()}"
        )
    return np.unique(values)


def generate_lambda_sequence(
    X,
    Y,
    C,
    g0: Optional[np.ndarray] = None,
    n_lambda: int = DEFAULT_N_LAMBDA,
    ratio: float = DEFAULT_LAMBDA_RATIO,
    ridge: float = 0.0,
) -> np.ndarray:
    """
    Log-spaced lambda grid between ratio * lambda_max and lambda_max.

    lambda_max is the smallest strength that sends g to all-zero on the first
    optimizer step from g0, so the grid spans from nearly unregularized to
    fully sparse.

    Args:
        X: Reference matrix (features x categories)
        Y: Training mixtures (features x mixtures)
        C: True compositions (categories x mixtures)
        g0: Starting vector (default: all ones)
        n_lambda: Number of grid points
        ratio: Smallest lambda as a fraction of lambda_max, in (0, 1)
        ridge: Value added to the diagonal of the weighted normal matrix

    Returns:
        Ascending array of lambda values
    """
    if n_lambda < 1:
        raise ConfigurationError(f"n_lambda must be positive, got {n_lambda}")
    if not 0 < ratio < 1:
        raise ConfigurationError(f"ratio must be in (0, 1), got {ratio}")

    upper = lambda_upper_bound(X, Y, C, g0=g0, ridge=ridge)
    if not upper > 0 or not math.isfinite(upper):
        raise ConfigurationError(f"Cannot derive a lambda grid, upper bound is {upper}")
    if n_lambda == 1:
        return np.array([upper])
    return np.logspace(math.log10(upper * ratio), math.log10(upper), n_lambda)


def make_folds(n_mixtures: int, n_folds: int = DEFAULT_N_FOLDS, rng=None) -> List[np.ndarray]:
    """
    Randomly partition mixture positions into disjoint, near-equal folds.

    Args:
        n_mixtures: Number of training mixtures
        n_folds: Number of folds (2 <= n_folds <= n_mixtures)
        rng: Seed or numpy Generator

    Returns:
        List of sorted position arrays, one per fold
    """
    if n_folds < 2:
        raise ConfigurationError(f"n_folds must be at least 2, got {n_folds}")
    if n_folds > n_mixtures:
        raise ConfigurationError(
            f"n_folds={n_folds} exceeds the number of training mixtures ({n_mixtures})"
        )
    rng = np.random.default_rng(rng)
    permutation = rng.permutation(n_mixtures)
    return [np.sort(fold) for fold in np.array_split(permutation, n_folds)]


# =============================================================================
# Cross-validation
# =============================================================================

@dataclass(frozen=True)
class CVResult:
    """Cross-validation grid, selected lambda and the retrained optimizer run."""
    grid: pd.DataFrame  # one row per (lambda, fold)
    mean_loss: pd.Series  # indexed by lambda
    best_lambda: float
    final: OptimizerResult
    lambda_seq: np.ndarray


def _fit_fold(
    X: np.ndarray,
    Y: np.ndarray,
    C: np.ndarray,
    train_idx: np.ndarray,
    test_idx: np.ndarray,
    lambdas: np.ndarray,
    fold: int,
    g0: Optional[np.ndarray],
    warm_start: bool,
    ridge: float,
    optimizer_kwargs: Dict,
) -> List[Dict]:
    """Train on one fold's complement for each lambda (in order)."""
    records = []
    g_start = g0
    for lam in lambdas:
        try:
            result = fista(
                X, Y[:, train_idx], C[:, train_idx],
                lam=float(lam), g0=g_start, ridge=ridge, **optimizer_kwargs
            )
            held_out = smooth_loss(result.g, X, Y[:, test_idx], C[:, test_idx], ridge)
        except NumericalError as exc:
            raise NumericalError(f"lambda={lam:.6g}, fold={fold}: {exc}") from exc

        records.append({
            "lambda": float(lam),
            "fold": fold,
            "loss": held_out,
            "n_nonzero": result.n_nonzero,
            "n_iter": result.n_iter,
            "status": result.status.value,
        })
        if warm_start:
            g_start = result.g
    return records


def select_lambda(mean_loss: pd.Series) -> float:
    """
    Lambda with the smallest mean held-out loss; ties go to the larger lambda.
    """
    best = mean_loss.min()
    ties = mean_loss.index[np.isclose(mean_loss.to_numpy(), best, rtol=1e-9, atol=1e-12)]
    return float(max(ties))


def cv_lambda(
    X,
    Y,
    C,
    lambda_seq: Optional[Sequence[float]] = None,
    n_folds: int = DEFAULT_N_FOLDS,
    g0: Optional[np.ndarray] = None,
    warm_start: bool = True,
    n_lambda: int = DEFAULT_N_LAMBDA,
    lambda_ratio: float = DEFAULT_LAMBDA_RATIO,
    ridge: float = 0.0,
    rng=None,
    n_jobs: int = 1,
    keep_history: bool = False,
    verbose: bool = True,
    **optimizer_kwargs,
) -> CVResult:
    """
    Select lambda by k-fold cross-validation and retrain on all mixtures.

    Args:
        X: Reference matrix (features x categories)
        Y: Training mixtures (features x mixtures)
        C: True compositions (categories x mixtures)
        lambda_seq: Candidate lambdas; generated from the problem if None
        n_folds: Number of folds
        g0: Starting vector (default: all ones)
        warm_start: Within a fold, seed each lambda with the previous
            lambda's solution (lambdas are swept in ascending order)
        n_lambda: Grid size when lambda_seq is generated
        lambda_ratio: Smallest generated lambda relative to the largest
        ridge: Value added to the diagonal of the weighted normal matrix
        rng: Seed or numpy Generator for the fold assignment
        n_jobs: joblib worker count for the independent training runs
        keep_history: Record the g trace of the final run
        verbose: Print progress information
        **optimizer_kwargs: Passed to ``fista`` (maxit, tol, positive, ...)

    Returns:
        CVResult with the (lambda, fold, loss) grid, the selected lambda and
        the final optimizer run on all training mixtures
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    C = np.asarray(C, dtype=np.float64)
    if Y.shape[1] != C.shape[1]:
        raise ConfigurationError(
            f"{Y.shape[1]} mixtures but {C.shape[1]} composition columns"
        )

    if lambda_seq is None:
        lambdas = generate_lambda_sequence(X, Y, C, g0=g0, n_lambda=n_lambda,
                                           ratio=lambda_ratio, ridge=ridge)
    else:
        lambdas = validate_lambda_sequence(lambda_seq)
    folds = make_folds(Y.shape[1], n_folds, rng)
    all_positions = np.arange(Y.shape[1])

    if verbose:
        print(f"  Running cross-validation over {len(lambdas)} lambda values "
              f"x {n_folds} folds ({'warm' if warm_start else 'cold'} start)...")

    if warm_start:
        tasks = [(fold, lambdas) for fold in range(n_folds)]
    else:
        tasks = [(fold, np.array([lam])) for lam in lambdas for fold in range(n_folds)]

    batches = Parallel(n_jobs=n_jobs)(
        delayed(_fit_fold)(
            X, Y, C,
            np.setdiff1d(all_positions, folds[fold]), folds[fold],
            task_lambdas, fold, g0, warm_start, ridge, optimizer_kwargs,
        )
        for fold, task_lambdas in tasks
    )

    grid = pd.DataFrame(
        [record for batch in batches for record in batch], columns=GRID_COLUMNS
    ).sort_values(["lambda", "fold"]).reset_index(drop=True)
    mean_loss = grid.groupby("lambda")["loss"].mean()
    best_lambda = select_lambda(mean_loss)

    n_unconverged = int((grid["status"] != "converged").sum())
    if n_unconverged:
        logger.warning(
            "%d of %d cross-validation runs reached maxit before converging",
            n_unconverged, len(grid),
        )

    try:
        final = fista(X, Y, C, lam=best_lambda, g0=g0, ridge=ridge,
                      keep_history=keep_history, **optimizer_kwargs)
    except NumericalError as exc:
        raise NumericalError(f"lambda={best_lambda:.6g}, full training set: {exc}") from exc

    if verbose:
        print(f"  Selected lambda: {best_lambda:.4g} "
              f"(mean held-out loss {mean_loss[best_lambda]:.4f})")
        print(f"  Non-zero weights: {final.n_nonzero} of {X.shape[0]}")
        print(f"  Final run: {final.status.value} after {final.n_iter} iterations")

    return CVResult(
        grid=grid,
        mean_loss=mean_loss,
        best_lambda=best_lambda,
        final=final,
        lambda_seq=lambdas,
    )
