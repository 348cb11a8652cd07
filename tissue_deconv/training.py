"""
Training Module

This module assembles the training pipeline:

    sampler -> reference matrix X
            -> split of the remaining samples into train/test pools
            -> mixer (training and test mixtures)
            -> cross-validated lambda selection and final optimizer run
            -> DeconvolutionModel
            -> evaluation on the test mixtures against the untrained g = 1

The resulting model is read-only; ``DeconvolutionModel.estimate`` (or
``estimation.estimate``) applies it to new mixtures.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .constants import (
    DEFAULT_COUNT_TOTAL,
    DEFAULT_LAMBDA_RATIO,
    DEFAULT_MAXIT,
    DEFAULT_N_FOLDS,
    DEFAULT_N_LAMBDA,
    DEFAULT_N_PER_MIXTURE,
    DEFAULT_N_TEST_MIXTURES,
    DEFAULT_N_TRAIN_MIXTURES,
    DEFAULT_SAMPLING_PERCENTAGE,
    DEFAULT_TOLERANCE,
    DEFAULT_TRAIN_FRACTION,
    DEFAULT_TRAINING_RIDGE,
)
from .cross_validation import CVResult, cv_lambda
from .data_processing import (
    CategorySet,
    MixtureSet,
    SamplingResult,
    mix_samples,
    sample_reference_matrix,
    split_samples,
)
from .errors import ConfigurationError, NumericalError
from .estimation import estimate
from .logging_utils import get_logger
from .loss import column_correlations
from .optimization import OptimizerStatus, fista

logger = get_logger(__name__)


# =============================================================================
# Configuration and model
# =============================================================================

@dataclass
class TrainingConfig:
    """Hyperparameters of one training run."""
    # sampler / mixer
    percentage: float = DEFAULT_SAMPLING_PERCENTAGE
    train_fraction: float = DEFAULT_TRAIN_FRACTION
    n_train_mixtures: int = DEFAULT_N_TRAIN_MIXTURES
    n_test_mixtures: int = DEFAULT_N_TEST_MIXTURES
    n_per_mixture: int = DEFAULT_N_PER_MIXTURE
    count_total: Optional[float] = DEFAULT_COUNT_TOTAL
    # lambda selection; a fixed ``lam`` skips cross-validation
    lam: Optional[float] = None
    lambda_seq: Optional[Sequence[float]] = None
    n_lambda: int = DEFAULT_N_LAMBDA
    lambda_ratio: float = DEFAULT_LAMBDA_RATIO
    n_folds: int = DEFAULT_N_FOLDS
    warm_start: bool = True
    # optimizer
    maxit: int = DEFAULT_MAXIT
    tol: float = DEFAULT_TOLERANCE
    # relative to the mean diagonal of X^T X
    ridge: float = DEFAULT_TRAINING_RIDGE
    positive: bool = False
    keep_history: bool = False
    # execution
    seed: Optional[int] = None
    n_jobs: int = 1


@dataclass(frozen=True)
class DeconvolutionModel:
    """A trained weighting vector together with the reference it belongs to."""
    weights: pd.Series  # indexed by feature
    lambda_: float
    reference: pd.DataFrame  # features x categories
    ridge: float = 0.0
    loss_trace: np.ndarray = field(default_factory=lambda: np.empty(0))
    status: OptimizerStatus = OptimizerStatus.CONVERGED
    n_iter: int = 0
    weight_trace: Optional[pd.DataFrame] = None  # iterations x features
    cv: Optional[CVResult] = None

    @classmethod
    def untrained(cls, reference: pd.DataFrame, ridge: float = 0.0) -> "DeconvolutionModel":
        """Baseline model with g = 1 for every feature."""
        weights = pd.Series(1.0, index=reference.index, name="weight")
        return cls(weights=weights, lambda_=0.0, reference=reference, ridge=ridge)

    @property
    def features(self) -> pd.Index:
        return self.weights.index

    @property
    def categories(self) -> pd.Index:
        return self.reference.columns

    @property
    def n_nonzero(self) -> int:
        return int(np.count_nonzero(self.weights.to_numpy()))

    def estimate(self, mixtures, nonneg: bool = False) -> pd.DataFrame:
        """Estimate compositions (categories x mixtures) of new mixtures."""
        if isinstance(mixtures, MixtureSet):
            mixtures = mixtures.mixtures
        return estimate(self.reference, self, mixtures, nonneg=nonneg, ridge=self.ridge)


def training_ridge(X: np.ndarray, relative: float) -> float:
    """Absolute ridge: ``relative`` times the mean diagonal of X^T X."""
    if relative < 0:
        raise ConfigurationError(f"ridge must be non-negative, got {relative}")
    if relative == 0:
        return 0.0
    return relative * float(np.mean(np.sum(X ** 2, axis=0)))


def _aligned_arrays(reference: pd.DataFrame, mixtures: MixtureSet):
    """Return X, Y, C as arrays in the row order of the reference matrix."""
    features = reference.index
    missing = features.difference(mixtures.mixtures.index)
    if len(missing):
        raise ConfigurationError(
            f"Mixtures lack {len(missing)} reference features, e.g. {missing[:5].tolist()}"
        )
    categories = reference.columns
    if set(categories) != set(mixtures.quantities.index):
        raise ConfigurationError(
            f"Reference categories {categories.tolist()} do not match mixture "
            f"categories {mixtures.quantities.index.tolist()}"
        )
    X = reference.to_numpy(dtype=np.float64)
    Y = mixtures.mixtures.reindex(features).to_numpy(dtype=np.float64)
    C = mixtures.quantities.reindex(categories).to_numpy(dtype=np.float64)
    return X, Y, C


def train_deconvolution_model(
    reference: pd.DataFrame,
    mixtures: MixtureSet,
    config: Optional[TrainingConfig] = None,
    g0=None,
    rng=None,
    verbose: bool = True,
    **overrides,
) -> DeconvolutionModel:
    """
    Learn the weighting vector g on a set of training mixtures.

    Args:
        reference: Reference matrix X (features x categories)
        mixtures: Training mixtures with known compositions
        config: Hyperparameters (defaults if None)
        g0: Starting vector, Series indexed by feature or array (default: ones)
        rng: Seed or Generator for the fold assignment (default: config.seed)
        verbose: Print progress information
        **overrides: TrainingConfig fields to override

    Returns:
        Trained DeconvolutionModel
    """
    config = replace(config or TrainingConfig(), **overrides)
    X, Y, C = _aligned_arrays(reference, mixtures)
    ridge = training_ridge(X, config.ridge)

    if g0 is None:
        start = np.ones(X.shape[0])
    elif isinstance(g0, pd.Series):
        start = g0.reindex(reference.index).to_numpy(dtype=np.float64)
        if np.any(np.isnan(start)):
            raise ConfigurationError("Start vector lacks some reference features")
    else:
        start = np.asarray(g0, dtype=np.float64).ravel()

    optimizer_kwargs = dict(maxit=config.maxit, tol=config.tol, positive=config.positive)
    cv = None
    if config.lam is not None:
        if verbose:
            print(f"  Training with fixed lambda={config.lam:.4g}...")
        try:
            result = fista(X, Y, C, lam=config.lam, g0=start, ridge=ridge,
                           keep_history=config.keep_history, **optimizer_kwargs)
        except NumericalError as exc:
            raise NumericalError(f"lambda={config.lam:.6g}, full training set: {exc}") from exc
    else:
        cv = cv_lambda(
            X, Y, C,
            lambda_seq=config.lambda_seq,
            n_folds=config.n_folds,
            g0=start,
            warm_start=config.warm_start,
            n_lambda=config.n_lambda,
            lambda_ratio=config.lambda_ratio,
            ridge=ridge,
            rng=config.seed if rng is None else rng,
            n_jobs=config.n_jobs,
            keep_history=config.keep_history,
            verbose=verbose,
            **optimizer_kwargs,
        )
        result = cv.final

    if result.status is OptimizerStatus.MAX_ITERATIONS:
        logger.warning(
            "Optimizer reached maxit=%d without converging; returning the last iterate",
            config.maxit,
        )

    weight_trace = None
    if result.g_trace is not None:
        weight_trace = pd.DataFrame(result.g_trace, columns=reference.index)
        weight_trace.index.name = "iteration"

    return DeconvolutionModel(
        weights=pd.Series(result.g, index=reference.index, name="weight"),
        lambda_=result.lam,
        reference=reference,
        ridge=ridge,
        loss_trace=result.loss_trace,
        status=result.status,
        n_iter=result.n_iter,
        weight_trace=weight_trace,
        cv=cv,
    )


# =============================================================================
# Evaluation
# =============================================================================

@dataclass(frozen=True)
class Evaluation:
    """Agreement between true and estimated compositions."""
    estimates: pd.DataFrame  # categories x mixtures
    per_sample: pd.Series  # Pearson across categories, per mixture
    per_category: pd.DataFrame  # Pearson / Spearman across mixtures
    mean_correlation: float
    loss: float  # negative sum of per-sample correlations


def evaluate_model(
    model: DeconvolutionModel,
    mixtures: MixtureSet,
    nonneg: bool = False,
) -> Evaluation:
    """
    Compare a model's estimates with the known compositions of mixtures.

    Args:
        model: Trained (or baseline) model
        mixtures: Mixtures with ground-truth quantities
        nonneg: Use the non-negative estimator

    Returns:
        Evaluation with per-sample and per-category correlations
    """
    estimates = model.estimate(mixtures.mixtures, nonneg=nonneg)
    truth = mixtures.quantities.reindex(estimates.index)

    per_sample = pd.Series(
        column_correlations(truth.to_numpy(), estimates.to_numpy()),
        index=estimates.columns,
        name="correlation",
    )
    per_category = pd.DataFrame({
        "pearson": estimates.T.corrwith(truth.T, method="pearson"),
        "spearman": estimates.T.corrwith(truth.T, method="spearman"),
    })
    return Evaluation(
        estimates=estimates,
        per_sample=per_sample,
        per_category=per_category,
        mean_correlation=float(per_sample.mean()),
        loss=-float(per_sample.sum()),
    )


# =============================================================================
# Main Pipeline
# =============================================================================

@dataclass(frozen=True)
class TrainingRun:
    """Everything produced by ``run_training``."""
    sampling: SamplingResult
    train_mixtures: MixtureSet
    test_mixtures: MixtureSet
    model: DeconvolutionModel
    evaluation: Evaluation
    baseline: Evaluation


def run_training(
    expression: pd.DataFrame,
    labels,
    categories,
    config: Optional[TrainingConfig] = None,
    verbose: bool = True,
) -> TrainingRun:
    """
    Run the complete training pipeline on a labeled expression matrix.

    Args:
        expression: Expression matrix (features x samples)
        labels: Sample id -> category label
        categories: Allowed categories (ordered) or a CategorySet
        config: Hyperparameters (defaults if None)
        verbose: Print progress information

    Returns:
        TrainingRun with the reference, mixtures, model and evaluations
    """
    config = config or TrainingConfig()
    category_set = CategorySet.coerce(categories)
    rng = np.random.default_rng(config.seed)

    if verbose:
        print("=== Deconvolution Training Pipeline ===\n")
        print(f"  Expression matrix: {expression.shape[0]} features x "
              f"{expression.shape[1]} samples")
        print(f"  Categories: {', '.join(category_set)}")

    # Reference matrix
    if verbose:
        print("\nSampling reference matrix...")
    sampling = sample_reference_matrix(
        expression, labels, category_set,
        percentage=config.percentage, rng=rng, count_total=config.count_total,
    )
    if verbose:
        for category in category_set:
            print(f"  {category}: {len(sampling.used_by_category[category])} samples")
        print(f"  Remaining for mixtures: {len(sampling.remaining_samples)} samples")

    # Mixtures
    if verbose:
        print("\nMixing training and test samples...")
    train_pool, test_pool = split_samples(
        sampling.remaining_samples, config.train_fraction, rng=rng
    )
    train_mixtures = mix_samples(
        expression, labels, category_set,
        n_samples=config.n_train_mixtures, n_per_mixture=config.n_per_mixture,
        rng=rng, pool=train_pool, count_total=config.count_total, prefix="train",
    )
    test_mixtures = mix_samples(
        expression, labels, category_set,
        n_samples=config.n_test_mixtures, n_per_mixture=config.n_per_mixture,
        rng=rng, pool=test_pool, count_total=config.count_total, prefix="test",
    )
    if verbose:
        print(f"  Training mixtures: {train_mixtures.n_mixtures} "
              f"(pool of {len(train_pool)} samples)")
        print(f"  Test mixtures: {test_mixtures.n_mixtures} "
              f"(pool of {len(test_pool)} samples)")

    # Model
    if verbose:
        print("\nTraining weighting vector...")
    model = train_deconvolution_model(
        sampling.reference, train_mixtures, config, rng=rng, verbose=verbose
    )

    # Evaluation
    evaluation = evaluate_model(model, test_mixtures)
    baseline = evaluate_model(
        DeconvolutionModel.untrained(sampling.reference, ridge=model.ridge), test_mixtures
    )
    if verbose:
        print("\nEvaluating on test mixtures...")
        print(f"  Untrained (g = 1) mean correlation: {baseline.mean_correlation:.4f}")
        print(f"  Trained mean correlation: {evaluation.mean_correlation:.4f}")
        print(f"  Non-zero weights: {model.n_nonzero} of {len(model.weights)}")
        print("\n=== Training Complete ===\n")

    return TrainingRun(
        sampling=sampling,
        train_mixtures=train_mixtures,
        test_mixtures=test_mixtures,
        model=model,
        evaluation=evaluation,
        baseline=baseline,
    )
