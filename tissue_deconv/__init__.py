"""
Weighted Deconvolution Training Engine

This package learns a per-feature weighting vector g so that a weighted
linear deconvolution model best recovers known cellular compositions from
mixed expression profiles.

Modules:
--------
constants
    Default hyperparameters and numeric tolerances

data_processing
    Closed category sets, count normalization, stratified reference sampling
    and synthetic mixtures with known compositions

estimation
    Weighted least-squares composition estimates (unconstrained and
    non-negative)

loss
    Per-mixture correlation loss and its gradient with respect to g

optimization
    Accelerated proximal gradient (FISTA) with restarts for the L1 penalty

cross_validation
    Lambda grids, fold partitioning and cross-validated lambda selection

training
    Training configuration, the trained model, evaluation and the full
    training pipeline

io_utils
    Thin file I/O for the command-line pipeline

Usage:
------
Run the complete pipeline:
    $ python main.py --expression expr.tsv --labels labels.tsv --categories "T,B,NK"

Or use the engine programmatically:
    >>> run = run_training(expression, labels, ["T", "B", "NK"])
    >>> estimate(run.model.reference, run.model, new_mixtures)
"""

__version__ = "1.0.0"

# Expose main functions for programmatic use
from .errors import ConfigurationError, NumericalError
from .data_processing import (
    CategorySet,
    MixtureSet,
    SamplingResult,
    mix_samples,
    normalize_to_count,
    sample_reference_matrix,
    split_samples,
)
from .estimation import estimate
from .loss import column_correlations, evaluate_loss, loss_and_gradient
from .optimization import OptimizerResult, OptimizerStatus, fista
from .cross_validation import CVResult, cv_lambda, generate_lambda_sequence, make_folds
from .training import (
    DeconvolutionModel,
    TrainingConfig,
    evaluate_model,
    run_training,
    train_deconvolution_model,
)
