"""
Constants Module

This module contains the default hyperparameters and numeric tolerances used
across the deconvolution training engine.
"""

# Label given to samples whose category is outside the allow-list
UNKNOWN_CATEGORY = "unknown"

# Column total used by count normalization when none is given.
# None means "number of features", so a normalized profile averages to 1.
DEFAULT_COUNT_TOTAL = None

# Sampler / mixer defaults
DEFAULT_SAMPLING_PERCENTAGE = 0.1
DEFAULT_TRAIN_FRACTION = 0.5
DEFAULT_N_TRAIN_MIXTURES = 200
DEFAULT_N_TEST_MIXTURES = 100
DEFAULT_N_PER_MIXTURE = 10

# Optimizer defaults
DEFAULT_MAXIT = 200
DEFAULT_TOLERANCE = 1e-6
DEFAULT_MAX_BACKTRACKS = 60
DEFAULT_BACKTRACK_FACTOR = 0.5
# Sufficient-decrease constant of the backtracking line search
DEFAULT_SUFFICIENT_DECREASE = 1e-4
# Relative increase of the objective tolerated before momentum is reset
DEFAULT_RESTART_TOLERANCE = 1e-12
# Upper bound on the automatically chosen first step
MAX_INITIAL_STEP = 1e6

# Ridge added to the weighted normal matrix during training, relative to the
# mean diagonal of X^T X. Keeps the solve defined when g loses support.
DEFAULT_TRAINING_RIDGE = 1e-8

# Cross-validation defaults
DEFAULT_N_FOLDS = 5
DEFAULT_N_LAMBDA = 10
DEFAULT_LAMBDA_RATIO = 1e-4

# Variance below which a composition column counts as constant
CORRELATION_EPS = 1e-12
# Smallest gradient magnitude used when choosing a step
GRADIENT_EPS = 1e-12
# Reciprocal condition number below which the weighted normal matrix is singular
SINGULAR_RCOND = 1e-12
