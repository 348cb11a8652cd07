"""
Exceptions raised by the deconvolution engine.
"""

import numpy as np


class ConfigurationError(ValueError):
    """Invalid hyperparameters or inputs; raised before any computation."""


class NumericalError(np.linalg.LinAlgError):
    """The weighted normal-equations matrix is singular to working precision."""
