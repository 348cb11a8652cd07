"""
Data Processing Module

This module builds the inputs of the training engine from a labeled
expression matrix. It includes functions for:
- Restricting sample labels to a closed set of allowed categories
- Count-normalizing expression profiles
- Building a reference matrix by category-stratified sampling
- Splitting the remaining samples into train/test pools
- Synthesizing mixtures with known ground-truth compositions
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .constants import (
    DEFAULT_COUNT_TOTAL,
    DEFAULT_N_PER_MIXTURE,
    DEFAULT_N_TRAIN_MIXTURES,
    DEFAULT_SAMPLING_PERCENTAGE,
    DEFAULT_TRAIN_FRACTION,
    UNKNOWN_CATEGORY,
)
from .errors import ConfigurationError
from .logging_utils import get_logger

logger = get_logger(__name__)

RandomState = Union[None, int, np.random.Generator]


# =============================================================================
# Categories
# =============================================================================

class CategorySet:
    """
    Ordered, closed set of allowed categories (cell types).

    Labels outside the allow-list are mapped to an explicit ``unknown``
    variant instead of being dropped, so every sample always carries a
    category and downstream code can exclude the unknown ones on purpose.
    """

    def __init__(self, names: Iterable[str], unknown: str = UNKNOWN_CATEGORY):
        names = tuple(str(name) for name in names)
        if not names:
            raise ConfigurationError("Category allow-list is empty")
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Category allow-list has duplicates: {list(names)}")
        if unknown in names:
            raise ConfigurationError(
                f"Category allow-list may not contain the unknown label '{unknown}'"
            )
        self.names = names
        self.unknown = unknown

    @classmethod
    def coerce(cls, categories: Union["CategorySet", Iterable[str]]) -> "CategorySet":
        if isinstance(categories, cls):
            return categories
        return cls(categories)

    def __iter__(self):
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name) -> bool:
        return name in self.names

    def __repr__(self) -> str:
        return f"CategorySet({list(self.names)!r})"

    def index(self, name: str) -> int:
        return self.names.index(name)

    def assign(self, labels: Union[pd.Series, Mapping[str, str]]) -> pd.Series:
        """
        Map a sample -> label table onto this category set.

        Args:
            labels: Series or mapping from sample id to category label

        Returns:
            Series with the same index where every label outside the
            allow-list (including missing labels) is replaced by ``unknown``
        """
        labels = as_label_series(labels)
        return labels.where(labels.isin(self.names), self.unknown)


def as_label_series(labels: Union[pd.Series, Mapping[str, str]]) -> pd.Series:
    """Return the label map as an object-dtype Series indexed by sample id."""
    if isinstance(labels, pd.Series):
        series = labels
    else:
        series = pd.Series(dict(labels), dtype=object)
    if not series.index.is_unique:
        raise ConfigurationError("Label map has duplicate sample identifiers")
    return series.astype(object)


# =============================================================================
# Normalization
# =============================================================================

def normalize_to_count(expression, total: Optional[float] = DEFAULT_COUNT_TOTAL):
    """
    Scale every column to the same total count.

    Args:
        expression: Non-negative matrix (features x samples), DataFrame or ndarray
        total: Target column sum; defaults to the number of features

    Returns:
        Matrix of the same type and shape with column sums equal to ``total``
    """
    values = np.asarray(expression, dtype=np.float64)
    if values.ndim != 2:
        raise ConfigurationError(f"Expected a 2-D matrix, got shape {values.shape}")
    if np.any(values < 0):
        raise ConfigurationError("Expression values must be non-negative")

    if total is None:
        total = values.shape[0]
    sums = values.sum(axis=0)
    empty = np.flatnonzero(sums <= 0)
    if empty.size:
        if isinstance(expression, pd.DataFrame):
            names = expression.columns[empty].tolist()
        else:
            names = empty.tolist()
        raise ConfigurationError(f"Cannot count-normalize all-zero columns: {names}")

    scaled = values / sums * total
    if isinstance(expression, pd.DataFrame):
        return pd.DataFrame(scaled, index=expression.index, columns=expression.columns)
    return scaled


# =============================================================================
# Sample pools
# =============================================================================

def _category_members(
    expression: pd.DataFrame,
    labels,
    category_set: CategorySet,
    pool: Optional[Sequence[str]] = None,
) -> Tuple[Dict[str, List[str]], List[str]]:
    """
    Group the samples of a pool by allowed category.

    Returns:
        Tuple of (category -> sample ids in pool order, excluded sample ids)
    """
    if not expression.columns.is_unique:
        raise ConfigurationError("Expression matrix has duplicate sample identifiers")

    if pool is None:
        columns = expression.columns
    else:
        columns = pd.Index(pool)
        if not columns.is_unique:
            raise ConfigurationError("Sample pool has duplicate identifiers")
        missing = columns.difference(expression.columns)
        if len(missing):
            raise ConfigurationError(
                f"Sample pool contains {len(missing)} ids not in the expression matrix, "
                f"e.g. {missing[:5].tolist()}"
            )

    assigned = category_set.assign(labels).reindex(columns).fillna(category_set.unknown)
    members = {
        category: columns[(assigned == category).to_numpy()].tolist()
        for category in category_set
    }
    excluded = columns[(assigned == category_set.unknown).to_numpy()].tolist()
    return members, excluded


def _n_to_draw(percentage: float, n_available: int) -> int:
    # Guard against 0.3 * 10 = 3.0000000000000004 rounding up to 4
    return int(math.ceil(percentage * n_available - 1e-9))


@dataclass(frozen=True)
class SamplingResult:
    """Reference matrix plus the bookkeeping of consumed samples."""
    reference: pd.DataFrame  # features x categories
    used_samples: Tuple[str, ...]
    remaining_samples: Tuple[str, ...]
    used_by_category: Dict[str, Tuple[str, ...]]


def sample_reference_matrix(
    expression: pd.DataFrame,
    labels,
    categories,
    percentage: float = DEFAULT_SAMPLING_PERCENTAGE,
    rng: RandomState = None,
    count_total: Optional[float] = DEFAULT_COUNT_TOTAL,
) -> SamplingResult:
    """
    Build a reference matrix by category-stratified random sampling.

    For every allowed category k with n_k labeled samples, ceil(p * n_k)
    samples are drawn without replacement, their count-normalized profiles
    averaged and the average normalized again. Only drawn samples are
    normalized, so an all-zero sample raises only if it is drawn.

    Args:
        expression: Expression matrix (features x samples)
        labels: Sample id -> category label
        categories: Allowed categories (ordered) or a CategorySet
        percentage: Fraction p in (0, 1] of each category to consume
        rng: Seed or numpy Generator
        count_total: Column total for normalization (default: n_features)

    Returns:
        SamplingResult with the reference matrix (features x categories),
        the consumed sample ids and the remaining eligible sample ids
    """
    if not 0 < percentage <= 1:
        raise ConfigurationError(f"Sampling percentage must be in (0, 1], got {percentage}")

    category_set = CategorySet.coerce(categories)
    rng = np.random.default_rng(rng)
    members, _ = _category_members(expression, labels, category_set)
    profiles = {}
    used_by_category = {}
    for category in category_set:
        samples = members[category]
        if not samples:
            raise ConfigurationError(f"Category '{category}' has no samples")
        n_draw = _n_to_draw(percentage, len(samples))
        if n_draw < 1:
            raise ConfigurationError(
                f"Percentage {percentage} selects no samples of '{category}' "
                f"({len(samples)} available)"
            )
        chosen = rng.choice(np.asarray(samples, dtype=object), size=n_draw, replace=False).tolist()
        profiles[category] = normalize_to_count(expression[chosen], count_total).mean(axis=1)
        used_by_category[category] = tuple(chosen)

    reference = pd.DataFrame(profiles, index=expression.index, columns=list(category_set))
    reference = normalize_to_count(reference, count_total)

    used = [s for category in category_set for s in used_by_category[category]]
    used_set = set(used)
    remaining = [
        s for category in category_set for s in members[category] if s not in used_set
    ]

    logger.debug(
        "Sampled reference from %d samples, %d remain", len(used), len(remaining)
    )
    return SamplingResult(
        reference=reference,
        used_samples=tuple(used),
        remaining_samples=tuple(remaining),
        used_by_category=used_by_category,
    )


def split_samples(
    samples: Sequence[str],
    fraction: float = DEFAULT_TRAIN_FRACTION,
    rng: RandomState = None,
) -> Tuple[List[str], List[str]]:
    """
    Randomly split a pool of sample ids into disjoint train and test pools.

    Args:
        samples: Sample ids (e.g. SamplingResult.remaining_samples)
        fraction: Share of the pool that goes to training
        rng: Seed or numpy Generator

    Returns:
        Tuple of (train ids, test ids), each in the original pool order
    """
    if not 0 < fraction < 1:
        raise ConfigurationError(f"Train fraction must be in (0, 1), got {fraction}")
    samples = list(samples)
    n_train = int(round(fraction * len(samples)))
    if n_train < 1 or n_train >= len(samples):
        raise ConfigurationError(
            f"Cannot split {len(samples)} samples with fraction {fraction} "
            "into two non-empty pools"
        )

    rng = np.random.default_rng(rng)
    order = rng.permutation(len(samples))
    train_positions = set(order[:n_train].tolist())
    train = [s for i, s in enumerate(samples) if i in train_positions]
    test = [s for i, s in enumerate(samples) if i not in train_positions]
    return train, test


# =============================================================================
# Mixing
# =============================================================================

@dataclass(frozen=True)
class MixtureSet:
    """Synthetic mixtures with their ground-truth compositions."""
    mixtures: pd.DataFrame  # features x mixtures
    quantities: pd.DataFrame  # categories x mixtures, columns sum to 1
    sources: Dict[str, Tuple[str, ...]]

    @property
    def n_mixtures(self) -> int:
        return self.mixtures.shape[1]

    @property
    def categories(self) -> List[str]:
        return self.quantities.index.tolist()

    def subset(self, mixture_ids: Sequence[str]) -> "MixtureSet":
        """Return the mixtures with the given ids, in that order."""
        mixture_ids = list(mixture_ids)
        return MixtureSet(
            mixtures=self.mixtures[mixture_ids],
            quantities=self.quantities[mixture_ids],
            sources={m: self.sources[m] for m in mixture_ids},
        )


def mix_samples(
    expression: pd.DataFrame,
    labels,
    categories,
    n_samples: int = DEFAULT_N_TRAIN_MIXTURES,
    n_per_mixture: int = DEFAULT_N_PER_MIXTURE,
    rng: RandomState = None,
    pool: Optional[Sequence[str]] = None,
    count_total: Optional[float] = DEFAULT_COUNT_TOTAL,
    prefix: str = "mixture",
) -> MixtureSet:
    """
    Synthesize mixtures by summing randomly chosen labeled profiles.

    Each mixture combines ``n_per_mixture`` distinct samples from the pool;
    draws are independent across mixtures. The ground truth of a mixture is
    the fraction of its contributing samples in each allowed category.

    Args:
        expression: Expression matrix (features x samples)
        labels: Sample id -> category label
        categories: Allowed categories (ordered) or a CategorySet
        n_samples: Number of mixtures to synthesize
        n_per_mixture: Number of source samples per mixture
        rng: Seed or numpy Generator
        pool: Sample ids to draw from (default: all columns)
        count_total: Column total for normalization (default: n_features)
        prefix: Prefix of the generated mixture ids

    Returns:
        MixtureSet with count-normalized mixtures and their quantities
    """
    if n_samples < 1:
        raise ConfigurationError(f"n_samples must be positive, got {n_samples}")
    if n_per_mixture < 1:
        raise ConfigurationError(f"n_per_mixture must be positive, got {n_per_mixture}")

    category_set = CategorySet.coerce(categories)
    rng = np.random.default_rng(rng)
    members, excluded = _category_members(expression, labels, category_set, pool)
    if excluded:
        logger.info(
            "Excluding %d samples outside the allowed categories from mixing",
            len(excluded),
        )

    eligible = [s for category in category_set for s in members[category]]
    if n_per_mixture > len(eligible):
        raise ConfigurationError(
            f"n_per_mixture={n_per_mixture} exceeds the {len(eligible)} eligible samples"
        )

    sample_category = np.array(
        [category_set.index(category) for category in category_set for _ in members[category]]
    )

    n_features = expression.shape[0]
    n_categories = len(category_set)
    ids = [f"{prefix}_{j + 1}" for j in range(n_samples)]
    mixtures = np.empty((n_features, n_samples))
    quantities = np.empty((n_categories, n_samples))
    sources = {}

    for j, mixture_id in enumerate(ids):
        picks = rng.choice(len(eligible), size=n_per_mixture, replace=False)
        chosen = [eligible[i] for i in picks]
        mixtures[:, j] = normalize_to_count(expression[chosen], count_total).sum(axis=1)
        counts = np.bincount(sample_category[picks], minlength=n_categories)
        quantities[:, j] = counts / n_per_mixture
        sources[mixture_id] = tuple(chosen)

    mixtures_df = normalize_to_count(
        pd.DataFrame(mixtures, index=expression.index, columns=ids), count_total
    )
    quantities_df = pd.DataFrame(quantities, index=list(category_set), columns=ids)

    return MixtureSet(mixtures=mixtures_df, quantities=quantities_df, sources=sources)
