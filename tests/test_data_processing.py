import logging
import math

import numpy as np
import pandas as pd
import pytest

from tissue_deconv.data_processing import (
    CategorySet,
    mix_samples,
    normalize_to_count,
    sample_reference_matrix,
    split_samples,
)
from tissue_deconv.errors import ConfigurationError
from tissue_deconv.estimation import estimate


# ---------------------------------------------------------------------------
# CategorySet
# ---------------------------------------------------------------------------

def test_category_set_maps_unlisted_labels_to_unknown():
    category_set = CategorySet(["T", "B"])
    labels = pd.Series({"s1": "T", "s2": "NK", "s3": "B", "s4": None})

    assigned = category_set.assign(labels)

    assert assigned.tolist() == ["T", "unknown", "B", "unknown"]
    assert list(category_set) == ["T", "B"]
    assert category_set.index("B") == 1
    assert "NK" not in category_set


@pytest.mark.parametrize("names", [[], ["T", "T"], ["T", "unknown"]])
def test_category_set_rejects_bad_allow_list(names):
    with pytest.raises(ConfigurationError):
        CategorySet(names)


def test_category_set_accepts_mapping_labels():
    assigned = CategorySet(["T"]).assign({"a": "T", "b": "B"})
    assert assigned.to_dict() == {"a": "T", "b": "unknown"}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_normalize_to_count_defaults_to_feature_count():
    df = pd.DataFrame({"a": [1.0, 3.0, 0.0], "b": [2.0, 2.0, 2.0]}, index=["x", "y", "z"])

    normalized = normalize_to_count(df)

    assert isinstance(normalized, pd.DataFrame)
    np.testing.assert_allclose(normalized.sum(axis=0), [3.0, 3.0])
    np.testing.assert_allclose(normalized["a"], [0.75, 2.25, 0.0])


def test_normalize_to_count_custom_total_on_array():
    values = np.array([[1.0, 4.0], [1.0, 0.0]])
    normalized = normalize_to_count(values, total=100.0)
    assert isinstance(normalized, np.ndarray)
    np.testing.assert_allclose(normalized.sum(axis=0), [100.0, 100.0])


def test_normalize_to_count_rejects_negative_and_empty_columns():
    with pytest.raises(ConfigurationError):
        normalize_to_count(np.array([[1.0, -1.0], [1.0, 2.0]]))
    with pytest.raises(ConfigurationError, match="all-zero"):
        normalize_to_count(pd.DataFrame({"a": [1.0, 1.0], "b": [0.0, 0.0]}))


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------

def test_sampler_draws_ceil_percentage_per_category(labeled_expression, categories):
    expression, labels = labeled_expression

    result = sample_reference_matrix(expression, labels, categories, percentage=0.25, rng=0)

    for category in categories:
        n_available = int((labels == category).sum())
        assert len(result.used_by_category[category]) == math.ceil(0.25 * n_available)
        assert all(labels[s] == category for s in result.used_by_category[category])


def test_sampler_used_and_remaining_are_disjoint(labeled_expression, categories):
    expression, labels = labeled_expression

    result = sample_reference_matrix(expression, labels, categories, percentage=0.3, rng=1)

    used = set(result.used_samples)
    remaining = set(result.remaining_samples)
    eligible = set(labels[labels.isin(categories)].index)
    assert not used & remaining
    assert used | remaining == eligible
    assert not any(s.startswith("other_") for s in used | remaining)


def test_sampler_reference_is_normalized(labeled_expression, categories):
    expression, labels = labeled_expression

    reference = sample_reference_matrix(expression, labels, categories, rng=2).reference

    assert list(reference.columns) == categories
    assert list(reference.index) == list(expression.index)
    np.testing.assert_allclose(reference.sum(axis=0), expression.shape[0])


def test_sampler_is_reproducible_with_seed(labeled_expression, categories):
    expression, labels = labeled_expression
    first = sample_reference_matrix(expression, labels, categories, rng=7)
    second = sample_reference_matrix(expression, labels, categories, rng=7)
    assert first.used_samples == second.used_samples
    pd.testing.assert_frame_equal(first.reference, second.reference)


def test_sampler_full_percentage_consumes_everything(noiseless_expression, categories):
    expression, labels = noiseless_expression
    result = sample_reference_matrix(expression, labels, categories, percentage=1.0, rng=0)
    assert result.remaining_samples == ()
    assert len(result.used_samples) == expression.shape[1]


def test_sampler_rejects_empty_category(labeled_expression):
    expression, labels = labeled_expression
    with pytest.raises(ConfigurationError, match="delta"):
        sample_reference_matrix(expression, labels, ["alpha", "delta"], rng=0)


@pytest.mark.parametrize("percentage", [0.0, -0.1, 1.5])
def test_sampler_rejects_bad_percentage(labeled_expression, categories, percentage):
    expression, labels = labeled_expression
    with pytest.raises(ConfigurationError):
        sample_reference_matrix(expression, labels, categories, percentage=percentage)


def test_sampler_fails_on_all_zero_sample_only_when_drawn(labeled_expression, categories):
    expression, labels = labeled_expression
    expression = expression.assign(alpha_zero=0.0)
    labels = pd.concat([labels, pd.Series({"alpha_zero": "alpha"})])

    n_built = 0
    for seed in range(20):
        try:
            result = sample_reference_matrix(expression, labels, categories,
                                             percentage=0.1, rng=seed)
        except ConfigurationError as exc:
            assert "alpha_zero" in str(exc)
            continue
        assert "alpha_zero" not in result.used_samples
        assert "alpha_zero" in result.remaining_samples
        n_built += 1
    assert n_built > 0


# ---------------------------------------------------------------------------
# Split
# ---------------------------------------------------------------------------

def test_split_samples_is_a_partition():
    samples = [f"s{i}" for i in range(11)]

    train, test = split_samples(samples, fraction=0.6, rng=3)

    assert len(train) == round(0.6 * 11)
    assert sorted(train + test) == sorted(samples)
    assert not set(train) & set(test)
    assert train == [s for s in samples if s in set(train)]


@pytest.mark.parametrize("fraction", [0.0, 1.0, 0.01])
def test_split_samples_rejects_empty_pools(fraction):
    with pytest.raises(ConfigurationError):
        split_samples(["a", "b", "c"], fraction=fraction)


# ---------------------------------------------------------------------------
# Mixer
# ---------------------------------------------------------------------------

def test_mixer_quantities_are_fractions_of_sources(labeled_expression, categories):
    expression, labels = labeled_expression

    mixtures = mix_samples(expression, labels, categories, n_samples=25, n_per_mixture=4, rng=0)

    quantities = mixtures.quantities
    assert quantities.shape == (3, 25)
    assert (quantities.to_numpy() >= 0).all()
    np.testing.assert_allclose(quantities.sum(axis=0), 1.0)
    np.testing.assert_allclose(quantities.to_numpy() * 4, np.round(quantities.to_numpy() * 4))

    for mixture_id, sources in mixtures.sources.items():
        assert len(set(sources)) == 4
        counts = pd.Series([labels[s] for s in sources]).value_counts()
        for category in categories:
            assert quantities.loc[category, mixture_id] == counts.get(category, 0) / 4


def test_mixer_output_is_normalized(labeled_expression, categories):
    expression, labels = labeled_expression
    mixtures = mix_samples(expression, labels, categories, n_samples=5, n_per_mixture=3,
                           rng=1, prefix="train")
    assert list(mixtures.mixtures.columns) == [f"train_{j}" for j in range(1, 6)]
    np.testing.assert_allclose(mixtures.mixtures.sum(axis=0), expression.shape[0])


def test_mixer_draws_only_from_pool(labeled_expression, categories):
    expression, labels = labeled_expression
    pool = ["alpha_0", "alpha_1", "beta_0", "gamma_0", "other_0"]

    mixtures = mix_samples(expression, labels, categories, n_samples=10, n_per_mixture=2,
                           rng=2, pool=pool)

    used = {s for sources in mixtures.sources.values() for s in sources}
    assert used <= set(pool) - {"other_0"}


def test_mixer_logs_excluded_samples(labeled_expression, categories, caplog):
    expression, labels = labeled_expression
    with caplog.at_level(logging.INFO, logger="tissue_deconv"):
        mix_samples(expression, labels, categories, n_samples=2, n_per_mixture=2, rng=0)
    assert "Excluding 4 samples" in caplog.text


def test_mixer_rejects_bad_counts(labeled_expression, categories):
    expression, labels = labeled_expression
    with pytest.raises(ConfigurationError):
        mix_samples(expression, labels, categories, n_samples=0)
    with pytest.raises(ConfigurationError):
        mix_samples(expression, labels, categories, n_samples=3, n_per_mixture=0)
    with pytest.raises(ConfigurationError, match="exceeds"):
        mix_samples(expression, labels, categories, n_samples=3, n_per_mixture=3,
                    pool=["alpha_0", "beta_0"])


def test_mixer_rejects_unknown_pool_ids(labeled_expression, categories):
    expression, labels = labeled_expression
    with pytest.raises(ConfigurationError, match="not in the expression matrix"):
        mix_samples(expression, labels, categories, n_samples=1, n_per_mixture=1,
                    pool=["alpha_0", "missing"])


def test_mixture_subset_keeps_order(labeled_expression, categories):
    expression, labels = labeled_expression
    mixtures = mix_samples(expression, labels, categories, n_samples=4, n_per_mixture=2, rng=0)

    subset = mixtures.subset(["mixture_3", "mixture_1"])

    assert subset.n_mixtures == 2
    assert list(subset.quantities.columns) == ["mixture_3", "mixture_1"]
    assert set(subset.sources) == {"mixture_1", "mixture_3"}
    assert subset.categories == categories


# ---------------------------------------------------------------------------
# Sampler -> mixer -> estimator
# ---------------------------------------------------------------------------

def test_noiseless_round_trip_recovers_quantities(noiseless_expression, categories):
    expression, labels = noiseless_expression
    sampling = sample_reference_matrix(expression, labels, categories, percentage=0.5, rng=0)
    mixtures = mix_samples(expression, labels, categories, n_samples=8, n_per_mixture=5,
                           rng=1, pool=sampling.remaining_samples)

    g = np.ones(expression.shape[0])
    estimates = estimate(sampling.reference, g, mixtures.mixtures)

    np.testing.assert_allclose(
        estimates.to_numpy(), mixtures.quantities.to_numpy(), atol=1e-8
    )
