import numpy as np
import pandas as pd
import pytest

CATEGORIES = ["alpha", "beta", "gamma"]


def make_expression(
    n_per_category=30,
    n_informative=10,
    n_noisy=40,
    n_other=4,
    informative_noise=0.05,
    noisy_sigma=1.0,
    seed=0,
):
    """
    Labeled expression matrix with a few marker features and many noisy ones.

    Marker features separate the categories and vary little between samples
    of a category; noisy features have the same mean in every category but
    large sample-to-sample variation.
    """
    rng = np.random.default_rng(seed)
    n_features = n_informative + n_noisy
    features = [f"feature_{i}" for i in range(n_features)]
    blocks = np.array_split(np.arange(n_informative), len(CATEGORIES))

    columns = {}
    labels = {}
    for k, category in enumerate(CATEGORIES):
        profile = np.ones(n_informative)
        profile[blocks[k]] = 20.0
        for s in range(n_per_category):
            marker = profile * rng.lognormal(0.0, informative_noise, n_informative)
            noisy = 2.0 * rng.lognormal(0.0, noisy_sigma, n_noisy)
            sample_id = f"{category}_{s}"
            columns[sample_id] = np.concatenate([marker, noisy])
            labels[sample_id] = category
    for s in range(n_other):
        sample_id = f"other_{s}"
        columns[sample_id] = rng.uniform(0.5, 2.0, n_features)
        labels[sample_id] = "platelet"

    expression = pd.DataFrame(columns, index=features)
    return expression, pd.Series(labels)


def make_noiseless_expression(n_features=12, n_per_category=6, seed=1):
    """Every sample of a category has exactly the same profile."""
    rng = np.random.default_rng(seed)
    profiles = rng.uniform(0.5, 5.0, size=(n_features, len(CATEGORIES)))
    columns = {}
    labels = {}
    for k, category in enumerate(CATEGORIES):
        for s in range(n_per_category):
            sample_id = f"{category}_{s}"
            columns[sample_id] = profiles[:, k]
            labels[sample_id] = category
    features = [f"feature_{i}" for i in range(n_features)]
    return pd.DataFrame(columns, index=features), pd.Series(labels)


def make_problem(n_features=15, n_categories=3, n_mixtures=12, noise=0.3, seed=2):
    """Small (X, Y, C) deconvolution problem with noisy mixtures."""
    rng = np.random.default_rng(seed)
    X = rng.uniform(0.5, 3.0, size=(n_features, n_categories))
    C = rng.dirichlet(np.ones(n_categories), size=n_mixtures).T
    Y = X @ C + noise * rng.standard_normal((n_features, n_mixtures))
    return X, Y, C


@pytest.fixture
def categories():
    return list(CATEGORIES)


@pytest.fixture
def labeled_expression():
    return make_expression()


@pytest.fixture
def noiseless_expression():
    return make_noiseless_expression()


@pytest.fixture
def problem():
    return make_problem()
