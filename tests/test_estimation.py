import numpy as np
import pandas as pd
import pytest

from tissue_deconv.errors import ConfigurationError, NumericalError
from tissue_deconv.estimation import estimate, solve_weighted, weighted_normal_matrix
from tissue_deconv.training import DeconvolutionModel


@pytest.fixture
def noiseless():
    rng = np.random.default_rng(0)
    X = rng.uniform(0.5, 3.0, size=(20, 4))
    C = rng.dirichlet(np.ones(4), size=6).T
    return X, X @ C, C


def test_exact_recovery_for_noiseless_mixtures(noiseless):
    X, Y, C = noiseless
    g = np.random.default_rng(1).uniform(0.2, 2.0, size=X.shape[0])

    C_hat = estimate(X, g, Y)

    assert isinstance(C_hat, np.ndarray)
    np.testing.assert_allclose(C_hat, C, atol=1e-10)


def test_zero_weight_features_are_ignored(noiseless):
    X, Y, C = noiseless
    g = np.ones(X.shape[0])
    g[:3] = 0.0
    Y = Y.copy()
    Y[:3] += 100.0

    np.testing.assert_allclose(estimate(X, g, Y), C, atol=1e-10)


def test_negative_weights_act_like_their_magnitude():
    rng = np.random.default_rng(2)
    X = rng.uniform(size=(10, 3))
    Y = rng.uniform(size=(10, 5))
    g = rng.uniform(0.5, 1.5, size=10)
    flipped = g.copy()
    flipped[::2] *= -1

    np.testing.assert_allclose(estimate(X, g, Y), estimate(X, flipped, Y))


def test_single_mixture_vector_returns_vector(noiseless):
    X, Y, C = noiseless
    c_hat = estimate(X, np.ones(X.shape[0]), Y[:, 0])
    assert c_hat.shape == (4,)
    np.testing.assert_allclose(c_hat, C[:, 0], atol=1e-10)


def test_dataframes_are_aligned_on_features(noiseless):
    X, Y, C = noiseless
    features = [f"f{i}" for i in range(X.shape[0])]
    X_df = pd.DataFrame(X, index=features, columns=["a", "b", "c", "d"])
    Y_df = pd.DataFrame(Y, index=features, columns=[f"m{j}" for j in range(Y.shape[1])])
    g = pd.Series(np.linspace(0.5, 1.5, len(features)), index=features)

    shuffled = Y_df.sample(frac=1.0, random_state=0)
    C_hat = estimate(X_df, g.sample(frac=1.0, random_state=1), shuffled)

    assert list(C_hat.index) == ["a", "b", "c", "d"]
    assert list(C_hat.columns) == list(Y_df.columns)
    np.testing.assert_allclose(C_hat.to_numpy(), C, atol=1e-10)


def test_missing_features_raise(noiseless):
    X, Y, _ = noiseless
    features = [f"f{i}" for i in range(X.shape[0])]
    X_df = pd.DataFrame(X, index=features)
    Y_df = pd.DataFrame(Y, index=features).iloc[1:]
    with pytest.raises(ConfigurationError, match="lack"):
        estimate(X_df, np.ones(len(features)), Y_df)

    short = pd.Series(1.0, index=features[:-1])
    with pytest.raises(ConfigurationError, match="Weighting vector lacks"):
        estimate(X_df, short, pd.DataFrame(Y, index=features))


def test_wrong_weight_length_raises(noiseless):
    X, Y, _ = noiseless
    with pytest.raises(ConfigurationError):
        estimate(X, np.ones(X.shape[0] + 1), Y)
    with pytest.raises(ConfigurationError):
        estimate(X, np.ones(X.shape[0]), Y, ridge=-1.0)


def test_nonneg_estimates_are_nonnegative():
    rng = np.random.default_rng(3)
    X = rng.uniform(0.5, 2.0, size=(15, 4))
    Y = rng.standard_normal((15, 8))

    C_hat = estimate(X, np.ones(15), Y, nonneg=True)

    assert (C_hat >= 0).all()
    # the unconstrained solution goes negative on this data
    assert (estimate(X, np.ones(15), Y) < 0).any()


def test_nonneg_matches_unconstrained_on_feasible_data(noiseless):
    X, Y, C = noiseless
    g = np.linspace(0.5, 2.0, X.shape[0])
    np.testing.assert_allclose(estimate(X, g, Y, nonneg=True), C, atol=1e-8)


def test_nonneg_with_tiny_ridge_stays_close_to_truth(noiseless):
    X, Y, C = noiseless
    C_hat = estimate(X, np.ones(X.shape[0]), Y, nonneg=True, ridge=1e-9)
    np.testing.assert_allclose(C_hat, C, atol=1e-6)


def test_ridge_shrinks_both_estimators_alike():
    rng = np.random.default_rng(5)
    X = rng.uniform(0.5, 2.0, size=(12, 3))
    Y = X @ np.full((3, 4), 0.5)
    g = np.ones(12)
    unconstrained = estimate(X, g, Y, ridge=0.1)
    assert (unconstrained > 0).all()
    np.testing.assert_allclose(estimate(X, g, Y, nonneg=True, ridge=0.1), unconstrained,
                               atol=1e-8)


def test_singular_system_raises_with_mixture_ids(noiseless):
    X, Y, _ = noiseless
    g = np.zeros(X.shape[0])
    g[:2] = 1.0  # two features, four categories
    Y_df = pd.DataFrame(Y, columns=[f"mix_{j}" for j in range(Y.shape[1])])

    with pytest.raises(NumericalError, match="mix_0"):
        estimate(X, g, Y_df)
    with pytest.raises(NumericalError):
        estimate(X, g, Y, nonneg=True)


def test_ridge_regularizes_singular_system(noiseless):
    X, Y, _ = noiseless
    g = np.zeros(X.shape[0])
    g[:2] = 1.0
    C_hat = estimate(X, g, Y, ridge=1e-3)
    assert np.all(np.isfinite(C_hat))


def test_numerical_error_is_a_linalg_error():
    assert issubclass(NumericalError, np.linalg.LinAlgError)


def test_weighted_normal_matrix_matches_dense_formula():
    rng = np.random.default_rng(4)
    X = rng.uniform(size=(6, 2))
    w = rng.uniform(size=6)
    expected = X.T @ np.diag(w) @ X + 0.1 * np.eye(2)
    np.testing.assert_allclose(weighted_normal_matrix(X, w, 0.1), expected)

    C_hat, M = solve_weighted(X, X @ np.ones((2, 1)), w)
    np.testing.assert_allclose(C_hat, np.ones((2, 1)))
    np.testing.assert_allclose(M, X.T @ np.diag(w) @ X)


def test_model_input_uses_its_weights(noiseless):
    X, Y, C = noiseless
    features = [f"f{i}" for i in range(X.shape[0])]
    reference = pd.DataFrame(X, index=features, columns=list("abcd"))

    model = DeconvolutionModel.untrained(reference)
    C_hat = estimate(reference, model, pd.DataFrame(Y, index=features))

    np.testing.assert_allclose(C_hat.to_numpy(), C, atol=1e-10)
    pd.testing.assert_frame_equal(model.estimate(pd.DataFrame(Y, index=features)), C_hat)


def test_model_input_defaults_to_its_ridge():
    rng = np.random.default_rng(3)
    features = [f"f{i}" for i in range(10)]
    reference = pd.DataFrame(rng.uniform(0.5, 3.0, size=(10, 3)), index=features,
                             columns=["a", "b", "c"])
    mixtures = pd.DataFrame(rng.uniform(0.5, 3.0, size=(10, 4)), index=features)
    # two features cannot determine three categories without the ridge
    weights = pd.Series(0.0, index=features)
    weights.iloc[[1, 6]] = [1.5, 0.8]
    model = DeconvolutionModel(weights=weights, lambda_=0.0, reference=reference, ridge=1e-6)

    C_hat = estimate(reference, model, mixtures)

    assert C_hat.shape == (3, 4)
    pd.testing.assert_frame_equal(C_hat, model.estimate(mixtures))
    with pytest.raises(NumericalError):
        estimate(reference, model, mixtures, ridge=0.0)
