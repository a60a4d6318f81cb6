import cvxpy as cp
import numpy as np
import pytest
from scipy import sparse

from hierbasis.prox import hierarchical_prox, hierarchical_prox_one


def _conic_prox_problem(p):
    """The prox problem as a CVXPy problem with `v` and `weights` as Parameters."""
    beta = cp.Variable(p)
    v = cp.Parameter(p, name="v")
    weights = cp.Parameter(p, nonneg=True, name="weights")

    penalty = 0
    for j in range(p):
        penalty += weights[j] * cp.norm(beta[j:], 2)

    objective = 0.5 * cp.sum_squares(v - beta) + penalty
    return cp.Problem(cp.Minimize(objective)), beta, v, weights


def _prox_objective(v, weights, beta):
    penalty = sum(weights[j] * np.linalg.norm(beta[j:]) for j in range(len(beta)))
    return 0.5 * np.sum((v - beta) ** 2) + penalty


def test_zero_weights_return_input() -> None:
    v = np.array([0.3, -1.2, 0.0, 4.5])
    beta = hierarchical_prox_one(v, np.zeros(4))
    assert np.array_equal(beta, v)


def test_large_lambda_gives_null_solution() -> None:
    v = np.array([2.0, 0.1, 0.05])
    ak = np.ones(3)
    beta = hierarchical_prox_one(v, 2.0 * ak)
    assert np.all(beta == 0)


def test_zero_input_stays_finite() -> None:
    beta = hierarchical_prox_one(np.zeros(5), np.ones(5))
    assert np.all(np.isfinite(beta))
    assert np.all(beta == 0)


def test_input_is_not_modified() -> None:
    v = np.array([1.0, 2.0, 3.0])
    hierarchical_prox_one(v, np.ones(3))
    assert np.array_equal(v, [1.0, 2.0, 3.0])


def test_nested_sparsity() -> None:
    rng = np.random.default_rng(0)
    for _ in range(50):
        v = rng.normal(size=8)
        weights = rng.uniform(0.05, 0.6, size=8)
        beta = hierarchical_prox_one(v, weights)
        zeros = np.flatnonzero(beta == 0)
        if zeros.size:
            assert np.all(beta[zeros[0]:] == 0)


def test_larger_weight_never_grows_suffix_norm() -> None:
    rng = np.random.default_rng(1)
    for _ in range(30):
        v = rng.normal(size=6)
        weights = rng.uniform(0.0, 0.5, size=6)
        j = rng.integers(0, 6)
        before = np.linalg.norm(hierarchical_prox_one(v, weights)[j:])

        bumped = weights.copy()
        bumped[j] += rng.uniform(0.01, 1.0)
        after = np.linalg.norm(hierarchical_prox_one(v, bumped)[j:])
        assert after <= before + 1e-12


def test_matches_conic_solver() -> None:
    rng = np.random.default_rng(2)
    prob, beta, v_param, w_param = _conic_prox_problem(5)

    for _ in range(3):
        v = rng.normal(size=5)
        weights = rng.uniform(0.05, 0.4, size=5)
        v_param.value = v
        w_param.value = weights
        prob.solve(solver=cp.CLARABEL, tol_gap_abs=1e-12, tol_gap_rel=1e-12, tol_feas=1e-12)

        closed_form = hierarchical_prox_one(v, weights)
        np.testing.assert_allclose(closed_form, beta.value, atol=1e-5)
        # The closed form is the exact minimizer
        assert _prox_objective(v, weights, closed_form) <= _prox_objective(v, weights, beta.value) + 1e-12


def test_path_columns_match_single_prox() -> None:
    rng = np.random.default_rng(3)
    y = rng.normal(size=7)
    ak = np.arange(1, 8, dtype=float)
    lambdas = np.array([1.0, 0.3, 0.1, 0.01])
    weights = ak[:, None] * lambdas[None, :]

    out = hierarchical_prox(y, weights)

    assert sparse.issparse(out)
    assert out.shape == (7, 4)
    for i, lam in enumerate(lambdas):
        np.testing.assert_array_equal(out[:, i].toarray().ravel(), hierarchical_prox_one(y, lam * ak))


def test_path_does_not_depend_on_threads() -> None:
    rng = np.random.default_rng(4)
    y = rng.normal(size=10)
    weights = rng.uniform(0.01, 0.3, size=(10, 12))

    serial = hierarchical_prox(y, weights, n_jobs=1).toarray()
    threaded = hierarchical_prox(y, weights, n_jobs=3).toarray()
    np.testing.assert_array_equal(serial, threaded)


def test_path_accepts_single_weight_vector() -> None:
    out = hierarchical_prox(np.array([3.0, 1.0]), np.array([0.5, 0.5]))
    assert out.shape == (2, 1)


def test_weight_checks() -> None:
    with pytest.raises(ValueError):
        hierarchical_prox(np.ones(3), np.ones((4, 2)))
    with pytest.raises(ValueError):
        hierarchical_prox_one(np.ones(3), np.array([1.0, -1.0, 1.0]))
