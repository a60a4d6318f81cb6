import numpy as np
import pytest

from hierbasis.additional_functions.basis import center_columns, polynomial_basis
from hierbasis.prox import hierarchical_prox
from hierbasis.solver import fit_single_predictor, lambda_max, lambda_path, orthonormalize


def _centered_problem(n=100, nbasis=5, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(-1, 1, size=n)
    y = x - 2 * x ** 2 + 0.5 * x ** 3 + x ** 4 - 0.7 * x ** 5
    design, _ = center_columns(polynomial_basis(x, nbasis))
    return design, y - y.mean()


def test_orthonormalize() -> None:
    design, _ = _centered_problem(n=40, nbasis=4)
    q_mat, r_mat = orthonormalize(design, 40)

    np.testing.assert_allclose(q_mat.T @ q_mat, 40 * np.eye(4), atol=1e-9)
    np.testing.assert_allclose(q_mat @ r_mat, design, atol=1e-12)
    assert np.allclose(r_mat, np.triu(r_mat))


def test_lambda_path() -> None:
    lambdas = lambda_path(2.0, 1e-2, 5)
    np.testing.assert_allclose(lambdas, [2.0, 2.0 * 10 ** -0.5, 0.2, 2.0 * 10 ** -1.5, 0.02])
    assert np.all(np.diff(lambdas) < 0)
    np.testing.assert_allclose(lambda_path(3.0, 0.5, 1), [3.0])


@pytest.mark.parametrize("args", [(0.0, 0.1, 5), (1.0, 1.5, 5), (1.0, 0.1, 0), (np.nan, 0.1, 5)])
def test_lambda_path_rejects_bad_arguments(args) -> None:
    with pytest.raises(ValueError):
        lambda_path(*args)


def test_lambda_max() -> None:
    assert lambda_max(np.array([2.0, -0.1, 0.05]), np.ones(3)) == 2.0
    assert lambda_max(np.array([1.0, -6.0]), np.array([1.0, 3.0])) == 2.0


def test_max_lambda_gives_null_fit() -> None:
    n = 50
    rng = np.random.default_rng(5)
    raw = rng.normal(size=(n, 3))
    base, _ = np.linalg.qr(raw - raw.mean(axis=0))
    design = base * np.sqrt(n)
    y = design @ np.array([2.0, 0.1, 0.05])

    fit = fit_single_predictor(design, y, np.ones(3), None, n, 1e-3, 4)

    assert fit.lambdas[0] == pytest.approx(2.0)
    assert np.all(fit.coefficients[:, 0] == 0)
    assert np.any(fit.coefficients[:, -1] != 0)


def test_fitted_values_match_orthonormal_scale() -> None:
    design, y = _centered_problem()
    n = design.shape[0]
    ak = np.arange(1, 6) ** 2 - np.arange(0, 5) ** 2
    fit = fit_single_predictor(design, y, ak, None, n, 1e-4, 8)

    q_mat, _ = orthonormalize(design, n)
    v = q_mat.T @ (y / n)
    beta_hat = hierarchical_prox(v, ak[:, None] * fit.lambdas[None, :]).toarray()

    np.testing.assert_allclose(design @ fit.coefficients, q_mat @ beta_hat, atol=1e-8)


def test_path_end_to_end() -> None:
    design, y = _centered_problem(n=100, nbasis=5)
    ak = np.arange(1, 6) ** 2 - np.arange(0, 5) ** 2
    np.testing.assert_array_equal(ak, [1, 3, 5, 7, 9])
    template = np.tile(ak[:, None].astype(float), (1, 10))
    template_before = template.copy()

    fit = fit_single_predictor(design, y, ak, template, 100, 1e-4, 10)

    assert fit.coefficients.shape == (5, 10)
    assert np.all(np.diff(fit.lambdas) < 0)

    # Fewer active basis functions as lambda grows
    active = np.count_nonzero(fit.coefficients, axis=0)
    assert active[0] == 0
    assert np.all(np.diff(active) >= 0)
    assert active[-1] == 5

    resid = y - design @ fit.coefficients[:, -1]
    assert np.mean(resid ** 2) < 1e-4 * np.var(y)

    # The caller's template is left as is
    np.testing.assert_array_equal(template, template_before)


def test_explicit_max_lambda_and_threads() -> None:
    design, y = _centered_problem(n=60, nbasis=4, seed=3)
    ak = np.ones(4)
    serial = fit_single_predictor(design, y, ak, None, 60, 1e-2, 6, max_lambda=5.0)
    threaded = fit_single_predictor(design, y, ak, None, 60, 1e-2, 6, max_lambda=5.0, n_jobs=2)

    assert serial.lambdas[0] == pytest.approx(5.0)
    np.testing.assert_array_equal(serial.coefficients, threaded.coefficients)

    nan_max = fit_single_predictor(design, y, ak, None, 60, 1e-2, 6, max_lambda=np.nan)
    assert nan_max.lambdas[0] == pytest.approx(lambda_max(orthonormalize(design, 60)[0].T @ (y / 60), ak))


def test_input_checks() -> None:
    design, y = _centered_problem(n=30, nbasis=3)
    with pytest.raises(ValueError):
        fit_single_predictor(design, y, np.array([1.0, 0.0, 1.0]), None, 30, 1e-2, 5)
    with pytest.raises(ValueError):
        fit_single_predictor(design, y[:-1], np.ones(3), None, 30, 1e-2, 5)
    with pytest.raises(ValueError):
        fit_single_predictor(design, np.zeros(30), np.ones(3), None, 30, 1e-2, 5)
    with pytest.raises(ValueError):
        fit_single_predictor(design, y, np.ones(3), np.ones((3, 4)), 30, 1e-2, 5)
    with pytest.raises(ValueError):
        fit_single_predictor(design[:2], y[:2], np.ones(3), None, 2, 1e-2, 5)
