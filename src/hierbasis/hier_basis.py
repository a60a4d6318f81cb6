"""
HierBasis estimator
===================

Univariate nonparametric regression with hierarchical basis functions.
The fit minimizes

    (1 / 2n) * ||y - Psi beta||^2 + lambda * sum_j a_{j,k} * ||beta[j:J]||

over the polynomial basis ``Psi = [x, x^2, ..., x^J]`` (centered), with
``a_{j,k} = j^k - (j - 1)^k`` for a smoothness order k. The penalty makes
high-order terms enter only after every lower-order term, so the fitted
curve gets smoother as lambda grows.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from hierbasis.additional_functions.basis import (
    center_columns,
    max_nbasis,
    polynomial_basis,
    smoothness_weights,
)
from hierbasis.additional_functions.utils import active_set_size, check_finite, time_it
from hierbasis.prox import hierarchical_prox
from hierbasis.solver import PathConfig, back_transform, lambda_max, lambda_path, max_lambda_unset, orthonormalize


class HierBasis:
    """Hierarchical basis regression of `y` on a single predictor `x`.

    Parameters
    ----------
    nbasis:
        Number of basis functions J, at most one less than the number of
        distinct values of x. Defaults to ``min(n_distinct - 1, 10)``.
    max_lambda:
        Largest lambda on the path. If None, the smallest lambda giving the
        trivial fit (the mean of y) is used.
    nlam:
        Number of lambda values.
    lam_min_ratio:
        Ratio of the smallest to the largest lambda.
    k:
        Order of smoothness, usually no more than 3.
    n_jobs:
        Threads used to evaluate the prox across lambdas.
    verbose:
        Print progress and timings.

    Attributes (after `fit`)
    ------------------------
    beta_ : scipy.sparse.csc_matrix of shape (J, nlam)
        Coefficients on the orthonormal design ``x_mat_``.
    lambdas_ : numpy.ndarray
    fitted_values_ : numpy.ndarray of shape (n, nlam)
    active_ : numpy.ndarray
        Size of the active set for each lambda (there is no intercept column).
    xbar_, ybar_ :
        Means of the basis columns and of y.
    x_mat_, r_mat_ :
        Orthonormal design (``x_mat_.T @ x_mat_ = n I``) and its triangular
        factor, ``x_mat_ @ r_mat_`` being the centered basis.
    """

    def __init__(
        self,
        nbasis: Optional[int] = None,
        max_lambda: Optional[float] = None,
        nlam: int = 50,
        lam_min_ratio: float = 1e-4,
        k: int = 3,
        n_jobs: int = 1,
        verbose: bool = False,
    ):
        self.nbasis = nbasis
        self.k = k
        self.verbose = verbose
        self.path_cfg = PathConfig(nlam=nlam, lam_min_ratio=lam_min_ratio, max_lambda=max_lambda, n_jobs=n_jobs)

    @time_it
    def fit(self, x: Sequence[float], y: Sequence[float]) -> "HierBasis":
        x = np.asarray(x, dtype=float).ravel()
        y = np.asarray(y, dtype=float).ravel()
        if x.shape[0] != y.shape[0]:
            raise ValueError(f"x and y must have the same length, got {x.shape[0]} and {y.shape[0]}")
        check_finite("x", x)
        check_finite("y", y)

        n = y.shape[0]
        limit = max_nbasis(x)
        nbasis = self.nbasis if self.nbasis is not None else min(limit, 10)
        if not 1 <= nbasis <= limit:
            raise ValueError(
                f"nbasis must lie in [1, {limit}] since x takes {limit + 1} distinct values, got {nbasis}"
            )

        cfg = self.path_cfg
        if self.verbose:
            print(f"Fitting {cfg.nlam} lambda values with {nbasis} basis functions (k = {self.k})")

        design, self.xbar_ = center_columns(polynomial_basis(x, nbasis))
        self.ybar_ = float(y.mean())
        y_centered = y - self.ybar_

        self.x_mat_, self.r_mat_ = orthonormalize(design, n)

        # Orthonormal design: the regression reduces to a prox problem in v
        v = self.x_mat_.T @ (y_centered / n)

        self.ak_ = smoothness_weights(nbasis, self.k)
        max_lam = lambda_max(v, self.ak_) if max_lambda_unset(cfg.max_lambda) else cfg.max_lambda
        self.lambdas_ = lambda_path(max_lam, cfg.lam_min_ratio, cfg.nlam)

        self.beta_ = hierarchical_prox(v, self.ak_[:, None] * self.lambdas_[None, :], n_jobs=cfg.n_jobs)
        self.active_ = active_set_size(self.beta_)
        self.fitted_values_ = self.x_mat_ @ self.beta_.toarray() + self.ybar_

        self.x_ = x
        self.y_ = y
        self.nbasis_ = nbasis
        return self

    def coef(self) -> Tuple[np.ndarray, np.ndarray]:
        """Coefficients on the original polynomial scale.

        The centered basis factors as ``Q R`` so the fitted ``beta_`` equals
        ``R beta_original``; the intercepts then undo the centering.

        Returns
        -------
        beta : numpy.ndarray of shape (nbasis, nlam)
        intercept : numpy.ndarray of shape (nlam,)
        """
        beta = back_transform(self.r_mat_, self.beta_)
        intercept = self.ybar_ - self.xbar_ @ beta
        return beta, intercept

    def predict(self, new_x: Sequence[float], interpolate: bool = False) -> np.ndarray:
        """Predicted curve at `new_x` for every lambda, shape (len(new_x), nlam).

        With ``interpolate=True`` the training fitted values are linearly
        interpolated instead, which stays stable for high degrees of freedom
        where the original-scale coefficients become ill-conditioned. Points
        of `new_x` outside the range of the training data get NaN.
        """
        new_x = np.asarray(new_x, dtype=float).ravel()

        if not interpolate:
            beta, intercept = self.coef()
            return polynomial_basis(new_x, self.nbasis_) @ beta + intercept[None, :]

        order = np.argsort(self.x_, kind="stable")
        x_sorted = self.x_[order]
        return np.column_stack(
            [
                np.interp(new_x, x_sorted, self.fitted_values_[order, i], left=np.nan, right=np.nan)
                for i in range(len(self.lambdas_))
            ]
        )

    def degrees_of_freedom(self, lam_index: Optional[int] = None):
        """Unbiased estimate of the degrees of freedom of the fits.

        For a fit with support ``1..K`` the estimate is the trace of the
        linear map ``y -> y_hat`` obtained by differentiating the optimality
        conditions, ``X_K (n (I + H_K))^{-1} X_K^T`` where ``H_K`` is the
        Hessian of the penalty at the solution. The null fit has 0.

        Returns a float for a given `lam_index`, otherwise an array over the path.
        """
        if lam_index is not None:
            return self._dof_one(lam_index)
        return np.array([self._dof_one(i) for i in range(len(self.lambdas_))])

    def _dof_one(self, i: int) -> float:
        beta = self.beta_[:, i].toarray().ravel()
        nz = np.flatnonzero(beta)
        if nz.size == 0:
            return 0.0

        n = self.x_mat_.shape[0]
        K = int(nz[-1]) + 1
        beta_k = beta[:K]
        weights = self.lambdas_[i] * self.ak_[:K]

        # Norm of every suffix beta[j:K]
        norms = np.sqrt(np.cumsum(beta_k[::-1] ** 2))[::-1]
        outer = np.outer(beta_k, beta_k)
        iden = np.eye(K)

        hess = np.zeros((K, K))
        for j in range(K):
            block = (weights[j] / norms[j]) * iden - (weights[j] / norms[j] ** 3) * outer
            hess[j:, j:] += block[j:, j:]

        x_k = self.x_mat_[:, :K]
        return float(np.trace(np.linalg.solve(n * (iden + hess), x_k.T @ x_k)))

    def path_summary(self) -> pd.DataFrame:
        """One row per lambda: active set size, degrees of freedom and training MSE."""
        train_mse = np.mean((self.y_[:, None] - self.fitted_values_) ** 2, axis=0)
        return pd.DataFrame(
            {
                "lambda": self.lambdas_,
                "active_set": self.active_,
                "dof": self.degrees_of_freedom(),
                "train_mse": train_mse,
            }
        )

    def plot_path(self, lam_indices: Optional[Sequence[int]] = None):
        """Plot the data and the fitted curves for a few lambda values."""
        if lam_indices is None:
            nlam = len(self.lambdas_)
            lam_indices = np.unique(np.linspace(0, nlam - 1, min(nlam, 5)).astype(int))

        order = np.argsort(self.x_, kind="stable")
        colors = plt.cm.viridis(np.linspace(0, 1, len(lam_indices)))

        fig, ax = plt.subplots(figsize=(8, 6))
        ax.scatter(self.x_, self.y_, color="grey", s=10, alpha=0.6, label="data")
        for i, color in zip(lam_indices, colors):
            ax.plot(
                self.x_[order],
                self.fitted_values_[order, i],
                color=color,
                label=f"lambda = {self.lambdas_[i]:.3g} ({self.active_[i]} active)",
            )

        ax.set_xlabel("x")
        ax.set_ylabel("y")
        ax.set_title("HierBasis fits along the lambda path")
        ax.legend()
        fig.tight_layout()
        plt.show()
        return fig
