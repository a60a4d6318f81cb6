"""
Additive hierarchical basis models
==================================

Sparse additive regression

    (1 / 2n) * ||y - sum_j X_j beta_j||^2 + sum_j sum_l w[l] * ||beta_j[l:]||

fitted by block coordinate descent: each sweep visits the predictor blocks
in turn and replaces ``beta_j`` by the hierarchical prox of its partial
residual correlation ``X_j^T r_j / n``. Updates are Gauss-Seidel: block j
sees the already-updated contributions of blocks 0..j-1.

Solutions are returned for a whole path of penalty weights, warm-starting
each lambda from the previous solution.
"""

from __future__ import annotations

import warnings
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg, sparse

from hierbasis.additional_functions.basis import (
    build_design_tensor,
    max_nbasis,
    polynomial_basis,
    smoothness_weights,
)
from hierbasis.additional_functions.utils import ConvergenceWarning, check_finite, time_it
from hierbasis.prox import hierarchical_prox_one
from hierbasis.solver import check_ak, lambda_path, max_lambda_unset, orthonormalize


class AdditiveFit(NamedTuple):
    beta: sparse.csc_matrix
    lambdas: Optional[np.ndarray]
    n_iter: np.ndarray
    converged: np.ndarray
    final_beta: np.ndarray
    final_x_beta: np.ndarray


# -----------------------------------------------------------------------------
# Validation helpers
# -----------------------------------------------------------------------------

def _check_tensor(design_tensor: np.ndarray, n: int, J: int, p: int) -> np.ndarray:
    design_tensor = np.asarray(design_tensor, dtype=float)
    if design_tensor.shape != (n, J, p):
        raise ValueError(f"design_tensor must have shape {(n, J, p)}, got {design_tensor.shape}")
    check_finite("design_tensor", design_tensor)
    return design_tensor


def _expand_weights(weights: np.ndarray, J: int, p: int, nlam: int) -> np.ndarray:
    """Return per-block weights of shape (J, p, nlam).

    Accepts a (J, nlam) matrix shared by every block or a (p * J, nlam)
    matrix with block j in rows ``j * J:(j + 1) * J``.
    """
    weights = np.asarray(weights, dtype=float)
    if weights.ndim == 1:
        weights = weights[:, None]
    if weights.shape[1] != nlam:
        raise ValueError(f"weights must have {nlam} columns, got {weights.shape[1]}")
    if np.any(weights < 0):
        raise ValueError("weights must be non-negative")

    if weights.shape[0] == J:
        return np.repeat(weights[:, None, :], p, axis=1)
    if weights.shape[0] == p * J:
        return weights.reshape(p, J, nlam).transpose(1, 0, 2)
    raise ValueError(f"weights must have {J} or {p * J} rows, got {weights.shape[0]}")


def _check_active_set(active_set: Optional[Sequence[int]], p: int) -> List[int]:
    if active_set is None:
        return list(range(p))
    blocks = sorted({int(j) for j in active_set})
    if blocks and (blocks[0] < 0 or blocks[-1] >= p):
        raise ValueError(f"active_set indices must lie in [0, {p - 1}], got {list(active_set)}")
    return blocks


# -----------------------------------------------------------------------------
# Block coordinate descent
# -----------------------------------------------------------------------------

def _sweep_until_converged(
    y: np.ndarray,
    weights: np.ndarray,
    x_beta: np.ndarray,
    design_tensor: np.ndarray,
    beta: np.ndarray,
    tol: float,
    n: int,
    max_iter: int,
    blocks: List[int],
    strict: bool,
) -> Tuple[int, bool]:
    """Run sweeps for one lambda until the change drops below `tol`.

    `beta` (J, p) and `x_beta` (n, p) are updated in place. Returns the
    number of sweeps performed and whether the tolerance was met.
    """
    counter = 0
    sweeps = 0
    converged = False

    while counter < max_iter and not converged:
        old_beta = beta.copy()

        for j in blocks:
            x_j = design_tensor[:, :, j]
            # Partial residual: everything block j is not responsible for
            partial = y - x_beta.sum(axis=1) + x_j @ beta[:, j]
            v_j = x_j.T @ (partial / n)
            beta[:, j] = hierarchical_prox_one(v_j, weights[:, j])
            x_beta[:, j] = x_j @ beta[:, j]
        sweeps += 1

        if strict:
            change = np.linalg.norm(beta - old_beta)
        else:
            # Difference of norms, not norm of the difference
            change = np.linalg.norm(beta) - np.linalg.norm(old_beta)

        if abs(change) < tol:
            converged = True
        else:
            counter += 1

    return sweeps, converged


def _vectorise(beta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Stack the columns of `beta` block after block; return (nonzero rows, values)."""
    vec = beta.T.ravel()
    nz = np.flatnonzero(vec)
    return nz, vec[nz]


def _run_path(
    y: np.ndarray,
    weights: np.ndarray,
    x_beta: np.ndarray,
    design_tensor: np.ndarray,
    beta: np.ndarray,
    tol: float,
    n: int,
    max_iter: int,
    blocks: List[int],
    strict: bool = False,
    verbose: bool = False,
) -> Tuple[sparse.csc_matrix, np.ndarray, np.ndarray]:
    """Fit every lambda column of `weights` (J, p, nlam), warm-starting along the path."""
    J, p, nlam = weights.shape

    indices: List[np.ndarray] = []
    data: List[np.ndarray] = []
    n_iter = np.zeros(nlam, dtype=int)
    converged = np.zeros(nlam, dtype=bool)

    for i in range(nlam):
        n_iter[i], converged[i] = _sweep_until_converged(
            y, weights[:, :, i], x_beta, design_tensor, beta, tol, n, max_iter, blocks, strict
        )

        if not converged[i]:
            warnings.warn(
                f"Block coordinate descent did not converge for lambda index {i} "
                f"after {max_iter} iterations; keeping the last iterate",
                ConvergenceWarning,
                stacklevel=3,
            )
        if verbose:
            print(f"Lambda index {i}: {n_iter[i]} sweeps, converged = {converged[i]}")

        nz, vals = _vectorise(beta)
        indices.append(nz)
        data.append(vals)

    indptr = np.zeros(nlam + 1, dtype=np.int64)
    indptr[1:] = np.cumsum([len(nz) for nz in indices])
    beta_path = sparse.csc_matrix(
        (
            np.concatenate(data) if data else np.empty(0),
            np.concatenate(indices) if indices else np.empty(0, dtype=np.int64),
            indptr,
        ),
        shape=(p * J, nlam),
    )
    return beta_path, n_iter, converged


def fit_additive(
    y: np.ndarray,
    weights: np.ndarray,
    x_beta: np.ndarray,
    design_tensor: np.ndarray,
    beta_init: np.ndarray,
    tol: float,
    p: int,
    J: int,
    n: int,
    nlam: int,
    max_iter: int,
) -> sparse.csc_matrix:
    """Additive hierarchical basis fit for a given matrix of penalty weights.

    Parameters
    ----------
    y:
        Centered response of length n.
    weights:
        Penalty weights, one column per lambda: either (J, nlam), shared by
        every block, or (p * J, nlam). Columns are divided by `n` before use.
    x_beta:
        Matrix (n, p) of warm-start block contributions ``X_j beta_j``.
    design_tensor:
        Centered design of shape (n, J, p), one slab per predictor.
    beta_init:
        Warm-start coefficients of shape (J, p).
    tol:
        Convergence tolerance on ``| ||beta|| - ||beta_old|| |``.
    p, J, n, nlam:
        Number of blocks, basis functions per block, observations and lambdas.
    max_iter:
        Sweep budget per lambda. Exhausting it emits a ConvergenceWarning
        and the last iterate is kept.

    Returns
    -------
    scipy.sparse.csc_matrix
        Matrix of shape (p * J, nlam); column i stacks ``beta_0, ..., beta_{p-1}``
        at lambda i. The inputs are not modified.
    """
    y = np.asarray(y, dtype=float).ravel()
    if y.shape[0] != n:
        raise ValueError(f"y must have length {n}, got {y.shape[0]}")
    check_finite("y", y)
    design_tensor = _check_tensor(design_tensor, n, J, p)

    beta = np.array(beta_init, dtype=float, copy=True)
    if beta.shape != (J, p):
        raise ValueError(f"beta_init must have shape {(J, p)}, got {beta.shape}")
    x_beta = np.array(x_beta, dtype=float, copy=True)
    if x_beta.shape != (n, p):
        raise ValueError(f"x_beta must have shape {(n, p)}, got {x_beta.shape}")

    per_block = _expand_weights(weights, J, p, nlam) / n

    beta_path, _, _ = _run_path(y, per_block, x_beta, design_tensor, beta, tol, n, int(max_iter), list(range(p)))
    return beta_path


# -----------------------------------------------------------------------------
# Path fit with lambda selection, mixing and active sets
# -----------------------------------------------------------------------------

def mixed_weights(ak: np.ndarray, alpha: float) -> np.ndarray:
    """Penalty increments mixing hierarchical smoothness with a plain block norm.

    ``(1 - alpha) * ak + alpha * e_0``: alpha = 0 is the pure hierarchical
    penalty, alpha = 1 a group lasso on each whole block.
    """
    if not 0 <= alpha <= 1:
        raise ValueError(f"alpha must lie in [0, 1], got {alpha}")
    w_eff = (1 - alpha) * np.asarray(ak, dtype=float)
    w_eff[0] += alpha
    return w_eff


def _block_lambda_max(v: np.ndarray, w_eff: np.ndarray) -> float:
    """Smallest lambda at which the prox of `v` with weights ``lambda * w_eff`` vanishes."""
    if np.all(w_eff > 0):
        return float(np.max(np.abs(v) / w_eff))
    # Only the leading weight is guaranteed positive: bound by the whole block
    return float(np.linalg.norm(v) / w_eff[0])


@time_it
def fit_additive_path(
    y: np.ndarray,
    design_tensor: np.ndarray,
    ak: np.ndarray,
    *,
    max_lambda: Optional[float] = None,
    lam_min_ratio: float = 1e-4,
    nlam: int = 50,
    alpha: float = 0.0,
    tol: float = 1e-6,
    max_iter: int = 1000,
    beta_init: Optional[np.ndarray] = None,
    beta_is_zero: bool = True,
    active_set: Optional[Sequence[int]] = None,
    strict: bool = False,
    verbose: bool = False,
) -> AdditiveFit:
    """Additive fit along an internally generated lambda path.

    The weights at lambda are ``lambda * mixed_weights(ak, alpha)`` for every
    block, on the scale of the prox input ``X_j^T r / n`` (no further
    division by n). When `max_lambda` is None it is the smallest lambda at
    which every active block is zero, and the path runs log-uniformly down
    to ``max_lambda * lam_min_ratio``.

    Blocks outside `active_set` keep their `beta_init` coefficients and
    still contribute to the fitted sum. With `beta_is_zero` (or no
    `beta_init`) the fit starts from zero; otherwise the block contributions
    are rebuilt from `beta_init`. `strict` switches the convergence test to
    ``||beta - beta_old|| < tol``.
    """
    design_tensor = np.asarray(design_tensor, dtype=float)
    if design_tensor.ndim != 3:
        raise ValueError(f"design_tensor must have 3 dimensions (n, J, p), got shape {design_tensor.shape}")
    n, J, p = design_tensor.shape

    y = np.asarray(y, dtype=float).ravel()
    if y.shape[0] != n:
        raise ValueError(f"y must have length {n}, got {y.shape[0]}")
    check_finite("y", y)
    design_tensor = _check_tensor(design_tensor, n, J, p)

    ak = check_ak(ak, J)
    w_eff = mixed_weights(ak, alpha)
    blocks = _check_active_set(active_set, p)

    if beta_is_zero or beta_init is None:
        beta = np.zeros((J, p))
        x_beta = np.zeros((n, p))
    else:
        beta = np.array(beta_init, dtype=float, copy=True)
        if beta.shape != (J, p):
            raise ValueError(f"beta_init must have shape {(J, p)}, got {beta.shape}")
        x_beta = np.column_stack([design_tensor[:, :, j] @ beta[:, j] for j in range(p)])

    if max_lambda_unset(max_lambda):
        inactive = [j for j in range(p) if j not in blocks]
        resid = y - x_beta[:, inactive].sum(axis=1)
        max_lambda = max(
            (_block_lambda_max(design_tensor[:, :, j].T @ (resid / n), w_eff) for j in blocks),
            default=0.0,
        )

    lambdas = lambda_path(max_lambda, lam_min_ratio, nlam)
    if verbose:
        print(f"Fitting {nlam} lambda values from {lambdas[0]:.4g} to {lambdas[-1]:.4g} on {len(blocks)} of {p} blocks")

    weights = np.repeat((w_eff[:, None] * lambdas[None, :])[:, None, :], p, axis=1)
    beta_path, n_iter, converged = _run_path(
        y, weights, x_beta, design_tensor, beta, tol, n, int(max_iter), blocks, strict=strict, verbose=verbose
    )
    return AdditiveFit(beta_path, lambdas, n_iter, converged, beta, x_beta)


# -----------------------------------------------------------------------------
# Estimator
# -----------------------------------------------------------------------------

class AdditiveHierBasis:
    """Sparse additive model with one hierarchical basis expansion per predictor.

    Each predictor gets a centered polynomial basis of `nbasis` terms. The
    basis of every block is orthonormalized (``Q_j^T Q_j = n I``) so that
    each block update is an exact minimization; `coef` and `predict` map
    back to the polynomial scale.
    """

    def __init__(
        self,
        nbasis: int = 10,
        max_lambda: Optional[float] = None,
        nlam: int = 50,
        lam_min_ratio: float = 1e-2,
        k: int = 3,
        alpha: float = 0.0,
        tol: float = 1e-6,
        max_iter: int = 1000,
        strict: bool = False,
        verbose: bool = False,
    ):
        self.nbasis = nbasis
        self.max_lambda = max_lambda
        self.nlam = nlam
        self.lam_min_ratio = lam_min_ratio
        self.k = k
        self.alpha = alpha
        self.tol = tol
        self.max_iter = max_iter
        self.strict = strict
        self.verbose = verbose

    @time_it
    def fit(self, x, y, active_set: Optional[Sequence[int]] = None) -> "AdditiveHierBasis":
        x = np.asarray(x, dtype=float)
        if x.ndim == 1:
            x = x[:, None]
        y = np.asarray(y, dtype=float).ravel()
        if x.shape[0] != y.shape[0]:
            raise ValueError(f"x and y must have the same number of rows, got {x.shape[0]} and {y.shape[0]}")
        check_finite("x", x)

        n, p = x.shape
        J = self.nbasis
        limit = min(max_nbasis(x[:, j]) for j in range(p))
        if not 1 <= J <= limit:
            raise ValueError(
                f"nbasis must lie in [1, {limit}], one less than the fewest distinct values of a predictor, got {J}"
            )

        design, self.xbar_ = build_design_tensor(x, J)
        self.ybar_ = float(y.mean())

        self.q_tensor_ = np.empty_like(design)
        self.r_tensor_ = np.empty((J, J, p))
        for j in range(p):
            self.q_tensor_[:, :, j], self.r_tensor_[:, :, j] = orthonormalize(design[:, :, j], n)

        res = fit_additive_path(
            y - self.ybar_,
            self.q_tensor_,
            smoothness_weights(J, self.k),
            max_lambda=self.max_lambda,
            lam_min_ratio=self.lam_min_ratio,
            nlam=self.nlam,
            alpha=self.alpha,
            tol=self.tol,
            max_iter=self.max_iter,
            active_set=active_set,
            strict=self.strict,
            verbose=self.verbose,
        )
        self.beta_ = res.beta
        self.lambdas_ = res.lambdas
        self.n_iter_ = res.n_iter
        self.converged_ = res.converged

        # Columns ordered block after block, like the rows of beta_
        q_flat = self.q_tensor_.transpose(0, 2, 1).reshape(n, p * J)
        self.fitted_values_ = q_flat @ self.beta_.toarray() + self.ybar_

        self.n_features_ = p
        return self

    def coef(self) -> Tuple[np.ndarray, np.ndarray]:
        """Coefficients on the polynomial scale.

        Returns
        -------
        beta : numpy.ndarray of shape (nbasis, p, nlam)
        intercept : numpy.ndarray of shape (nlam,)
        """
        J, p = self.nbasis, self.n_features_
        dense = self.beta_.toarray()

        beta = np.empty((J, p, len(self.lambdas_)))
        for j in range(p):
            beta[:, j, :] = linalg.solve_triangular(self.r_tensor_[:, :, j], dense[j * J:(j + 1) * J, :], lower=False)

        intercept = self.ybar_ - np.einsum("jp,jpl->l", self.xbar_, beta)
        return beta, intercept

    def predict(self, new_x) -> np.ndarray:
        """Predictions of shape (len(new_x), nlam)."""
        new_x = np.asarray(new_x, dtype=float)
        if new_x.ndim == 1:
            new_x = new_x[:, None]
        if new_x.shape[1] != self.n_features_:
            raise ValueError(f"new_x must have {self.n_features_} columns, got {new_x.shape[1]}")

        beta, intercept = self.coef()
        out = np.tile(intercept, (new_x.shape[0], 1))
        for j in range(self.n_features_):
            out += polynomial_basis(new_x[:, j], self.nbasis) @ beta[:, j, :]
        return out

    def path_summary(self) -> pd.DataFrame:
        """One row per lambda: number of nonzero predictors, sweeps and convergence."""
        J, p = self.nbasis, self.n_features_
        dense = self.beta_.toarray().reshape(p, J, -1)
        active_predictors = np.any(dense != 0, axis=1).sum(axis=0)
        return pd.DataFrame(
            {
                "lambda": self.lambdas_,
                "active_predictors": active_predictors,
                "n_iter": self.n_iter_,
                "converged": self.converged_,
            }
        )
