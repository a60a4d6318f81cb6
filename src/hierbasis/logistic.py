"""
Logistic hierarchical basis regression
======================================

Binary-response counterpart of `hierbasis.solver.fit_single_predictor`:

    (1 / n) * sum_i [log(1 + exp(eta_i)) - y_i * eta_i] + lambda * sum_j ak[j] * ||beta[j:]||

with ``eta = Q beta + b0`` on the orthonormalized design and an unpenalized
intercept b0. There is no closed form here, so every lambda is solved with
CVXPy; the problem is built once with the penalty weights as a Parameter and re-solved
with warm starts along the path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import cvxpy as cp
import numpy as np

from hierbasis.additional_functions.utils import check_finite
from hierbasis.solver import back_transform, check_ak, lambda_max, lambda_path, max_lambda_unset, orthonormalize


@dataclass(frozen=True)
class SolverConfig:
    solver: str = "CLARABEL"
    warm_start: bool = True
    verbose: bool = False


class LogisticFit(NamedTuple):
    coefficients: np.ndarray
    intercepts: np.ndarray
    lambdas: np.ndarray


# Name of the iteration cap in each solver's settings
_MAX_ITER_KEYWORD = {"CLARABEL": "max_iter", "ECOS": "max_iters", "SCS": "max_iters"}


def solve_problem(prob: cp.Problem, cfg: SolverConfig, max_iter: Optional[int] = None) -> None:
    """Solve a CVXPy problem with the configured solver."""
    solver = getattr(cp, cfg.solver, None)
    if solver is None:
        raise ValueError(f"Unknown CVXPy solver: {cfg.solver!r}")

    kwargs = {}
    if max_iter is not None and cfg.solver in _MAX_ITER_KEYWORD:
        kwargs[_MAX_ITER_KEYWORD[cfg.solver]] = int(max_iter)

    prob.solve(solver=solver, warm_start=cfg.warm_start, verbose=cfg.verbose, **kwargs)
    if prob.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE):
        raise cp.SolverError(f"Logistic fit ended with status {prob.status!r}")


def snap_suffixes(beta: np.ndarray, tol: float) -> np.ndarray:
    """Set to zero the longest suffix of `beta` whose norm is below `tol`."""
    beta = np.array(beta, dtype=float, copy=True)
    norms = np.sqrt(np.cumsum(beta[::-1] ** 2))[::-1]
    small = np.flatnonzero(norms < tol)
    if small.size:
        beta[small[0]:] = 0.0
    return beta


def build_logistic_problem(
    x_mat: np.ndarray,
    y: np.ndarray,
) -> Tuple[cp.Problem, cp.Variable, cp.Variable, cp.Parameter]:
    """Penalized logistic problem with the penalty weights as a Parameter (for reuse)."""
    n, J = x_mat.shape

    beta = cp.Variable(J)
    intercept = cp.Variable()
    weights = cp.Parameter(J, nonneg=True, name="weights")

    eta = x_mat @ beta + intercept
    loss = cp.sum(cp.logistic(eta) - cp.multiply(y, eta)) / n

    penalty = 0
    for j in range(J):
        penalty += weights[j] * cp.norm(beta[j:], 2)

    prob = cp.Problem(cp.Minimize(loss + penalty))
    return prob, beta, intercept, weights


def fit_logistic(
    design: np.ndarray,
    y: np.ndarray,
    ak: np.ndarray,
    weight_template: Optional[np.ndarray],
    n: int,
    nlam: int,
    J: int,
    max_lambda: Optional[float],
    lam_min_ratio: float,
    tol: float = 1e-6,
    max_iter: int = 200,
    solver_cfg: Optional[SolverConfig] = None,
) -> LogisticFit:
    """Fit the logistic hierarchical basis model along a lambda path.

    Parameters
    ----------
    design:
        Centered design matrix of shape (n, J).
    y:
        Binary response (0/1) of length n, not centered.
    ak, weight_template, n, nlam, max_lambda, lam_min_ratio:
        As in `hierbasis.solver.fit_single_predictor`. The default
        `max_lambda` is ``max(|v| / ak)`` with ``v = Q^T (y - mean(y)) / n``,
        the gradient of the loss at the intercept-only fit.
    J:
        Number of basis functions (columns of `design`).
    tol:
        Trailing coefficient suffixes with norm below `tol` are set to
        exactly zero, restoring the nested sparsity an interior-point solver
        only reaches approximately.
    max_iter:
        Iteration cap forwarded to the conic solver.
    solver_cfg:
        CVXPy solver settings.

    Returns
    -------
    LogisticFit
        ``coefficients`` (J, nlam) on the original basis scale, ``intercepts``
        (nlam,) and the realized ``lambdas``.
    """
    cfg = solver_cfg or SolverConfig()

    design = np.asarray(design, dtype=float)
    y = np.asarray(y, dtype=float).ravel()
    if design.shape != (n, J):
        raise ValueError(f"design must have shape {(n, J)}, got {design.shape}")
    if y.shape[0] != n:
        raise ValueError(f"y must have length {n}, got {y.shape[0]}")
    check_finite("design", design)
    if not np.all((y == 0) | (y == 1)):
        raise ValueError("y must only contain 0 and 1")

    ybar = float(y.mean())
    if ybar in (0.0, 1.0):
        raise ValueError("y must contain both classes")

    ak = check_ak(ak, J)
    if weight_template is None:
        weight_template = np.tile(ak[:, None], (1, nlam))
    weight_template = np.asarray(weight_template, dtype=float)
    if weight_template.shape != (J, nlam):
        raise ValueError(f"weight_template must have shape {(J, nlam)}, got {weight_template.shape}")

    x_mat, r_mat = orthonormalize(design, n)
    v = x_mat.T @ ((y - ybar) / n)

    if max_lambda_unset(max_lambda):
        max_lambda = lambda_max(v, ak)
    lambdas = lambda_path(max_lambda, lam_min_ratio, nlam)
    weights = weight_template * lambdas[None, :]

    prob, beta, intercept, w_param = build_logistic_problem(x_mat, y)

    beta_hat = np.zeros((J, nlam))
    intercepts = np.zeros(nlam)
    for i in range(nlam):
        w_param.value = weights[:, i]
        solve_problem(prob, cfg, max_iter=max_iter)
        beta_hat[:, i] = snap_suffixes(np.asarray(beta.value, dtype=float), tol)
        intercepts[i] = float(intercept.value)

    # The design is centered, so the intercept is unchanged by the back-transform
    return LogisticFit(back_transform(r_mat, beta_hat), intercepts, lambdas)
