"""
Single-predictor hierarchical basis solver
==========================================

Penalized least squares

    (1 / 2n) * ||y - X beta||^2 + lambda * sum_j ak[j] * ||beta[j:]||

over a whole path of lambda values. With the economy QR factorization
``X = Q R`` rescaled so that ``Q^T Q = n I``, the problem above has the same
minimizer as the prox problem

    0.5 * ||v - b||^2 + lambda * sum_j ak[j] * ||b[j:]||,   v = Q^T y / n,

so each lambda only costs one closed-form prox evaluation. Coefficients are
mapped back to the original basis with a triangular solve ``R beta = b``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import numpy as np
from scipy import linalg

from hierbasis.additional_functions.utils import check_finite
from hierbasis.prox import hierarchical_prox


@dataclass(frozen=True)
class PathConfig:
    nlam: int = 50
    lam_min_ratio: float = 1e-4
    max_lambda: Optional[float] = None
    n_jobs: int = 1


class SinglePredictorFit(NamedTuple):
    coefficients: np.ndarray
    lambdas: np.ndarray


# -----------------------------------------------------------------------------
# Building blocks
# -----------------------------------------------------------------------------

def orthonormalize(design: np.ndarray, n: int) -> Tuple[np.ndarray, np.ndarray]:
    """Economy QR of `design`, rescaled so that ``Q^T Q = n I`` and ``Q R = design``."""
    q_mat, r_mat = linalg.qr(np.asarray(design, dtype=float), mode="economic")
    scale = np.sqrt(n)
    return q_mat * scale, r_mat / scale


def lambda_max(v: np.ndarray, ak: np.ndarray) -> float:
    """Smallest lambda for which the hierarchical prox of `v` is identically zero.

    Each ``v[j]`` is checked against its own bound ``lambda * ak[j]``.
    """
    return float(np.max(np.abs(np.ravel(v)) / np.ravel(ak)))


def lambda_path(max_lambda: float, lam_min_ratio: float, nlam: int) -> np.ndarray:
    """`nlam` values log-uniformly spaced from `max_lambda` down to `max_lambda * lam_min_ratio`."""
    if not np.isfinite(max_lambda) or max_lambda <= 0:
        raise ValueError(
            f"max_lambda must be a positive finite number, got {max_lambda} "
            "(a constant response gives max_lambda = 0)"
        )
    if not 0 < lam_min_ratio < 1:
        raise ValueError(f"lam_min_ratio must lie in (0, 1), got {lam_min_ratio}")
    if nlam < 1:
        raise ValueError(f"nlam must be at least 1, got {nlam}")

    lambdas = 10 ** np.linspace(np.log10(max_lambda), np.log10(max_lambda * lam_min_ratio), nlam)
    # Keep the null-fit lambda exact rather than a power-of-ten round trip
    lambdas[0] = max_lambda
    return lambdas


def check_ak(ak: np.ndarray, size: int) -> np.ndarray:
    """Validate the penalty increments: `size` strictly positive finite values."""
    ak = np.asarray(ak, dtype=float).ravel()
    if ak.shape[0] != size:
        raise ValueError(f"ak must have length {size}, got {ak.shape[0]}")
    check_finite("ak", ak)
    if np.any(ak <= 0):
        raise ValueError("ak must be strictly positive")
    return ak


def back_transform(r_mat: np.ndarray, beta_hat) -> np.ndarray:
    """Map orthonormal-scale coefficients (dense or sparse) to the original basis by solving ``R beta = beta_hat``."""
    if hasattr(beta_hat, "toarray"):
        beta_hat = beta_hat.toarray()
    return linalg.solve_triangular(r_mat, np.asarray(beta_hat, dtype=float), lower=False)


def max_lambda_unset(max_lambda: Optional[float]) -> bool:
    return max_lambda is None or bool(np.isnan(max_lambda))


# -----------------------------------------------------------------------------
# Solver
# -----------------------------------------------------------------------------

def fit_single_predictor(
    design: np.ndarray,
    y: np.ndarray,
    ak: np.ndarray,
    weight_template: Optional[np.ndarray],
    n: int,
    lam_min_ratio: float,
    nlam: int,
    max_lambda: Optional[float] = None,
    n_jobs: int = 1,
) -> SinglePredictorFit:
    """Solve the hierarchical basis problem along a lambda path.

    Parameters
    ----------
    design:
        Centered design matrix of shape (n, J).
    y:
        Centered response of length n.
    ak:
        Strictly positive penalty increments of length J.
    weight_template:
        Matrix of shape (J, nlam) holding `ak` in every column; column i is
        scaled by the i-th lambda. If None it is built from `ak`. The
        caller's array is left untouched.
    n:
        Number of observations.
    lam_min_ratio:
        Ratio of the smallest to the largest lambda, in (0, 1).
    nlam:
        Number of lambda values.
    max_lambda:
        Largest lambda. If None (or NaN) the smallest lambda giving the null
        fit is used.
    n_jobs:
        Threads used to evaluate the prox across lambdas.

    Returns
    -------
    SinglePredictorFit
        ``coefficients`` of shape (J, nlam) on the original basis scale and
        the realized ``lambdas``.
    """
    design = np.asarray(design, dtype=float)
    y = np.asarray(y, dtype=float).ravel()
    if design.ndim != 2 or design.shape[0] != y.shape[0]:
        raise ValueError(f"design must be a matrix with {y.shape[0]} rows, got shape {design.shape}")
    if design.shape[0] != n:
        raise ValueError(f"n = {n} does not match the {design.shape[0]} rows of design")
    check_finite("design", design)
    check_finite("y", y)

    J = design.shape[1]
    if J > n:
        raise ValueError(f"design has more basis columns ({J}) than observations ({n})")
    ak = check_ak(ak, J)

    if weight_template is None:
        weight_template = np.tile(ak[:, None], (1, nlam))
    weight_template = np.asarray(weight_template, dtype=float)
    if weight_template.shape != (J, nlam):
        raise ValueError(f"weight_template must have shape {(J, nlam)}, got {weight_template.shape}")

    x_mat, r_mat = orthonormalize(design, n)

    # Prox input for the orthonormal design
    v = x_mat.T @ (y / n)

    if max_lambda_unset(max_lambda):
        max_lambda = lambda_max(v, ak)

    lambdas = lambda_path(max_lambda, lam_min_ratio, nlam)
    weights = weight_template * lambdas[None, :]

    beta_hat = hierarchical_prox(v, weights, n_jobs=n_jobs)

    coefficients = back_transform(r_mat, beta_hat)
    return SinglePredictorFit(coefficients, lambdas)
