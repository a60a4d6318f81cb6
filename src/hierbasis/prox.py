"""
Hierarchical proximal operator
==============================

Closed-form solution of

    argmin_beta 0.5 * ||v - beta||_2^2 + sum_j w[j] * ||beta[j:]||_2

where the penalty runs over nested suffixes of `beta`. Zeroing a suffix
zeroes every shorter suffix inside it, so earlier basis functions always
enter the model before later ones.

The operator is a backward pass of group soft-thresholds, one per suffix,
from the shortest suffix to the full vector.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple

import numpy as np
from scipy import sparse


# Shrink factors this close to zero come from rounding in weights = lambda * ak
# at lambda = max_lambda; they are treated as an exact zero.
_SHRINK_EPS = 4 * np.finfo(float).eps


def _check_weights(v: np.ndarray, weights: np.ndarray) -> None:
    if weights.shape[0] != v.shape[0]:
        raise ValueError(f"weights must have {v.shape[0]} rows to match the input vector, got {weights.shape[0]}")
    if np.any(weights < 0):
        raise ValueError("weights must be non-negative")


def hierarchical_prox_one(v: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Solve the hierarchical prox problem for a single weight vector.

    Parameters
    ----------
    v:
        Input vector of length p.
    weights:
        Non-negative weights of length p; ``weights[j]`` multiplies ``||beta[j:]||``.

    Returns
    -------
    numpy.ndarray
        The minimizer beta, a new array of length p.

    Notes
    -----
    Suffix norms are recomputed at every step, O(p^2) in total. That is
    cheap for the basis sizes this package works with.
    """
    beta = np.array(v, dtype=float, copy=True).ravel()
    weights = np.asarray(weights, dtype=float).ravel()
    _check_weights(beta, weights)

    p = beta.shape[0]
    for j in range(p - 1, -1, -1):
        norm = np.linalg.norm(beta[j:])
        if norm == 0.0:
            # Suffix already collapsed
            continue
        factor = 1.0 - weights[j] / norm
        if factor > _SHRINK_EPS:
            beta[j:] *= factor
        else:
            beta[j:] = 0.0
    return beta


def _prox_column(y: np.ndarray, weights: np.ndarray, i: int) -> Tuple[int, np.ndarray, np.ndarray]:
    """Prox for column `i`, returned as (i, nonzero row indices, values)."""
    col = hierarchical_prox_one(y, weights[:, i])
    nz = np.flatnonzero(col)
    return i, nz, col[nz]


def hierarchical_prox(y: np.ndarray, weights: np.ndarray, n_jobs: int = 1) -> sparse.csc_matrix:
    """Evaluate the hierarchical prox for every column of a weight matrix.

    Parameters
    ----------
    y:
        Input vector of length p.
    weights:
        Weight matrix of shape (p, nlam); one column per lambda value.
    n_jobs:
        Number of threads used to process the columns. Columns share no
        mutable state, so the result does not depend on `n_jobs`.

    Returns
    -------
    scipy.sparse.csc_matrix
        Matrix of shape (p, nlam) whose i-th column is
        ``hierarchical_prox_one(y, weights[:, i])``.
    """
    y = np.asarray(y, dtype=float).ravel()
    weights = np.asarray(weights, dtype=float)
    if weights.ndim == 1:
        weights = weights[:, None]
    _check_weights(y, weights)

    p, nlam = weights.shape

    if n_jobs and n_jobs > 1 and nlam > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as ex:
            futs = [ex.submit(_prox_column, y, weights, i) for i in range(nlam)]
            out = [f.result() for f in futs]
    else:
        out = [_prox_column(y, weights, i) for i in range(nlam)]

    # Keep ordering stable by column
    out.sort(key=lambda t: t[0])

    # Assemble CSC arrays directly from the per-column nonzeros
    indices: List[np.ndarray] = [nz for _, nz, _ in out]
    data: List[np.ndarray] = [vals for _, _, vals in out]
    indptr = np.zeros(nlam + 1, dtype=np.int64)
    indptr[1:] = np.cumsum([len(nz) for nz in indices])

    return sparse.csc_matrix(
        (
            np.concatenate(data) if data else np.empty(0),
            np.concatenate(indices) if indices else np.empty(0, dtype=np.int64),
            indptr,
        ),
        shape=(p, nlam),
    )
