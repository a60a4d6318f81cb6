"""Basis construction helpers used by the HierBasis estimators."""

import numpy as np


def polynomial_basis(x, nbasis):
    """
    Build the simple polynomial basis ``[x, x^2, ..., x^nbasis]``.

    Parameters
    ----------
    x : array-like of shape (n,)
        The predictor values.
    nbasis : int
        Number of basis functions (highest power).

    Returns
    -------
    numpy.ndarray
        A matrix of shape (n, nbasis) whose j-th column is ``x ** (j + 1)``.

    """
    x = np.asarray(x, dtype=float).ravel()
    if nbasis < 1:
        raise ValueError(f"nbasis must be at least 1, got {nbasis}")

    # Column j holds the (j + 1)-th power of x
    powers = np.arange(1, nbasis + 1)
    return x[:, None] ** powers[None, :]


def smoothness_weights(nbasis, k):
    """
    Penalty increments ``a_j = j^k - (j - 1)^k`` for j = 1, ..., nbasis.

    With k >= 1 every increment is strictly positive, which the prox operator
    relies on.
    """
    if k < 1:
        raise ValueError(f"Smoothness order k must be at least 1, got {k}")
    j = np.arange(1, nbasis + 1, dtype=float)
    return j ** k - (j - 1) ** k


def center_columns(mat):
    """
    Center every column of a matrix.

    Returns
    -------
    centered : numpy.ndarray
        The matrix with column means removed.
    means : numpy.ndarray
        The column means that were removed.

    """
    mat = np.asarray(mat, dtype=float)
    means = mat.mean(axis=0)
    return mat - means, means


def build_design_tensor(x, nbasis):
    """
    Stack the centered polynomial basis of each predictor into a tensor.

    Parameters
    ----------
    x : array-like of shape (n, p)
        One column per predictor.
    nbasis : int
        Number of basis functions per predictor.

    Returns
    -------
    design : numpy.ndarray of shape (n, nbasis, p)
        Slab ``design[:, :, j]`` is the centered basis of predictor j.
    xbar : numpy.ndarray of shape (nbasis, p)
        Column means removed from each slab.

    """
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[:, None]
    n, p = x.shape

    design = np.empty((n, nbasis, p))
    xbar = np.empty((nbasis, p))
    for j in range(p):
        design[:, :, j], xbar[:, j] = center_columns(polynomial_basis(x[:, j], nbasis))
    return design, xbar


def max_nbasis(x):
    """
    Largest basis size whose centered polynomial basis of `x` has full column rank.

    Powers of a predictor with m distinct values span at most m functions on
    the data, one of which is the constant removed by centering.
    """
    return np.unique(np.asarray(x, dtype=float).ravel()).size - 1
