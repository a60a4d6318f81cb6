"""Small utilities shared by the solvers: timing, warnings and sparsity counts."""

import time
from functools import wraps

import numpy as np
from scipy import sparse


class ConvergenceWarning(UserWarning):
    """Raised (as a warning) when an iterative fit hits its iteration budget."""


_INDENT_LEVEL = 0


def time_it(func):
    """Decorator printing execution time with indentation for nested calls.

    Only prints when the call is verbose, i.e. the bound object (first
    positional argument) has a truthy ``verbose`` attribute or the call
    receives ``verbose=True``.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        global _INDENT_LEVEL
        verbose = kwargs.get("verbose", False) or (bool(args) and getattr(args[0], "verbose", False))
        if not verbose:
            return func(*args, **kwargs)

        _INDENT_LEVEL += 1
        tabs = "\t" * (_INDENT_LEVEL - 1)
        t0 = time.time()
        print(f"{tabs}Executing <{func.__name__}>")
        try:
            out = func(*args, **kwargs)
        finally:
            _INDENT_LEVEL -= 1
        dt = time.time() - t0
        mins = int(dt // 60)
        secs = dt % 60
        print(f"{tabs}Function <{func.__name__}> execution time : {mins:.0f} minutes and {secs:.2f} seconds")
        return out
    return wrapper


def active_set_size(beta):
    """Number of nonzero coefficients in each column of a (sparse or dense) matrix."""
    if sparse.issparse(beta):
        beta = sparse.csc_matrix(beta, copy=True)
        beta.eliminate_zeros()
        return np.diff(beta.indptr).astype(int)
    return np.count_nonzero(np.asarray(beta), axis=0)


def check_finite(name, arr):
    """Raise a ValueError if `arr` holds NaN or infinite values."""
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains NaN or infinite values")
