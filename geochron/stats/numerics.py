"""Numerical helpers shared by the estimation engines."""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.optimize import brentq
from scipy.stats import chi2, t as student_t

from geochron.exceptions import InvalidInputError

logger = logging.getLogger(__name__)


def as_vector(name: str, values, n: Optional[int] = None) -> np.ndarray:
    """Coerce ``values`` to a finite 1-D float array, broadcasting scalars to
    length ``n`` and checking the length when ``n`` is given."""
    arr = np.asarray(values, dtype=float)
    if n is not None and arr.ndim == 0:
        arr = np.full(n, float(arr))
    arr = np.atleast_1d(arr)
    if n is not None and arr.shape != (n,):
        raise InvalidInputError(f"'{name}' must have length {n}, got {arr.size}.")
    if not np.all(np.isfinite(arr)):
        raise InvalidInputError(f"'{name}' must contain finite values.")
    return arr


def goodness_of_fit(ss: float, df: float) -> Tuple[float, float]:
    """Return ``(mswd, p_value)`` for a sum of squares with ``df`` degrees
    of freedom. Both are NaN when ``df`` is not positive."""
    if df <= 0 or not math.isfinite(ss):
        return math.nan, math.nan
    return float(ss / df), float(chi2.sf(ss, df))


def student_t_factor(alpha: float, df: float) -> float:
    """Two-sided ``100(1-alpha)%`` Student-t quantile, NaN if ``df <= 0``."""
    if df <= 0:
        return math.nan
    return float(student_t.ppf(1.0 - alpha / 2.0, df))


def numerical_hessian(
    fun: Callable[[np.ndarray], float], x: np.ndarray, rel_step: float = 1e-4
) -> np.ndarray:
    """Central-difference Hessian of a scalar function at ``x``."""
    x = np.asarray(x, dtype=float)
    n = x.size
    h = rel_step * np.maximum(np.abs(x), 1.0)
    hess = np.zeros((n, n))
    f0 = fun(x)
    for i in range(n):
        ei = np.zeros(n)
        ei[i] = h[i]
        hess[i, i] = (fun(x + ei) - 2.0 * f0 + fun(x - ei)) / h[i] ** 2
        for j in range(i + 1, n):
            ej = np.zeros(n)
            ej[j] = h[j]
            hess[i, j] = (
                fun(x + ei + ej) - fun(x + ei - ej) - fun(x - ei + ej) + fun(x - ei - ej)
            ) / (4.0 * h[i] * h[j])
            hess[j, i] = hess[i, j]
    return hess


def inverse_hessian(hess: np.ndarray) -> np.ndarray:
    """Invert a Hessian, rejecting results with non-positive variances.

    Raises:
        numpy.linalg.LinAlgError: If the matrix is singular or its inverse
            is not a valid covariance matrix.
    """
    cov = np.linalg.inv(hess)
    if not np.all(np.isfinite(cov)) or np.any(np.diag(cov) <= 0):
        raise np.linalg.LinAlgError("Hessian is not positive definite.")
    return (cov + cov.T) / 2.0


def schur_covariance(fisher: np.ndarray, n_nuisance: int) -> np.ndarray:
    """Covariance of the trailing parameters of a Fisher information matrix
    whose leading ``n_nuisance`` rows/columns belong to nuisance parameters.

    Inverts ``D - C A^-1 B`` for the block matrix ``[[A, B], [C, D]]``.
    """
    A = fisher[:n_nuisance, :n_nuisance]
    B = fisher[:n_nuisance, n_nuisance:]
    C = fisher[n_nuisance:, :n_nuisance]
    D = fisher[n_nuisance:, n_nuisance:]
    return inverse_hessian(D - C @ np.linalg.solve(A, B))


def solve_unit_mswd(
    mswd_of: Callable[[float], float], scale: float, max_doublings: int = 60
) -> float:
    """Find the overdispersion ``w >= 0`` at which ``mswd_of(w) == 1``.

    ``mswd_of`` must decrease with ``w``. Returns 0 when the data are not
    overdispersed. The bracket starts at ``scale`` and is doubled until it
    contains the root; if it never does, the last upper bound is returned.
    """
    if not mswd_of(0.0) > 1.0:
        return 0.0
    upper = max(float(scale), np.finfo(float).tiny)
    for _ in range(max_doublings):
        if mswd_of(upper) < 1.0:
            return float(brentq(lambda w: mswd_of(w) - 1.0, 0.0, upper, xtol=1e-12 * upper))
        upper *= 2.0
    logger.warning(
        "Could not bracket the overdispersion root after %d doublings; using w=%g",
        max_doublings,
        upper,
    )
    return upper
