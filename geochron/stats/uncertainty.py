"""
Covariance construction and first-order error propagation.

Ratios that share a numerator or denominator isotope are correlated even
when the underlying counts are not. The ``cov_*`` identities recover those
covariances from the standard errors of three ratios that close a triangle
(x/z, y/z and x/y, for instance).
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

from geochron.exceptions import InvalidInputError


def cov_xz_yz(xz, err_xz, yz, err_yz, err_xy):
    """Covariance of x/z and y/z given the error of x/y.

    Uses var(ln xy) = var(ln xz) + var(ln yz) - 2 cov(ln xz, ln yz).
    """
    xy = xz / yz
    return xz * yz * ((err_xz / xz) ** 2 + (err_yz / yz) ** 2 - (err_xy / xy) ** 2) / 2


def cov_zx_zy(zx, err_zx, zy, err_zy, err_xy):
    """Covariance of z/x and z/y given the error of x/y."""
    xy = zy / zx
    return zx * zy * ((err_zx / zx) ** 2 + (err_zy / zy) ** 2 - (err_xy / xy) ** 2) / 2


def cov_xz_zy(xz, err_xz, zy, err_zy, err_xy):
    """Covariance of x/z and z/y given the error of x/y."""
    xy = xz * zy
    return xz * zy * ((err_xy / xy) ** 2 - (err_xz / xz) ** 2 - (err_zy / zy) ** 2) / 2


def cov_reciprocal(x, err_x, y, err_y):
    """Covariance of a ratio and its reciprocal (y = 1/x) to first order."""
    return -(err_x / x) * (err_y / y) * x * y


def cor2cov(errors: Sequence[float], cor: np.ndarray) -> np.ndarray:
    """Convert standard errors and a correlation matrix to a covariance matrix."""
    s = np.asarray(errors, dtype=float)
    cor = np.asarray(cor, dtype=float)
    if cor.shape != (s.size, s.size):
        raise InvalidInputError("Correlation matrix shape must match the number of errors.")
    return symmetrize(cor * np.outer(s, s))


def cov2d(sx: float, sy: float, rxy: float) -> np.ndarray:
    return np.array([[sx**2, rxy * sx * sy], [rxy * sx * sy, sy**2]])


def cov3d(sx, sy, sz, rxy, rxz, ryz) -> np.ndarray:
    cor = np.array([[1.0, rxy, rxz], [rxy, 1.0, ryz], [rxz, ryz, 1.0]])
    return cor2cov([sx, sy, sz], cor)


def symmetrize(mat: np.ndarray) -> np.ndarray:
    """Mirror the upper triangle onto the lower triangle."""
    mat = np.array(mat, dtype=float)
    upper = np.triu(mat)
    return upper + np.triu(mat, 1).T


def propagate(jacobian: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """Delta-method transform of a covariance matrix: ``J @ cov @ J.T``."""
    J = np.atleast_2d(np.asarray(jacobian, dtype=float))
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    if J.shape[1] != cov.shape[0]:
        raise InvalidInputError(
            f"Jacobian has {J.shape[1]} columns but covariance is {cov.shape[0]}-square."
        )
    return symmetrize(J @ cov @ J.T)


def propagate_error(jacobian: Sequence[float], cov: np.ndarray) -> float:
    """Standard error of a scalar function with gradient ``jacobian``."""
    var = float(propagate(np.asarray(jacobian, dtype=float)[None, :], cov)[0, 0])
    return math.sqrt(var) if var > 0 else 0.0


def _round_uncertainty(u: float, sigdig: int) -> Tuple[float, int]:
    if u <= 0 or not math.isfinite(u):
        return u, 0
    u = abs(float(u))
    exponent = math.floor(math.log10(u))
    ndigits = sigdig - 1 - exponent
    ru = round(u, ndigits)
    # rounding can carry into the next decade, e.g. 0.096 -> 0.10
    if ru >= 10 ** (exponent + 1):
        ndigits -= 1
        ru = round(u, ndigits)
    return float(ru), int(ndigits)


def round_value_to_uncertainty(
    value: float, uncertainty: float, sigdig: int = 2
) -> Tuple[float, float]:
    """
    Round an uncertainty to ``sigdig`` significant digits and the value to the
    same decimal place.
    """
    ru, ndigits = _round_uncertainty(abs(float(uncertainty)), sigdig)
    if not math.isfinite(ru) or ru == 0:
        return float(value), float(uncertainty)
    return float(round(float(value), ndigits)), float(ru)


def format_value_with_uncertainty(
    value: float, uncertainty: float, unit: str = "", sigdig: int = 2
) -> str:
    ru, ndigits = _round_uncertainty(abs(float(uncertainty)), sigdig)
    if ru == 0 or not math.isfinite(ru):
        return f"{value:.6g} ± {uncertainty:.6g} {unit}".strip()
    digits = max(ndigits, 0)
    return f"{round(float(value), ndigits):.{digits}f} ± {ru:.{digits}f} {unit}".strip()
