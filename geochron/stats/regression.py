"""Provide straight-line and plane fits to data with correlated errors.

This module supports:
- ordinary least squares, used for starting values,
- York regression of (X, Y) pairs with correlated errors in both variables,
- Titterington regression of (X, Y, Z) triplets onto a line in 3-D.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional

import numpy as np
from scipy.stats import t as student_t

from geochron.config import EstimationSettings, resolve as resolve_settings
from geochron.exceptions import ConvergenceError, InvalidInputError
from geochron.results import FitResult
from geochron.stats.numerics import (
    as_vector,
    goodness_of_fit,
    schur_covariance,
    student_t_factor,
)

logger = logging.getLogger(__name__)


def ordinary_least_squares(
    x: np.ndarray, y: np.ndarray, min_points: int = 3
) -> Dict[str, float]:
    """Fit an ordinary least-squares straight line ``y = a + b x``.

    Args:
        x (numpy.ndarray): Independent variable.
        y (numpy.ndarray): Dependent variable.
        min_points (int, optional): Minimum number of paired observations.
            Defaults to ``3``.

    Returns:
        dict[str, float]: ``a`` (intercept), ``b`` (slope), their standard
        errors ``se_a`` and ``se_b``, ``r2``, ``p_b`` (two-sided p-value of
        the slope), ``n`` and ``dof``.

    Raises:
        InvalidInputError: If there are too few points or no spread in ``x``.
    """
    x_arr = as_vector("x", x)
    y_arr = as_vector("y", y, x_arr.size)
    n = int(x_arr.size)
    if n < min_points:
        raise InvalidInputError(
            f"Insufficient data for regression: {n} points, minimum {min_points} required."
        )
    xbar = float(np.mean(x_arr))
    ssxx = float(np.sum((x_arr - xbar) ** 2))
    if ssxx <= 0:
        raise InvalidInputError("Insufficient variance in x for regression.")

    b, a = np.polyfit(x_arr, y_arr, 1)
    resid = y_arr - (a + b * x_arr)
    sse = float(np.sum(resid**2))
    sst = float(np.sum((y_arr - y_arr.mean()) ** 2))
    r2 = 1.0 - sse / sst if sst > 0 else math.nan

    dof = n - 2
    se_a = se_b = p_b = math.nan
    if dof > 0:
        mse = sse / dof
        se_b = math.sqrt(mse / ssxx)
        se_a = math.sqrt(mse * (1.0 / n + xbar**2 / ssxx))
        if se_b > 0:
            p_b = float(2 * student_t.sf(abs(b / se_b), dof))
    return {
        "a": float(a),
        "b": float(b),
        "se_a": se_a,
        "se_b": se_b,
        "r2": r2,
        "p_b": p_b,
        "n": n,
        "dof": dof,
    }


def _york_weights(b, sx, sy, rxy):
    return 1.0 / (sy**2 + b**2 * sx**2 - 2.0 * b * rxy * sx * sy)


def york(
    X,
    sX,
    Y,
    sY,
    rXY=0.0,
    alpha: float = 0.05,
    settings: Optional[EstimationSettings] = None,
) -> FitResult:
    """Fit a straight line to (X, Y) data with correlated errors.

    Args:
        X, Y: Coordinates of the n data points.
        sX, sY: Their one-sigma standard errors (either may be zero, not both).
        rXY: Error correlation coefficients (scalar or length n).
        alpha: Significance level of the confidence intervals.
        settings: Iteration cap and relative slope tolerance.

    Returns:
        FitResult: Parameters ``("a", "b")`` (intercept, slope) with their
        covariance, ``df = n - 2``, MSWD and chi-square p-value. ``extras``
        holds ``iterations`` and the adjusted coordinates ``x_adj``.

    Raises:
        InvalidInputError: On mismatched lengths, fewer than two points,
            correlations outside [-1, 1] or zero total error.

    Note:
        The weights are written in variance form so that error-free X values
        are allowed; with ``sX = 0`` and equal ``sY`` the fit reduces to
        ordinary least squares.

    References:
        York, D., Evensen, N.M., Martinez, M.L. and De Basabe Delgado, J.,
        2004. Unified equations for the slope, intercept, and standard errors
        of the best straight line. American Journal of Physics, 72, 367-375.
    """
    cfg = resolve_settings(settings)
    x = as_vector("X", X)
    n = x.size
    y = as_vector("Y", Y, n)
    sx = as_vector("sX", sX, n)
    sy = as_vector("sY", sY, n)
    r = as_vector("rXY", rXY, n)
    if n < 2:
        raise InvalidInputError("York regression requires at least 2 points.")
    if np.any(np.abs(r) > 1):
        raise InvalidInputError("Correlation coefficients must lie within [-1, 1].")
    if np.any(sx < 0) or np.any(sy < 0) or np.any((sx == 0) & (sy == 0)):
        raise InvalidInputError("Standard errors must be non-negative and not both zero.")

    b = ordinary_least_squares(x, y, min_points=2)["b"]
    converged = False
    iterations = 0
    for iterations in range(1, cfg.york_max_iter + 1):
        W = _york_weights(b, sx, sy, r)
        xbar = np.sum(W * x) / np.sum(W)
        ybar = np.sum(W * y) / np.sum(W)
        U = x - xbar
        V = y - ybar
        beta = W * (U * sy**2 + b * V * sx**2 - (b * U + V) * r * sx * sy)
        b_new = float(np.sum(W * beta * V) / np.sum(W * beta * U))
        delta = abs(b_new - b)
        b = b_new
        if delta <= cfg.york_tol * max(abs(b), np.finfo(float).tiny):
            converged = True
            break
    if not converged:
        logger.warning("York regression stopped at the iteration cap (%d)", cfg.york_max_iter)

    W = _york_weights(b, sx, sy, r)
    xbar = np.sum(W * x) / np.sum(W)
    ybar = np.sum(W * y) / np.sum(W)
    U = x - xbar
    V = y - ybar
    beta = W * (U * sy**2 + b * V * sx**2 - (b * U + V) * r * sx * sy)
    a = float(ybar - b * xbar)

    x_adj = xbar + beta
    x_adj_bar = np.sum(W * x_adj) / np.sum(W)
    u = x_adj - x_adj_bar
    var_b = 1.0 / np.sum(W * u**2)
    var_a = 1.0 / np.sum(W) + x_adj_bar**2 * var_b
    cov_ab = -x_adj_bar * var_b
    cov = np.array([[var_a, cov_ab], [cov_ab, var_b]])

    df = n - 2
    ss = float(np.sum(W * (y - a - b * x) ** 2))
    mswd, p_value = goodness_of_fit(ss, df)
    return FitResult(
        par=np.array([a, b]),
        cov=cov,
        names=("a", "b"),
        df=df,
        mswd=mswd,
        p_value=p_value,
        tfact=student_t_factor(alpha, df),
        extras={"iterations": iterations, "x_adj": x_adj, "ss": ss},
    )


def _covariance_stack(sx, sy, sz, rxy, rxz, ryz) -> np.ndarray:
    cov = np.empty((sx.size, 3, 3))
    cov[:, 0, 0] = sx**2
    cov[:, 1, 1] = sy**2
    cov[:, 2, 2] = sz**2
    cov[:, 0, 1] = cov[:, 1, 0] = rxy * sx * sy
    cov[:, 0, 2] = cov[:, 2, 0] = rxz * sx * sz
    cov[:, 1, 2] = cov[:, 2, 1] = ryz * sy * sz
    return cov


def titterington(
    X,
    sX,
    Y,
    sY,
    Z,
    sZ,
    rXY=0.0,
    rXZ=0.0,
    rYZ=0.0,
    alpha: float = 0.05,
    settings: Optional[EstimationSettings] = None,
) -> FitResult:
    """Fit the 3-D line ``Y = a + b X``, ``Z = A + B X`` to correlated data.

    Each point has a latent true abscissa ``x_i``. The fit alternates a
    closed-form update of every ``x_i`` (the point on the current line
    closest to the observation in its own error metric) with a generalised
    least-squares update of ``(a, b, A, B)``, until the relative parameter
    change falls below ``settings.titterington_tol``.

    Returns:
        FitResult: Parameters ``("a", "b", "A", "B")``, covariance from the
        Fisher information with the latent abscissae profiled out,
        ``df = 2n - 4``, MSWD and p-value.

    Raises:
        InvalidInputError: On mismatched lengths or fewer than 3 points.
        ConvergenceError: If the Fisher information cannot be inverted.

    References:
        Titterington, D.M. and Halliday, A.N., 1979. On the fitting of
        parallel isochrons and the method of maximum likelihood. Chemical
        Geology, 26, 183-195.
    """
    cfg = resolve_settings(settings)
    x_obs = as_vector("X", X)
    n = x_obs.size
    if n < 3:
        raise InvalidInputError("Titterington regression requires at least 3 points.")
    y_obs = as_vector("Y", Y, n)
    z_obs = as_vector("Z", Z, n)
    cov = _covariance_stack(
        as_vector("sX", sX, n),
        as_vector("sY", sY, n),
        as_vector("sZ", sZ, n),
        as_vector("rXY", rXY, n),
        as_vector("rXZ", rXZ, n),
        as_vector("rYZ", rYZ, n),
    )
    try:
        omega = np.linalg.inv(cov)
    except np.linalg.LinAlgError:
        raise InvalidInputError("Per-point covariance matrices must be invertible.") from None

    fy = ordinary_least_squares(x_obs, y_obs, min_points=2)
    fz = ordinary_least_squares(x_obs, z_obs, min_points=2)
    par = np.array([fy["a"], fy["b"], fz["a"], fz["b"]])

    def latent(p):
        a, b, A, B = p
        g = np.array([1.0, b, B])
        c = np.column_stack([x_obs, y_obs - a, z_obs - A])
        og = omega @ g
        return np.einsum("ni,ni->n", og, c) / (og @ g), g

    def design(xl):
        H = np.zeros((n, 3, 4))
        H[:, 1, 0] = 1.0
        H[:, 1, 1] = xl
        H[:, 2, 2] = 1.0
        H[:, 2, 3] = xl
        return H

    converged = False
    iterations = 0
    for iterations in range(1, cfg.titterington_max_iter + 1):
        xl, _ = latent(par)
        H = design(xl)
        f = np.column_stack([x_obs - xl, y_obs, z_obs])
        M = np.einsum("nji,njk,nkl->il", H, omega, H)
        v = np.einsum("nji,njk,nk->i", H, omega, f)
        new = np.linalg.solve(M, v)
        change = np.linalg.norm(new - par)
        par = new
        if change <= cfg.titterington_tol * max(np.linalg.norm(par), 1.0):
            converged = True
            break
    if not converged:
        logger.warning(
            "Titterington regression stopped at the iteration cap (%d)",
            cfg.titterington_max_iter,
        )

    xl, g = latent(par)
    H = design(xl)
    resid = np.column_stack([x_obs - xl, y_obs, z_obs]) - np.einsum("nij,j->ni", H, par)
    ss = float(np.einsum("ni,nij,nj->", resid, omega, resid))

    jac = np.zeros((n, 3, n + 4))
    jac[np.arange(n), :, np.arange(n)] = -g
    jac[:, :, n:] = -H
    fisher = np.einsum("nji,njk,nkl->il", jac, omega, jac)
    try:
        par_cov = schur_covariance(fisher, n)
    except np.linalg.LinAlgError as exc:
        raise ConvergenceError("Titterington Fisher information is singular.") from exc

    df = 2 * n - 4
    mswd, p_value = goodness_of_fit(ss, df)
    return FitResult(
        par=par,
        cov=par_cov,
        names=("a", "b", "A", "B"),
        df=df,
        mswd=mswd,
        p_value=p_value,
        tfact=student_t_factor(alpha, df),
        extras={"iterations": iterations, "x_adj": xl, "ss": ss},
    )
