"""Central ages: geometric means with a lognormal overdispersion term.

Three flavours are provided:

- :func:`central_age` for any positive values with standard errors,
  following the random effects model of Galbraith (2005, p. 100);
- :func:`central_fissiontracks` working directly on the spontaneous and
  induced track counts (Galbraith 2005, p. 49);
- :func:`central_uthhe` averaging U-Th-(Sm)-He compositions in log-ratio
  space before converting the mean composition to an age.

:func:`central` dispatches on the decay scheme of a dataset.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
from scipy.optimize import minimize, minimize_scalar
from scipy.stats import chi2, norm

from geochron.chronometers import get_chronometer
from geochron.chronometers.base import apply_exterr
from geochron.chronometers.uthhe import logratio_age, logratio_age_jacobian, logratio_data
from geochron.config import EstimationSettings, resolve as resolve_settings
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.results import FitResult
from geochron.schema import Scheme
from geochron.stats.numerics import (
    as_vector,
    goodness_of_fit,
    solve_unit_mswd,
    student_t_factor,
)

logger = logging.getLogger(__name__)

_SIGMA_START = 0.15


def _homogeneity(df: int, Chi2: float):
    """MSWD and p-value of the homogeneity test, which adds back the degree
    of freedom spent on the dispersion."""
    if not math.isfinite(Chi2) or df + 1 <= 0:
        return math.nan, math.nan
    return Chi2 / (df + 1), float(chi2.sf(Chi2, df + 1))


def _eq_6_9(sigma, mu, zu, su):
    wu = 1.0 / (sigma**2 + su**2)
    return (1.0 - np.sum((wu * (zu - mu)) ** 2) / np.sum(wu)) ** 2


def central_age(
    values,
    errors,
    alpha: float = 0.05,
    settings: Optional[EstimationSettings] = None,
) -> FitResult:
    """Central value and dispersion of positive values with standard errors.

    The central value ``mu`` of ``z = ln(values)`` and the dispersion
    ``sigma`` are updated in turn: ``mu`` as the weighted mean with weights
    ``1/(sigma^2 + s_z^2)``, ``sigma`` by minimising Galbraith's equation 6.9
    on ``(0, 10)``. The loop stops when both change by less than
    ``settings.central_tol`` (relative) or after ``settings.central_max_iter``
    passes.

    Args:
        values: Positive values (usually ages).
        errors: Their standard errors.
        alpha: Significance level of the confidence intervals.
        settings: Iteration cap and tolerance.

    Returns:
        FitResult: Parameter ``("t",)`` with ``df = n - 2``; the MSWD and
        p-value test homogeneity on ``n - 1`` degrees of freedom. ``disp`` is
        the relative dispersion ``sigma``.

    Raises:
        InvalidInputError: On mismatched lengths, non-positive values or
            negative errors.

    Note:
        Identical values have no measurable dispersion: ``sigma`` is 0 and
        the MSWD is 0, or NaN when the errors are zero as well.
    """
    cfg = resolve_settings(settings)
    x = as_vector("values", values)
    sx = as_vector("errors", errors, x.size)
    if np.any(x <= 0):
        raise InvalidInputError("Central ages require strictly positive values.")
    if np.any(sx < 0):
        raise InvalidInputError("Standard errors must be non-negative.")
    zu = np.log(x)
    su = sx / x
    n = zu.size
    df = n - 2

    if np.ptp(zu) == 0:
        mu = float(zu[0])
        sigma = 0.0
        tt = math.exp(mu)
        st = 0.0 if np.any(su == 0) else tt / math.sqrt(np.sum(1.0 / su**2))
        Chi2 = math.nan if np.any(su == 0) else 0.0
    else:
        sigma = _SIGMA_START
        mu = math.nan
        converged = False
        for it in range(1, cfg.central_max_iter + 1):
            wu = 1.0 / (sigma**2 + su**2)
            mu_new = float(np.sum(wu * zu) / np.sum(wu))
            res = minimize_scalar(
                _eq_6_9, bounds=(0.0, 10.0), args=(mu_new, zu, su), method="bounded"
            )
            sigma_new = float(res.x)
            delta = max(abs(mu_new - mu) / max(abs(mu_new), 1.0), abs(sigma_new - sigma))
            mu, sigma = mu_new, sigma_new
            logger.debug("Central age iteration %d: mu=%g, sigma=%g", it, mu, sigma)
            if delta <= cfg.central_tol:
                converged = True
                break
        if not converged:
            logger.warning("Central age stopped at the iteration cap (%d)", cfg.central_max_iter)
        wu = 1.0 / (sigma**2 + su**2)
        tt = math.exp(mu)
        st = tt / math.sqrt(np.sum(wu))
        with np.errstate(divide="ignore", invalid="ignore"):
            Chi2 = float(np.sum((zu / su) ** 2) - np.sum(zu / su**2) ** 2 / np.sum(1.0 / su**2))

    mswd, p_value = _homogeneity(df, Chi2)
    return FitResult(
        par=np.array([tt]),
        cov=np.array([[st**2]]),
        names=("t",),
        df=df,
        mswd=mswd,
        p_value=p_value,
        tfact=student_t_factor(alpha, df),
        disp=sigma,
        disp_ci=sigma * float(norm.ppf(1.0 - alpha / 2.0)),
        extras={"mu": mu},
    )


def central_fissiontracks(
    dataset: Dataset,
    alpha: float = 0.05,
    exterr: bool = False,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
) -> FitResult:
    """Central fission-track age from the track counts.

    The proportion ``theta = Ns/(Ns + Ni)`` and the dispersion ``sigma`` are
    estimated with the binomial fixed-point iteration of Galbraith (2005).

    Args:
        dataset: Fission-track data with ``Ns`` and ``Ni`` columns.
        alpha: Significance level of the confidence intervals.
        exterr: Include the zeta and rhoD errors in the age error.
        settings: Iteration cap and tolerance.
        constants: Constants table; the process-wide default if omitted.
    """
    if dataset.scheme is not Scheme.FISSIONTRACKS:
        raise InvalidInputError("Count-based central ages require fission-track data.")
    cfg = resolve_settings(settings)
    lam = resolve(constants).decay("U238")[0]
    Nsj = dataset.column("Ns")
    Nij = dataset.column("Ni")
    if np.any(Nsj + Nij <= 0):
        raise InvalidInputError("Every grain must have at least one track.")
    Ns, Ni = Nsj.sum(), Nij.sum()
    if Ns <= 0 or Ni <= 0:
        raise InvalidInputError("Central ages need spontaneous and induced tracks.")
    Chi2 = float(np.sum((Nsj * Ni - Nij * Ns) ** 2 / (Nsj + Nij)) / (Ns * Ni))
    mj = Nsj + Nij
    pj = Nsj / mj
    theta = Ns / mj.sum()
    sigma = _SIGMA_START
    converged = False
    for it in range(1, cfg.central_max_iter + 1):
        wj = mj / (theta * (1 - theta) + (mj - 1) * (theta * (1 - theta) * sigma) ** 2)
        sigma_new = sigma * math.sqrt(np.sum((wj * (pj - theta)) ** 2) / np.sum(wj))
        theta_new = float(np.sum(wj * pj) / np.sum(wj))
        delta = max(abs(theta_new - theta) / theta, abs(sigma_new - sigma))
        theta, sigma = theta_new, sigma_new
        logger.debug("Fission-track central iteration %d: theta=%g, sigma=%g", it, theta, sigma)
        if delta <= cfg.central_tol:
            converged = True
            break
    if not converged:
        logger.warning("Fission-track central age stopped at the iteration cap (%d)", cfg.central_max_iter)
    wj = mj / (theta * (1 - theta) + (mj - 1) * (theta * (1 - theta) * sigma) ** 2)

    zeta, rhoD = dataset.zeta, dataset.rhoD
    tt = math.log1p(0.5 * lam * (zeta[0] / 1e6) * rhoD[0] * theta / (1 - theta)) / lam
    rel = 1.0 / (np.sum(wj) * (theta * (1 - theta)) ** 2)
    if exterr:
        rel += (rhoD[1] / rhoD[0]) ** 2 + (zeta[1] / zeta[0]) ** 2
    st = tt * math.sqrt(rel)
    df = len(dataset) - 2
    mswd, p_value = _homogeneity(df, Chi2)
    return FitResult(
        par=np.array([tt]),
        cov=np.array([[st**2]]),
        names=("t",),
        df=df,
        mswd=mswd,
        p_value=p_value,
        tfact=student_t_factor(alpha, df),
        disp=sigma,
        disp_ci=sigma * float(norm.ppf(1.0 - alpha / 2.0)),
        extras={"theta": theta, "exterr": exterr},
    )


def _logratio_ss(mu, comp, omega):
    d = comp - mu
    return float(np.einsum("ni,nij,nj->", d, omega, d))


def _logratio_mean(comp: np.ndarray, cov: np.ndarray):
    """Weighted mean composition and its covariance (inverse of the summed
    weight matrices, the Hessian of half the sum of squares)."""
    omega = np.linalg.inv(cov)

    def grad(mu, *_args):
        return -2.0 * np.einsum("nij,nj->i", omega, comp - mu)

    res = minimize(
        _logratio_ss, comp.mean(axis=0), args=(comp, omega), jac=grad, method="BFGS"
    )
    if not res.success:
        logger.warning("Log-ratio mean optimisation ended early: %s", res.message)
    return res.x, np.linalg.inv(omega.sum(axis=0)), omega


def central_uthhe(
    dataset: Dataset,
    alpha: float = 0.05,
    model: int = 1,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
) -> FitResult:
    """Central U-Th-(Sm)-He age from the mean log-ratio composition.

    Args:
        dataset: U-Th-He data, with or without Sm.
        alpha: Significance level of the confidence intervals.
        model: ``1`` weighted by the analytical errors, ``2`` unweighted
            arithmetic mean, ``3`` weighted with an overdispersion ``w``
            (relative error added to every element) that brings the MSWD
            to 1.
        settings: Bracketing cap of the overdispersion search.
        constants: Constants table; the process-wide default if omitted.

    Returns:
        FitResult: Parameters ``("t", "u", "v"[, "w"])`` where ``u``, ``v``
        and ``w`` are the mean log(U/He), log(Th/He) and log(Sm/He) ratios,
        with ``df = d (n - 1)``. For model 1 ``extras["disp[t]"]`` is the
        age confidence half-width inflated by ``sqrt(MSWD)``; for model 3
        ``disp`` holds ``w``.
    """
    if dataset.scheme is not Scheme.UTHHE:
        raise InvalidInputError("Log-ratio central ages require U-Th-He data.")
    if model not in (1, 2, 3):
        raise InvalidInputError(f"Unknown variance model {model}; expected 1, 2 or 3.")
    cfg = resolve_settings(settings)
    comp, cov = logratio_data(dataset)
    n, d = comp.shape
    df = d * (n - 1)
    tfact = student_t_factor(alpha, df)
    names = ("t", "u", "v", "w")[: d + 1]
    extras = {}
    w = 0.0

    if model == 2:
        mu = comp.mean(axis=0)
        mu_cov = np.atleast_2d(np.cov(comp, rowvar=False)) / n
        mswd = p_value = math.nan
    else:
        mu, mu_cov, omega = _logratio_mean(comp, cov)
        mswd, p_value = goodness_of_fit(_logratio_ss(mu, comp, omega), df)
        if model == 3:

            def mswd_of(ww):
                c_w = logratio_data(dataset, ww)[1]
                m, _, o = _logratio_mean(comp, c_w)
                return _logratio_ss(m, comp, o) / df

            scale = math.sqrt(mswd) * float(np.median(np.sqrt(np.diagonal(cov, axis1=1, axis2=2))))
            w = solve_unit_mswd(mswd_of, scale, cfg.overdispersion_max_doublings)
            mu, mu_cov, omega = _logratio_mean(comp, logratio_data(dataset, w)[1])
            mswd, p_value = goodness_of_fit(_logratio_ss(mu, comp, omega), df)

    tt, J = logratio_age_jacobian(mu, constants)
    full_J = np.vstack([J, np.eye(d)])
    par_cov = full_J @ mu_cov @ full_J.T
    if model == 1 and math.isfinite(mswd):
        extras["disp[t]"] = tfact * logratio_age(mu, mswd * mu_cov, constants)[1]
    return FitResult(
        par=np.concatenate([[tt], mu]),
        cov=(par_cov + par_cov.T) / 2.0,
        names=names,
        df=df,
        mswd=mswd,
        p_value=p_value,
        model=model,
        tfact=tfact,
        disp=w,
        disp_ci=w * float(norm.ppf(1.0 - alpha / 2.0)),
        extras=extras,
    )


def central_dataset(
    dataset: Dataset,
    alpha: float = 0.05,
    exterr: bool = False,
    i2i: bool = False,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
    **options,
) -> FitResult:
    """Central age of the per-aliquot ages of any scheme.

    Ages are computed without external errors, averaged, and the external
    errors of the scheme are then folded into the pooled age.
    """
    chron = get_chronometer(dataset.scheme)
    tab = chron.ages(dataset, exterr=False, i2i=i2i, constants=constants, **options)
    fit = central_age(tab["t"], tab["s[t]"], alpha=alpha, settings=settings)
    if exterr:
        fit = apply_exterr(fit, chron, dataset, constants, **options)
    return fit


def central(
    dataset: Dataset,
    alpha: float = 0.05,
    model: int = 1,
    exterr: bool = False,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
    **options,
) -> FitResult:
    """Central age of a dataset, choosing the count-based or log-ratio
    variant for fission-track and U-Th-He data."""
    if dataset.scheme is Scheme.FISSIONTRACKS:
        return central_fissiontracks(dataset, alpha, exterr, settings, constants)
    if dataset.scheme is Scheme.UTHHE:
        return central_uthhe(dataset, alpha, model, settings, constants)
    return central_dataset(
        dataset, alpha, exterr, settings=settings, constants=constants, **options
    )
