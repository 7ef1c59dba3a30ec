"""Weighted means with outlier rejection, and plateau ages.

Three variance models are supported:

- model 1: inverse-variance weights from the analytical errors;
- model 2: unweighted arithmetic mean with the standard error of the mean;
- model 3: inverse-variance weights after adding an overdispersion ``w`` to
  every variance, with ``w`` chosen so the MSWD equals 1.

Outliers are rejected one at a time with Chauvenet's criterion: the value
whose two-sided tail probability ``p`` is smallest is dropped while
``n * p < 0.5``, then the mean is refitted.

A plateau is a run of at least three consecutive heating steps whose ages
pass a chi-square homogeneity test; of all such runs the one carrying the
largest share of the released gas is averaged.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import replace
from typing import Optional, Tuple

import numpy as np
from scipy.stats import norm

from geochron.chronometers import get_chronometer
from geochron.chronometers.base import apply_exterr
from geochron.config import EstimationSettings, resolve as resolve_settings
from geochron.constants import Constants
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

MIN_PLATEAU_STEPS = 3


def _inverse_variance(x: np.ndarray, var: np.ndarray) -> Tuple[float, float, float]:
    """Return ``(mean, variance of the mean, sum of squares)``."""
    w = 1.0 / var
    mu = float(np.sum(w * x) / np.sum(w))
    return mu, float(1.0 / np.sum(w)), float(np.sum(w * (x - mu) ** 2))


def _fit(x: np.ndarray, sx: np.ndarray, model: int, cfg: EstimationSettings):
    """Mean, its variance, MSWD, p-value, overdispersion and the effective
    per-value errors used for outlier detection."""
    n = x.size
    df = n - 1
    if model == 2:
        mu = float(np.mean(x))
        sd = float(np.std(x, ddof=1)) if n > 1 else math.nan
        var = sd**2 / n
        mswd = p_value = math.nan
        if np.all(sx > 0):
            mswd, p_value = goodness_of_fit(_inverse_variance(x, sx**2)[2], df)
        return mu, var, mswd, p_value, 0.0, np.full(n, sd)
    mu, var, ss = _inverse_variance(x, sx**2)
    mswd, p_value = goodness_of_fit(ss, df)
    if model == 1:
        inflation = math.sqrt(max(mswd, 1.0)) if math.isfinite(mswd) else 1.0
        return mu, var, mswd, p_value, 0.0, sx * inflation

    def mswd_of(w):
        return _inverse_variance(x, sx**2 + w**2)[2] / df

    w = 0.0
    if df > 0:
        w = solve_unit_mswd(mswd_of, math.sqrt(mswd) * float(np.median(sx)), cfg.overdispersion_max_doublings)
    mu, var, ss = _inverse_variance(x, sx**2 + w**2)
    mswd, p_value = goodness_of_fit(ss, df)
    return mu, var, mswd, p_value, w, np.sqrt(sx**2 + w**2)


def chauvenet(
    values,
    errors,
    model: int = 1,
    settings: Optional[EstimationSettings] = None,
) -> np.ndarray:
    """Boolean mask of the values kept by iterated Chauvenet rejection.

    For model 1 the errors are inflated by ``sqrt(MSWD)`` when the MSWD
    exceeds 1; for model 3 the overdispersion is added to them; for model 2
    the sample standard deviation is used.
    """
    cfg = resolve_settings(settings)
    x = as_vector("values", values)
    sx = as_vector("errors", errors, x.size)
    valid = np.ones(x.size, dtype=bool)
    while valid.sum() > 3:
        idx = np.flatnonzero(valid)
        mu, _, _, _, _, s_eff = _fit(x[idx], sx[idx], model, cfg)
        with np.errstate(divide="ignore", invalid="ignore"):
            p = 2.0 * norm.sf(np.abs(x[idx] - mu) / s_eff)
        worst = int(np.nanargmin(p)) if np.any(np.isfinite(p)) else None
        if worst is None or idx.size * p[worst] >= 0.5:
            break
        valid[idx[worst]] = False
        logger.info(
            "Rejected outlier %d (value %g, p=%.3g, n=%d)", idx[worst], x[idx[worst]], p[worst], idx.size
        )
    return valid


def weighted_mean(
    values,
    errors,
    model: int = 1,
    alpha: float = 0.05,
    detect_outliers: bool = True,
    settings: Optional[EstimationSettings] = None,
) -> FitResult:
    """Weighted mean of values with standard errors.

    Args:
        values: Values to average, usually ages.
        errors: Their standard errors.
        model: Variance model, ``1``, ``2`` or ``3``.
        alpha: Significance level of the confidence intervals.
        detect_outliers: Apply Chauvenet's criterion before averaging.
        settings: Bracketing cap of the overdispersion search.

    Returns:
        FitResult: Parameter ``("t",)`` with ``df = n - 1`` over the retained
        values, which are flagged in ``valid``. For model 1 with an MSWD
        above 1, ``extras["disp[t]"]`` is the confidence half-width inflated
        by ``sqrt(MSWD)``; for model 3 ``disp`` is the overdispersion.

    Raises:
        InvalidInputError: On an unknown model or non-positive errors for
            models 1 and 3.

    Example:
        >>> fit = weighted_mean([10.0, 10.2, 9.9], [0.1, 0.1, 0.2])
        >>> round(fit.value("t"), 2)
        10.08
    """
    if model not in (1, 2, 3):
        raise InvalidInputError(f"Unknown variance model {model}; expected 1, 2 or 3.")
    cfg = resolve_settings(settings)
    x = as_vector("values", values)
    sx = as_vector("errors", errors, x.size)
    if model != 2 and np.any(sx <= 0):
        raise InvalidInputError("Weighted means require strictly positive standard errors.")
    if model == 2 and x.size < 2:
        raise InvalidInputError("An unweighted mean needs at least two values.")
    valid = chauvenet(x, sx, model, cfg) if detect_outliers else np.ones(x.size, dtype=bool)
    mu, var, mswd, p_value, w, _ = _fit(x[valid], sx[valid], model, cfg)
    df = int(valid.sum()) - 1
    tfact = student_t_factor(alpha, df)
    extras = {}
    if model == 1 and math.isfinite(mswd) and mswd > 1.0:
        extras["disp[t]"] = tfact * math.sqrt(mswd * var)
    return FitResult(
        par=np.array([mu]),
        cov=np.array([[var]]),
        names=("t",),
        df=df,
        mswd=mswd,
        p_value=p_value,
        model=model,
        tfact=tfact,
        disp=w,
        disp_ci=w * float(norm.ppf(1.0 - alpha / 2.0)),
        valid=valid,
        extras=extras,
    )


def plateau_steps(values, errors, fractions=None, alpha: float = 0.05) -> Tuple[int, int]:
    """Indices ``(first, last)`` of the plateau, inclusive.

    Every run of at least three consecutive steps whose MSWD passes the
    chi-square test at level ``alpha`` is a candidate; the candidate with
    the largest summed ``fractions`` wins, ties going to the earlier run.
    Returns ``(-1, -1)`` when no run qualifies.
    """
    x = as_vector("values", values)
    sx = as_vector("errors", errors, x.size)
    f = np.ones(x.size) if fractions is None else as_vector("fractions", fractions, x.size)
    best, best_fraction = (-1, -1), -math.inf
    for first in range(x.size):
        for last in range(first + MIN_PLATEAU_STEPS - 1, x.size):
            _, _, ss = _inverse_variance(x[first : last + 1], sx[first : last + 1] ** 2)
            _, p = goodness_of_fit(ss, last - first)
            total = float(np.sum(f[first : last + 1]))
            if p >= alpha and total > best_fraction:
                best, best_fraction = (first, last), total
    return best


def plateau(
    dataset: Dataset,
    alpha: float = 0.05,
    exterr: bool = False,
    i2i: bool = False,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
) -> FitResult:
    """Plateau age of an Ar-Ar step-heating experiment.

    Steps are taken in table order and weighted by their 39Ar amounts. When
    no run of steps passes the homogeneity test all steps are averaged and
    a warning is issued.

    Returns:
        FitResult: The model-1 weighted mean of the plateau steps, which are
        flagged in ``valid``; ``extras["fraction"]`` is their share of the
        39Ar and ``extras["steps"]`` the first and last step index.
    """
    if dataset.scheme is not Scheme.ARAR:
        raise InvalidInputError("Plateau ages require Ar-Ar step-heating data.")
    chron = get_chronometer(dataset.scheme)
    tab = chron.ages(dataset, exterr=False, i2i=i2i, constants=constants)
    tt, st = tab["t"].to_numpy(), tab["s[t]"].to_numpy()
    fractions = chron.step_weights(dataset)
    first, last = plateau_steps(tt, st, fractions, alpha)
    if first < 0:
        warnings.warn("No plateau found; averaging all heating steps.", UserWarning, stacklevel=2)
        first, last = 0, len(dataset) - 1
    steps = np.zeros(len(dataset), dtype=bool)
    steps[first : last + 1] = True
    fit = weighted_mean(tt[steps], st[steps], model=1, alpha=alpha, detect_outliers=False, settings=settings)
    extras = {**fit.extras, "fraction": float(fractions[steps].sum()), "steps": (first, last)}
    fit = replace(fit, valid=steps, extras=extras)
    if exterr:
        fit = apply_exterr(fit, chron, dataset, constants)
    return fit


def weighted_mean_dataset(
    dataset: Dataset,
    model: int = 1,
    alpha: float = 0.05,
    detect_outliers: bool = True,
    exterr: bool = False,
    i2i: bool = False,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
    **options,
) -> FitResult:
    """Weighted mean of the per-aliquot ages of a dataset.

    Ages are averaged without external errors, which are then added to the
    mean, so shared decay constant errors do not shrink with ``n``.
    """
    chron = get_chronometer(dataset.scheme)
    tab = chron.ages(dataset, exterr=False, i2i=i2i, constants=constants, **options)
    fit = weighted_mean(
        tab["t"], tab["s[t]"], model=model, alpha=alpha, detect_outliers=detect_outliers, settings=settings
    )
    if exterr:
        fit = apply_exterr(fit, chron, dataset, constants, **options)
    return fit
