"""Finite mixture models for multimodal age distributions.

Theoretical Framework:
    A sample of ages with standard errors is decomposed into ``k`` discrete
    components by Expectation-Maximisation (Galbraith 2005, chapter 6).
    Each observation ``u`` is assigned posterior membership weights
    ``p_iu`` to the components (E-step); each component value is then the
    membership-weighted mean and each mixing proportion the mean membership
    (M-step). Continuous ages use a normal observation model, optionally on
    the log scale; fission-track counts use a binomial model on the
    spontaneous track fraction so that grains with few tracks are handled
    exactly.

    The covariance of the proportions and component values is the inverse
    of the observed information of the mixture likelihood, assembled from
    the per-observation scores ``a_iu`` and curvatures ``b_iu``.

Model selection:
    ``k='auto'`` fits ``k = 1, 2, ...`` in turn and stops at the first
    increase of ``BIC = -2 L + (2k - 1) ln(n)``, returning the previous k.

Minimum age model:
    ``k='min'`` fits the three-parameter model of Galbraith (2005, section
    6.11): a discrete youngest component ``mu`` with proportion ``pi`` and a
    normal population truncated at ``mu`` with dispersion ``sigma``. The
    likelihood is not smooth in ``pi`` near 0 and 1, so the optimum is
    located by grid search and its covariance comes from a numerical
    Hessian.

References:
    - Galbraith, R.F. (2005). Statistics for Fission Track Analysis.
      Chapman and Hall/CRC.
    - Galbraith, R.F. & Laslett, G.M. (1993). Statistical models for mixed
      fission track ages. Nuclear Tracks and Radiation Measurements 21,
      459-470.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Dict, Optional, Tuple, Union

import numpy as np
from scipy.special import logsumexp
from scipy.stats import binom, norm

from geochron.chronometers import get_chronometer
from geochron.chronometers.base import apply_exterr
from geochron.config import EstimationSettings, resolve as resolve_settings
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.results import FitResult
from geochron.schema import Scheme
from geochron.stats.numerics import (
    as_vector,
    inverse_hessian,
    numerical_hessian,
    student_t_factor,
)

logger = logging.getLogger(__name__)

K = Union[int, str]


def _check_k(k: K) -> None:
    if isinstance(k, str):
        if k not in ("auto", "min"):
            raise InvalidInputError(f"k must be a positive integer, 'auto' or 'min', got '{k}'.")
    elif isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
        raise InvalidInputError(f"k must be a positive integer, 'auto' or 'min', got {k!r}.")


def _transform(values, errors, log: bool) -> Tuple[np.ndarray, np.ndarray]:
    x = as_vector("values", values)
    sx = as_vector("errors", errors, x.size)
    if np.any(sx <= 0):
        raise InvalidInputError("Peak fitting requires strictly positive standard errors.")
    if not log:
        return x, sx
    if np.any(x <= 0):
        raise InvalidInputError("Log-transformed peak fitting requires positive values.")
    return np.log(x), sx / x


def mixture_covariance(pii, piu, aiu, biu) -> np.ndarray:
    """Covariance of ``(pi_1..pi_{k-1}, beta_1..beta_k)`` from the observed
    information of a ``k``-component mixture.

    Args:
        pii: ``(k,)`` mixing proportions.
        piu: ``(n, k)`` posterior memberships.
        aiu: ``(n, k)`` component scores.
        biu: ``(n, k)`` component curvatures.

    Raises:
        numpy.linalg.LinAlgError: If the information matrix is singular.
    """
    k = pii.size
    info = np.zeros((2 * k - 1, 2 * k - 1))
    if k > 1:
        # scores of the free proportions, the last one being 1 - sum(others)
        dp = piu[:, : k - 1] / pii[: k - 1] - (piu[:, k - 1] / pii[k - 1])[:, None]
        info[: k - 1, : k - 1] = dp.T @ dp
        eye = np.eye(k)[: k - 1]
        last = np.zeros(k)
        last[k - 1] = 1.0
        B = np.empty((k - 1, k))
        for i in range(k - 1):
            for j in range(k):
                B[i, j] = np.sum(
                    piu[:, j]
                    * aiu[:, j]
                    * (dp[:, i] - eye[i, j] / pii[j] + last[j] / pii[k - 1])
                )
        info[: k - 1, k - 1 :] = B
        info[k - 1 :, : k - 1] = B.T
    pa = piu * aiu
    info[k - 1 :, k - 1 :] = pa.T @ pa - np.diag(np.sum(biu * piu, axis=0))
    return np.linalg.inv(info)


def proportion_errors(E: np.ndarray, k: int) -> np.ndarray:
    """Standard errors of all ``k`` proportions; the last is the error of
    ``1 - sum(others)``."""
    if k == 1:
        return np.zeros(1)
    block = E[: k - 1, : k - 1]
    var = np.append(np.diag(block), np.sum(block))
    return np.sqrt(np.where(var >= 0, var, np.nan))


def _relative_change(newL: float, L: float) -> float:
    if newL == 0.0:
        return newL - L
    return (newL - L) / newL


def _em_loop(e_step, m_step, settings: EstimationSettings, label: str):
    """Alternate E and M steps until the squared relative change of the
    log-likelihood drops below ``settings.em_tol``."""
    L = -math.inf
    for it in range(1, settings.em_max_iter + 1):
        piu = e_step()
        newL = m_step(piu)
        logger.debug("%s EM iteration %d: L=%.10g", label, it, newL)
        if _relative_change(newL, L) ** 2 < settings.em_tol:
            return piu, newL
        L = newL
    logger.warning("%s EM stopped at the iteration cap (%d)", label, settings.em_max_iter)
    return piu, L


def _log_joint(pii: np.ndarray, log_fiu: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return np.log(pii)[None, :] + log_fiu


def _posterior(pii: np.ndarray, log_fiu: np.ndarray) -> np.ndarray:
    """Memberships from log densities, normalised row by row in log space."""
    log_num = _log_joint(pii, log_fiu)
    return np.exp(log_num - logsumexp(log_num, axis=1, keepdims=True))


def _loglik(pii: np.ndarray, log_fiu: np.ndarray) -> float:
    return float(np.sum(logsumexp(_log_joint(pii, log_fiu), axis=1)))


def _weighted_update(num: np.ndarray, den: np.ndarray, previous: np.ndarray) -> np.ndarray:
    # components without members keep their last value
    out = np.array(previous, dtype=float)
    np.divide(num, den, out=out, where=den > 0)
    return out


def _safe_covariance(pii, piu, aiu, biu, label: str) -> np.ndarray:
    k = pii.size
    if np.any(pii <= 0):
        logger.warning("%s has an empty component; errors set to NaN", label)
        return np.full((2 * k - 1, 2 * k - 1), np.nan)
    try:
        return mixture_covariance(pii, piu, aiu, biu)
    except np.linalg.LinAlgError:
        logger.warning("%s information matrix is singular; errors set to NaN", label)
        return np.full((2 * k - 1, 2 * k - 1), np.nan)


def normal_mixture(
    zu: np.ndarray, su: np.ndarray, k: int, settings: Optional[EstimationSettings] = None
) -> Dict[str, np.ndarray]:
    """Fit a ``k``-component normal mixture to values ``zu`` with errors ``su``.

    Works on ``x = 1/s`` and ``y = z/s`` so every observation has unit
    variance around ``beta_i x``.

    Returns:
        dict: ``beta`` component values, ``pi`` proportions, ``E`` the
        covariance of ``(pi_1..pi_{k-1}, beta)`` and ``L`` the
        log-likelihood.
    """
    cfg = resolve_settings(settings)
    xu = 1.0 / su
    yu = zu / su
    state = {
        "beta": np.linspace(zu.min(), zu.max(), k) if k > 1 else np.array([np.median(zu)]),
        "pi": np.full(k, 1.0 / k),
    }

    def log_density():
        return norm.logpdf(yu[:, None], state["beta"][None, :] * xu[:, None], 1.0)

    def e_step():
        return _posterior(state["pi"], log_density())

    def m_step(piu):
        state["pi"] = piu.mean(axis=0)
        state["beta"] = _weighted_update(
            (piu * (xu * yu)[:, None]).sum(axis=0),
            (piu * (xu**2)[:, None]).sum(axis=0),
            state["beta"],
        )
        return _loglik(state["pi"], log_density())

    piu, L = _em_loop(e_step, m_step, cfg, "Normal mixture")
    beta, pii = state["beta"], state["pi"]
    r = yu[:, None] - beta[None, :] * xu[:, None]
    aiu = xu[:, None] * r
    biu = -(1.0 - r**2) * (xu**2)[:, None]
    E = _safe_covariance(pii, piu, aiu, biu, "Normal mixture")
    return {"beta": beta, "pi": pii, "E": E, "L": L}


def binomial_mixture(
    Ns: np.ndarray, Ni: np.ndarray, k: int, settings: Optional[EstimationSettings] = None
) -> Dict[str, np.ndarray]:
    """Fit a ``k``-component binomial mixture to fission-track counts.

    Component ``i`` has spontaneous track fraction ``theta_i``; the
    covariance is given for ``beta_i = logit(theta_i)``.
    """
    cfg = resolve_settings(settings)
    yu = np.asarray(Ns, dtype=float)
    mu = yu + np.asarray(Ni, dtype=float)
    NsNi = (yu + 0.5) / (mu - yu + 0.5)
    theta0 = NsNi / (1.0 + NsNi)
    state = {"theta": np.linspace(theta0.min(), theta0.max(), k), "pi": np.full(k, 1.0 / k)}

    def log_density():
        return binom.logpmf(yu[:, None], mu[:, None], state["theta"][None, :])

    def e_step():
        return _posterior(state["pi"], log_density())

    def m_step(piu):
        state["pi"] = piu.mean(axis=0)
        state["theta"] = _weighted_update(
            (piu * yu[:, None]).sum(axis=0), (piu * mu[:, None]).sum(axis=0), state["theta"]
        )
        return _loglik(state["pi"], log_density())

    piu, L = _em_loop(e_step, m_step, cfg, "Binomial mixture")
    theta, pii = state["theta"], state["pi"]
    aiu = yu[:, None] - theta[None, :] * mu[:, None]
    biu = aiu**2 - (theta * (1.0 - theta))[None, :] * mu[:, None]
    E = _safe_covariance(pii, piu, aiu, biu, "Binomial mixture")
    with np.errstate(divide="ignore"):
        beta = np.log(theta / (1.0 - theta))
    return {"beta": beta, "theta": theta, "pi": pii, "E": E, "L": L}


def _minage_nll(pars, zu, su) -> float:
    mu, sigma, prop = pars[0], abs(pars[1]), min(max(pars[2], 0.0), 1.0)
    return float(-np.sum(_minage_loglik(mu, np.array(sigma), np.array(prop), zu, su)))


def _minage_loglik(mu, sigma, prop, zu, su):
    """Per-observation log-likelihood, broadcasting ``sigma`` and ``prop``
    against the observations on the last axis."""
    sigma = sigma[..., None]
    prop = prop[..., None]
    s2 = sigma**2 + su**2
    mu0 = (mu / sigma**2 + zu / su**2) / (1.0 / sigma**2 + 1.0 / su**2)
    s0 = 1.0 / np.sqrt(1.0 / sigma**2 + 1.0 / su**2)
    with np.errstate(divide="ignore"):
        discrete = np.log(prop) + norm.logpdf(zu, mu, su)
        truncated = (
            np.log(1.0 - prop)
            + math.log(2.0)
            + norm.logpdf(zu, mu, np.sqrt(s2))
            + norm.logsf((mu - mu0) / s0)
        )
    return np.logaddexp(discrete, truncated)


def minimum_age_model(
    zu: np.ndarray, su: np.ndarray, settings: Optional[EstimationSettings] = None
) -> Dict[str, np.ndarray]:
    """Fit the three-parameter minimum age model by grid search.

    Returns:
        dict: ``par`` as ``(mu, sigma, pi)``, its covariance ``E`` (NaN when
        the Hessian at the grid optimum is not invertible) and ``L``.
    """
    cfg = resolve_settings(settings)
    if zu.size < 2 or np.ptp(zu) == 0:
        raise InvalidInputError("The minimum age model needs at least two distinct values.")
    n_mu, n_sigma, n_prop = cfg.minage_grid
    sd = float(np.std(zu, ddof=1))
    sigmas = np.linspace(sd / 10.0, 2.0 * sd, n_sigma)
    props = np.linspace(0.0, 1.0, n_prop)
    S, P = np.meshgrid(sigmas, props, indexing="ij")
    best = (math.inf, None)
    for mu in np.linspace(zu.min(), zu.max(), n_mu):
        nll = -_minage_loglik(mu, S, P, zu, su).sum(axis=-1)
        i = np.unravel_index(np.argmin(nll), nll.shape)
        if nll[i] < best[0]:
            best = (float(nll[i]), np.array([mu, S[i], P[i]]))
    nll_min, par = best
    try:
        E = inverse_hessian(numerical_hessian(lambda p: _minage_nll(p, zu, su), par))
    except np.linalg.LinAlgError:
        logger.warning(
            "Minimum age Hessian is not invertible at mu=%g, sigma=%g, pi=%g; errors set to NaN",
            *par,
        )
        E = np.full((3, 3), np.nan)
    return {"par": par, "E": E, "L": -nll_min}


def bic_select(fit_k, n: int, max_k: int) -> Tuple[int, Dict[int, float]]:
    """Hill-climb over ``k = 1..max_k`` and return the last k before BIC
    stops improving, with the BIC of every k that was tried.

    ``fit_k(k)`` must return a dict with the log-likelihood under ``"L"``.
    Numerical failure at some k ends the search at ``k - 1``.
    """
    bic: Dict[int, float] = {}
    best = math.inf
    for k in range(1, max_k + 1):
        if 2 * k - 1 > n:
            return k - 1, bic
        try:
            L = fit_k(k)["L"]
        except (np.linalg.LinAlgError, FloatingPointError) as exc:
            if k == 1:
                raise
            logger.info("BIC search stopped at k=%d: %s", k, exc)
            return k - 1, bic
        bic[k] = -2.0 * L + (2 * k - 1) * math.log(n)
        if not bic[k] < best:
            return k - 1, bic
        best = bic[k]
    return max_k, bic


def _peaks_result(beta, E, pii, L, n, k, alpha, log, jac=None, extras=None) -> FitResult:
    cov_beta = E[k - 1 :, k - 1 :]
    if log:
        peaks = np.exp(beta)
        J = np.diag(peaks)
    elif jac is not None:
        peaks, J = jac
    else:
        peaks, J = beta, np.eye(k)
    cov = J @ cov_beta @ J.T
    df = n - 2 * k + 1
    return FitResult(
        par=peaks,
        cov=cov,
        names=tuple(f"t{i + 1}" for i in range(k)),
        df=df,
        mswd=math.nan,
        p_value=math.nan,
        tfact=student_t_factor(alpha, df),
        props=pii,
        props_err=proportion_errors(E, k),
        loglik=L,
        extras={"k": k, **(extras or {})},
    )


def peakfit(
    values,
    errors,
    k: K = "auto",
    log: bool = True,
    alpha: float = 0.05,
    settings: Optional[EstimationSettings] = None,
) -> FitResult:
    """Decompose values with standard errors into discrete components.

    Args:
        values: Ages (or any positive values when ``log`` is true).
        errors: Their standard errors.
        k: Number of components, ``'auto'`` for BIC selection or ``'min'``
            for the minimum age model.
        log: Fit the components on the log scale and report them back
            transformed, with errors by the delta method.
        alpha: Significance level of the confidence intervals.
        settings: EM, BIC and grid-search knobs.

    Returns:
        FitResult: Component values ``t1..tk`` with their covariance, the
        proportions in ``props``/``props_err`` and ``df = n - 2k + 1``. The
        minimum age model returns a single ``t`` with ``df = n - 3`` and the
        fitted ``sigma`` and ``pi`` in ``extras``.

    Raises:
        InvalidInputError: On an invalid ``k``, non-positive errors, or
            non-positive values with ``log=True``.
    """
    _check_k(k)
    cfg = resolve_settings(settings)
    zu, su = _transform(values, errors, log)
    n = zu.size
    if k == "min":
        return _minimum_age_result(minimum_age_model(zu, su, cfg), n, alpha, log)
    extras = {}
    if k == "auto":
        k, bic = bic_select(lambda kk: normal_mixture(zu, su, kk, cfg), n, cfg.bic_max_k)
        logger.info("BIC selected k=%d after trying k=%s", k, sorted(bic))
        extras["bic"] = bic
    fit = normal_mixture(zu, su, k, cfg)
    return _peaks_result(fit["beta"], fit["E"], fit["pi"], fit["L"], n, k, alpha, log, extras=extras)


def _minimum_age_result(fit, n: int, alpha: float, log: bool) -> FitResult:
    mu, sigma, prop = fit["par"]
    E = fit["E"]
    t = math.exp(mu) if log else mu
    var = E[0, 0] * t**2 if log else E[0, 0]
    df = n - 3
    return FitResult(
        par=np.array([t]),
        cov=np.array([[var]]),
        names=("t",),
        df=df,
        mswd=math.nan,
        p_value=math.nan,
        tfact=student_t_factor(alpha, df),
        props=np.array([prop]),
        props_err=np.array([math.sqrt(E[2, 2]) if E[2, 2] >= 0 else math.nan]),
        loglik=fit["L"],
        extras={"k": "min", "sigma": sigma, "mu": mu},
    )


def peakfit_fissiontracks(
    dataset: Dataset,
    k: K = 1,
    exterr: bool = False,
    alpha: float = 0.05,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
) -> FitResult:
    """Binomial mixture of fission-track counts.

    Component ages follow from ``theta_i`` through the zeta calibration;
    with ``exterr`` the zeta and rhoD errors are added to every component
    and are fully correlated between them.
    """
    if dataset.scheme is not Scheme.FISSIONTRACKS:
        raise InvalidInputError("Binomial mixtures require fission-track data.")
    _check_k(k)
    if k == "min":
        raise InvalidInputError("Use peakfit_dataset for the fission-track minimum age model.")
    cfg = resolve_settings(settings)
    Ns, Ni = dataset.column("Ns"), dataset.column("Ni")
    if np.any(Ns < 0) or np.any(Ni < 0) or np.any(Ns + Ni <= 0):
        raise InvalidInputError("Track counts must be non-negative with at least one track per grain.")
    n = len(dataset)
    extras = {"exterr": exterr}
    if k == "auto":
        k, bic = bic_select(lambda kk: binomial_mixture(Ns, Ni, kk, cfg), n, cfg.bic_max_k)
        logger.info("BIC selected k=%d after trying k=%s", k, sorted(bic))
        extras["bic"] = bic
    fit = binomial_mixture(Ns, Ni, k, cfg)

    lam = resolve(constants).decay("U238")[0]
    (zeta, s_zeta), (rhoD, s_rhoD) = dataset.zeta, dataset.rhoD
    c = 0.5 * lam * (zeta / 1e6) * rhoD
    A = c * np.exp(fit["beta"])
    peaks = np.log1p(A) / lam
    grad = A / (lam * (1.0 + A))
    result = _peaks_result(
        fit["beta"], fit["E"], fit["pi"], fit["L"], n, k, alpha, False,
        jac=(peaks, np.diag(grad)), extras=extras,
    )
    if exterr:
        rel = (s_zeta / zeta) ** 2 + (s_rhoD / rhoD) ** 2
        cov = np.array(result.cov) + rel * np.outer(grad, grad)
        result = replace(result, cov=cov)
    return result


def peakfit_dataset(
    dataset: Dataset,
    k: K = 1,
    exterr: bool = False,
    log: bool = True,
    alpha: float = 0.05,
    i2i: bool = False,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
    **options,
) -> FitResult:
    """Peak fit of the per-aliquot ages of a dataset.

    Fission-track counts are fitted with a binomial mixture unless the
    minimum age model is requested. Other schemes are converted to ages
    without external errors first; external errors are then added to each
    component age.
    """
    if dataset.scheme is Scheme.FISSIONTRACKS and k != "min":
        return peakfit_fissiontracks(dataset, k, exterr, alpha, settings, constants)
    chron = get_chronometer(dataset.scheme)
    tab = chron.ages(dataset, exterr=False, i2i=i2i, constants=constants, **options)
    fit = peakfit(tab["t"], tab["s[t]"], k=k, log=log, alpha=alpha, settings=settings)
    if exterr:
        fit = apply_exterr(fit, chron, dataset, constants, **options)
    return fit
