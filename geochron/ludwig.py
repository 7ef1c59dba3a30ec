"""Maximum-likelihood discordia fits of U-Pb data with common lead.

This module fits an age and the common-Pb composition jointly to all
aliquots of a U-Pb dataset, following Ludwig (1998). It performs no I/O.

Theoretical Framework:
    2-D (formats 1 and 2) fits live in Tera-Wasserburg space
    ``X = 238U/206Pb``, ``Y = 207Pb/206Pb``. The discordia line runs from the
    common 207Pb/206Pb ratio ``a0`` on the Y axis to the concordia point of
    age ``t``:

        Y = a0 + b X,   b = (exp(l5 t) - 1)/U - a0 (exp(l8 t) - 1)

    3-D (formats 4 and 5) fits live in Wetherill space extended with
    ``Z = 204Pb/238U``. Each aliquot has a latent true ``z`` and

        X = exp(l5 t) - 1 + U b0 z,   Y = exp(l8 t) - 1 + a0 z

    with ``a0 = (206Pb/204Pb)_0`` and ``b0 = (207Pb/204Pb)_0``.

    In both cases the residual vector is affine in the latent offsets
    ``phi``: ``d = c + G phi``. For a trial parameter vector ``phi`` is
    profiled out with one linear solve, ``phi = -(G' O G)^-1 G' O c``, and
    the sum of squares ``S = d' O d`` is minimised over the parameters with
    BFGS. ``O`` is the inverse of the covariance of all ratios, which couples
    aliquots when decay constant errors are propagated.

Variance models:
    1. Analytical errors only.
    2. Unit weights scaled by a common factor ``w = sqrt(MSWD)``.
    3. Analytical errors plus an overdispersion ``w`` solved for MSWD = 1.

References:
    Ludwig, K.R., 1998. On the treatment of concordant uranium-lead ages.
    Geochimica et Cosmochimica Acta, 62, 665-676.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import brentq, minimize
from scipy.stats import chi2, norm

from geochron.chronometers.upb import tera_wasserburg_data, wetherill_data
from geochron.config import EstimationSettings, resolve as resolve_settings
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.exceptions import ConvergenceError, InvalidInputError
from geochron.results import FitResult
from geochron.schema import Scheme
from geochron.stats.numerics import (
    inverse_hessian,
    numerical_hessian,
    schur_covariance,
    solve_unit_mswd,
    student_t_factor,
)
from geochron.stats.regression import york

logger = logging.getLogger(__name__)


def _stack(cov: np.ndarray) -> np.ndarray:
    """Rearrange ``(n, k, k)`` per-aliquot covariances into one ``(kn, kn)``
    matrix ordered coordinate by coordinate."""
    n, k, _ = cov.shape
    out = np.zeros((k * n, k * n))
    idx = np.arange(n)
    for j in range(k):
        for m in range(k):
            out[j * n + idx, m * n + idx] = cov[:, j, m]
    return out


class _Discordia:
    """Residuals and covariance of one U-Pb dataset for trial parameters."""

    def __init__(self, dataset: Dataset, constants: Optional[Constants]) -> None:
        c = resolve(constants)
        self.l5, self.sl5 = c.decay("U235")
        self.l8, self.sl8 = c.decay("U238")
        self.U = c.iratio("U238U235")[0]
        self.three_d = dataset.format in (4, 5)
        if self.three_d:
            x, cov = wetherill_data(dataset, constants)
            self.Zbar = float(np.mean(x[:, 2]))
        else:
            x, cov = tera_wasserburg_data(dataset, constants)
        self.x = x
        self.cov = cov
        self.n = x.shape[0]
        self.k = x.shape[1]
        self.names: Tuple[str, ...] = ("t", "64i", "74i") if self.three_d else ("t", "76i")

    @property
    def df(self) -> int:
        return 2 * self.n - 2 if self.three_d else self.n - 2

    def design(self, par) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return ``c``, ``G`` and the decay-constant Jacobian of ``c``."""
        n = self.n
        eye = np.eye(n)
        t = par[0]
        e5 = math.exp(self.l5 * t)
        e8 = math.exp(self.l8 * t)
        jlam = np.zeros((self.k * n, 2))
        if self.three_d:
            a0, b0 = par[1], par[2]
            X, Y, Z = self.x.T
            R = X - (e5 - 1.0) - self.U * b0 * Z
            r = Y - (e8 - 1.0) - a0 * Z
            c = np.concatenate([R, r, np.zeros(n)])
            G = np.vstack([self.U * b0 * eye, a0 * eye, eye])
            jlam[:n, 0] = -t * e5
            jlam[n : 2 * n, 1] = -t * e8
        else:
            a0 = par[1]
            X, Y = self.x.T
            b = (e5 - 1.0) / self.U - a0 * (e8 - 1.0)
            c = np.concatenate([np.zeros(n), Y - a0 - b * X])
            G = np.vstack([eye, b * eye])
            jlam[n:, 0] = -X * t * e5 / self.U
            jlam[n:, 1] = a0 * t * e8 * X
        return c, G, jlam

    def covariance(self, par, model: int, w: float, exterr: bool, jlam) -> np.ndarray:
        if model == 2:
            return np.eye(self.k * self.n) * w**2
        cov = self.cov.copy()
        if model == 3:
            if self.three_d:
                a0, b0 = par[1], par[2]
                scale = np.array([self.U * b0, a0, 1.0]) * self.Zbar * w
                cov[:, np.arange(3), np.arange(3)] += scale**2
            else:
                cov[:, 1, 1] += w**2
        E = _stack(cov)
        if exterr:
            E = E + jlam @ np.diag([self.sl5**2, self.sl8**2]) @ jlam.T
        return E

    def misfit(self, par, model: int = 1, w: float = 0.0, exterr: bool = False):
        """Sum of squares ``S``, latent offsets ``phi`` and weight matrix."""
        c, G, jlam = self.design(par)
        omega = np.linalg.inv(self.covariance(par, model, w, exterr, jlam))
        phi = np.linalg.solve(G.T @ omega @ G, -G.T @ omega @ c)
        d = c + G @ phi
        return float(d @ omega @ d), phi, omega

    def LL(self, par, model: int = 1, w: float = 0.0, exterr: bool = False) -> float:
        try:
            return self.misfit(par, model, w, exterr)[0] / 2.0
        except np.linalg.LinAlgError:
            return math.inf

    def jacobian(self, par, phi) -> np.ndarray:
        """Derivatives of the residuals by ``(phi, par)``."""
        n = self.n
        t = par[0]
        e5 = math.exp(self.l5 * t)
        e8 = math.exp(self.l8 * t)
        _, G, _ = self.design(par)
        D = np.zeros((self.k * n, n + len(par)))
        D[:, :n] = G
        if self.three_d:
            z = self.x[:, 2] - phi
            D[:n, n] = -self.l5 * e5
            D[n : 2 * n, n] = -self.l8 * e8
            D[n : 2 * n, n + 1] = -z
            D[:n, n + 2] = -self.U * z
        else:
            a0 = par[1]
            x_fit = self.x[:, 0] - phi
            db_dt = self.l5 * e5 / self.U - a0 * self.l8 * e8
            D[n:, n] = -db_dt * x_fit
            D[n:, n + 1] = -1.0 + (e8 - 1.0) * x_fit
        return D

    def initial(self, constants: Optional[Constants]) -> np.ndarray:
        """Starting values from a York fit in Tera-Wasserburg space."""
        if self.three_d:
            x, cov = self.x, self.cov
            X = 1.0 / x[:, 1]
            Y = x[:, 0] / (self.U * x[:, 1])
            jac = np.zeros((self.n, 2, 3))
            jac[:, 0, 1] = -1.0 / x[:, 1] ** 2
            jac[:, 1, 0] = 1.0 / (self.U * x[:, 1])
            jac[:, 1, 1] = -x[:, 0] / (self.U * x[:, 1] ** 2)
            tw = np.einsum("nij,njk,nlk->nil", jac, cov, jac)
        else:
            X, Y = self.x.T
            tw = self.cov
        sX = np.sqrt(tw[:, 0, 0])
        sY = np.sqrt(tw[:, 1, 1])
        fit = york(X, sX, Y, sY, tw[:, 0, 1] / (sX * sY))
        a, b = fit.value("a"), fit.value("b")
        t0 = self._intersect(a, b)
        if not math.isfinite(t0):
            t0 = float(np.median(np.log1p(1.0 / X) / self.l8))
            logger.warning("No concordia intercept found; starting from t=%g", t0)
        if self.three_d:
            c = resolve(constants)
            return np.array(
                [t0, c.iratio("Pb206Pb204")[0], c.iratio("Pb207Pb204")[0]]
            )
        return np.array([t0, a])

    def _intersect(self, a: float, b: float) -> float:
        def g(t):
            return math.expm1(self.l5 * t) / self.U - a * math.expm1(self.l8 * t) - b

        grid = np.geomspace(1e-2, 5000.0, 400)
        vals = np.array([g(t) for t in grid])
        change = np.nonzero(np.sign(vals[:-1]) != np.sign(vals[1:]))[0]
        if change.size == 0:
            return math.nan
        i = int(change[0])
        return float(brentq(g, grid[i], grid[i + 1], xtol=1e-12))


def _optimise(problem: _Discordia, init, model, w, exterr) -> np.ndarray:
    res = minimize(problem.LL, np.asarray(init, dtype=float), args=(model, w, exterr), method="BFGS")
    if not res.success:
        logger.warning("Discordia optimisation (model %d) ended early: %s", model, res.message)
    logger.debug("Discordia fit: par=%s, LL=%g, nit=%d", res.x, res.fun, res.nit)
    return res.x


def _parameter_covariance(problem: _Discordia, par, model, w, exterr) -> Tuple[np.ndarray, str]:
    _, phi, omega = problem.misfit(par, model, w, exterr)
    D = problem.jacobian(par, phi)
    try:
        return schur_covariance(D.T @ omega @ D, problem.n), "fisher"
    except np.linalg.LinAlgError:
        logger.warning("Analytical discordia covariance failed; using the numerical Hessian")
    try:
        hess = numerical_hessian(lambda p: problem.LL(p, model, w, exterr), par)
        return inverse_hessian(hess), "hessian"
    except np.linalg.LinAlgError as exc:
        raise ConvergenceError("Discordia covariance could not be computed.") from exc


def ludwig(
    dataset: Dataset,
    exterr: bool = False,
    alpha: float = 0.05,
    model: int = 1,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
) -> FitResult:
    """Fit a discordia line or plane to U-Pb data.

    Args:
        dataset: U-Pb data. Formats 1 and 2 give a 2-D fit of the age and the
            common 207Pb/206Pb ratio; formats 4 and 5 a 3-D fit of the age
            and the common 206Pb/204Pb and 207Pb/204Pb ratios.
        exterr: Propagate the U235 and U238 decay constant errors.
        alpha: Significance level of the confidence intervals.
        model: Variance model, ``1``, ``2`` or ``3``.
        settings: Iteration knobs for the overdispersion search.
        constants: Constants table; the process-wide default if omitted.

    Returns:
        FitResult: Parameters ``("t", "76i")`` or ``("t", "64i", "74i")``,
        covariance, ``df`` (``n - 2`` or ``2n - 2``), MSWD and p-value.
        ``disp`` holds ``w`` (zero for model 1) and ``disp_ci`` its normal
        confidence half-width.

    Raises:
        InvalidInputError: If the data are not U-Pb, there are fewer than two
            aliquots or ``model`` is not 1, 2 or 3.
        ConvergenceError: If neither the Fisher information nor the numerical
            Hessian can be inverted.
    """
    if dataset.scheme is not Scheme.UPB:
        raise InvalidInputError("Discordia fits require U-Pb data.")
    if model not in (1, 2, 3):
        raise InvalidInputError(f"Unknown variance model {model}; expected 1, 2 or 3.")
    if len(dataset) < 2:
        raise InvalidInputError("Discordia fits require at least 2 aliquots.")
    cfg = resolve_settings(settings)
    problem = _Discordia(dataset, constants)
    init = problem.initial(constants)
    df = problem.df

    w = 0.0
    if model == 1:
        par = _optimise(problem, init, 1, 0.0, exterr)
    elif model == 2:
        par = _optimise(problem, init, 2, 1.0, False)
        w = math.sqrt(problem.LL(par, 2, 1.0) / df) if df > 0 else 1.0
        par = _optimise(problem, par, 2, w, False)
    else:
        par1 = _optimise(problem, init, 1, 0.0, exterr)
        mswd1 = problem.LL(par1) / df if df > 0 else math.nan
        if problem.three_d:
            rel = np.sqrt(problem.cov[:, 2, 2]) / problem.x[:, 2]
        else:
            rel = np.sqrt(problem.cov[:, 1, 1])
        scale = math.sqrt(mswd1) * float(np.median(rel)) if mswd1 > 0 else float(np.median(rel))
        w = solve_unit_mswd(
            lambda ww: problem.LL(par1, 3, ww) / df,
            scale,
            cfg.overdispersion_max_doublings,
        )
        par = _optimise(problem, par1, 3, w, exterr)

    cov, method = _parameter_covariance(problem, par, model, w, exterr)

    # Mistake in Ludwig (1998)? The MSWD may need a factor of 2; kept as S/2.
    LL = problem.LL(par, model, w, False)
    if df > 0:
        mswd = LL / df
        p_value = float(chi2.sf(LL, df))
    else:
        mswd = p_value = math.nan
    return FitResult(
        par=par,
        cov=cov,
        names=problem.names,
        df=df,
        mswd=mswd,
        p_value=p_value,
        model=model,
        tfact=student_t_factor(alpha, df),
        disp=w,
        disp_ci=w * float(norm.ppf(1.0 - alpha / 2.0)),
        loglik=-LL,
        extras={"exterr": exterr, "covariance": method},
    )
