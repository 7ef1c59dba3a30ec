"""U-Pb ages from Wetherill or Tera-Wasserburg ratios.

Ratios are transformed between the two concordia representations with
first-order Jacobians, and the three single-ratio ages (207Pb/235U,
206Pb/238U and 207Pb/206Pb) are propagated with the delta method. Decay
constant and 238U/235U uncertainties enter only when ``exterr`` is set.
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from geochron.chronometers.base import Chronometer, age_table, pair, safe_sqrt
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme
from geochron.stats.uncertainty import cov2d, cov3d

logger = logging.getLogger(__name__)

# search interval for 207Pb/206Pb ages, in Ma
_T76_BOUNDS = (1e-6, 10000.0)


def Pb206U238_age(R, sR=0.0, exterr=False, constants: Optional[Constants] = None):
    """206Pb/238U age in Ma and its standard error."""
    l8, sl8 = resolve(constants).decay("U238")
    R = np.asarray(R, dtype=float)
    t = np.log1p(R) / l8
    var = (np.asarray(sR, dtype=float) / (l8 * (1.0 + R))) ** 2
    if exterr:
        var = var + (t / l8 * sl8) ** 2
    return pair(t, safe_sqrt(var))


def Pb207U235_age(R, sR=0.0, exterr=False, constants: Optional[Constants] = None):
    """207Pb/235U age in Ma and its standard error."""
    l5, sl5 = resolve(constants).decay("U235")
    R = np.asarray(R, dtype=float)
    t = np.log1p(R) / l5
    var = (np.asarray(sR, dtype=float) / (l5 * (1.0 + R))) ** 2
    if exterr:
        var = var + (t / l5 * sl5) ** 2
    return pair(t, safe_sqrt(var))


def _radiogenic_76(t, l5, l8, U):
    return np.expm1(l5 * t) / (U * np.expm1(l8 * t))


def _solve_76(R: float, l5: float, l8: float, U: float) -> float:
    lo, hi = _T76_BOUNDS
    f_lo = _radiogenic_76(lo, l5, l8, U) - R
    f_hi = _radiogenic_76(hi, l5, l8, U) - R
    if not np.isfinite(R) or f_lo * f_hi > 0:
        return np.nan
    return float(brentq(lambda t: _radiogenic_76(t, l5, l8, U) - R, lo, hi, xtol=1e-10))


def Pb207Pb206_age(R, sR=0.0, exterr=False, constants: Optional[Constants] = None):
    """Radiogenic 207Pb/206Pb age in Ma and its standard error.

    The age equation has no closed-form inverse and is solved by root
    finding. Ratios outside the range of the concordia curve give NaN.
    """
    c = resolve(constants)
    l5, sl5 = c.decay("U235")
    l8, sl8 = c.decay("U238")
    U, sU = c.iratio("U238U235")
    R_arr = np.atleast_1d(np.asarray(R, dtype=float))
    sR_arr = np.broadcast_to(np.asarray(sR, dtype=float), R_arr.shape)
    t = np.array([_solve_76(r, l5, l8, U) for r in R_arr])
    if np.isnan(t).any():
        warnings.warn(
            f"{int(np.isnan(t).sum())} 207Pb/206Pb ratio(s) lie outside the concordia "
            "range; their ages are undefined.",
            UserWarning,
            stacklevel=2,
        )
    e5 = np.exp(l5 * t)
    e8 = np.exp(l8 * t)
    # implicit differentiation of f(t) = (e5-1)/(U(e8-1)) - R
    df_dt = (l5 * e5 * (e8 - 1) - (e5 - 1) * l8 * e8) / (U * (e8 - 1) ** 2)
    var = (sR_arr / df_dt) ** 2
    if exterr:
        df_dl5 = t * e5 / (U * (e8 - 1))
        df_dl8 = -(e5 - 1) * t * e8 / (U * (e8 - 1) ** 2)
        df_dU = -(e5 - 1) / (U**2 * (e8 - 1))
        var = var + ((df_dl5 * sl5) ** 2 + (df_dl8 * sl8) ** 2 + (df_dU * sU) ** 2) / df_dt**2
    st = safe_sqrt(var)
    st[np.isnan(t)] = np.nan
    if np.ndim(R) == 0:
        return float(t[0]), float(st[0])
    return t, st


def age_to_Pb206U238_ratio(t, st=0.0, constants: Optional[Constants] = None):
    l8, _ = resolve(constants).decay("U238")
    t = np.asarray(t, dtype=float)
    return pair(np.expm1(l8 * t), l8 * np.exp(l8 * t) * np.asarray(st, dtype=float))


def age_to_Pb207U235_ratio(t, st=0.0, constants: Optional[Constants] = None):
    l5, _ = resolve(constants).decay("U235")
    t = np.asarray(t, dtype=float)
    return pair(np.expm1(l5 * t), l5 * np.exp(l5 * t) * np.asarray(st, dtype=float))


def age_to_Pb207Pb206_ratio(t, st=0.0, constants: Optional[Constants] = None):
    c = resolve(constants)
    l5, _ = c.decay("U235")
    l8, _ = c.decay("U238")
    U, _ = c.iratio("U238U235")
    t = np.asarray(t, dtype=float)
    e5 = np.exp(l5 * t)
    e8 = np.exp(l8 * t)
    R = (e5 - 1) / (U * (e8 - 1))
    dR_dt = (l5 * e5 * (e8 - 1) - (e5 - 1) * l8 * e8) / (U * (e8 - 1) ** 2)
    return pair(R, np.abs(dR_dt) * np.asarray(st, dtype=float))


def _columns(dataset: Dataset, *names: str) -> np.ndarray:
    return np.column_stack([dataset.column(n) for n in names])


def _measured(dataset: Dataset) -> Tuple[np.ndarray, np.ndarray]:
    """Measured ratios and their covariance stack in the input basis."""
    contract = dataset.contract
    x = _columns(dataset, *contract.values)
    s = _columns(dataset, *contract.errors)
    if x.shape[1] == 2:
        r = dataset.column("rXY")
        cov = np.array([cov2d(s[i, 0], s[i, 1], r[i]) for i in range(len(dataset))])
    else:
        r = _columns(dataset, "rXY", "rXZ", "rYZ")
        cov = np.array([cov3d(*s[i], *r[i]) for i in range(len(dataset))])
    return x, cov


def _transform(cov: np.ndarray, values: np.ndarray, jac: np.ndarray):
    return values, np.einsum("nij,njk,nlk->nil", jac, cov, jac)


def wetherill_data(
    dataset: Dataset, constants: Optional[Constants] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """Wetherill ratios (207Pb/235U, 206Pb/238U[, 204Pb/238U]) and their
    covariance matrices, shaped ``(n, k)`` and ``(n, k, k)``."""
    if dataset.scheme is not Scheme.UPB:
        raise InvalidInputError("Wetherill ratios require U-Pb data.")
    U, _ = resolve(constants).iratio("U238U235")
    x, cov = _measured(dataset)
    if dataset.format in (1, 4):
        return x, cov
    A, B = x[:, 0], x[:, 1]
    n = len(dataset)
    if dataset.format == 2:
        jac = np.zeros((n, 2, 2))
        jac[:, 0, 0] = -U * B / A**2
        jac[:, 0, 1] = U / A
        jac[:, 1, 0] = -1.0 / A**2
        return _transform(cov, np.column_stack([U * B / A, 1.0 / A]), jac)
    C = x[:, 2]
    jac = np.zeros((n, 3, 3))
    jac[:, 0, 0] = -U * B / A**2
    jac[:, 0, 1] = U / A
    jac[:, 1, 0] = -1.0 / A**2
    jac[:, 2, 0] = -C / A**2
    jac[:, 2, 2] = 1.0 / A
    return _transform(cov, np.column_stack([U * B / A, 1.0 / A, C / A]), jac)


def tera_wasserburg_data(
    dataset: Dataset, constants: Optional[Constants] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """Tera-Wasserburg ratios (238U/206Pb, 207Pb/206Pb) and covariances."""
    if dataset.scheme is not Scheme.UPB:
        raise InvalidInputError("Tera-Wasserburg ratios require U-Pb data.")
    U, _ = resolve(constants).iratio("U238U235")
    x, cov = _measured(dataset)
    if dataset.format in (2, 5):
        return x[:, :2], cov[:, :2, :2]
    X, Y = x[:, 0], x[:, 1]
    jac = np.zeros((len(dataset), 2, 2))
    jac[:, 0, 1] = -1.0 / Y**2
    jac[:, 1, 0] = 1.0 / (U * Y)
    jac[:, 1, 1] = -X / (U * Y**2)
    return _transform(cov[:, :2, :2], np.column_stack([1.0 / Y, X / (U * Y)]), jac)


def upb_ages(
    dataset: Dataset, exterr: bool = False, constants: Optional[Constants] = None
) -> pd.DataFrame:
    """Table of 207Pb/235U, 206Pb/238U and 207Pb/206Pb ages per aliquot."""
    w, wcov = wetherill_data(dataset, constants)
    tw, twcov = tera_wasserburg_data(dataset, constants)
    t75, s75 = Pb207U235_age(w[:, 0], np.sqrt(wcov[:, 0, 0]), exterr, constants)
    t68, s68 = Pb206U238_age(w[:, 1], np.sqrt(wcov[:, 1, 1]), exterr, constants)
    t76, s76 = Pb207Pb206_age(tw[:, 1], np.sqrt(twcov[:, 1, 1]), exterr, constants)
    return pd.DataFrame(
        {
            "t.75": t75,
            "s[t.75]": s75,
            "t.68": t68,
            "s[t.68]": s68,
            "t.76": t76,
            "s[t.76]": s76,
        }
    )


def filter_upb_ages(
    dataset: Dataset,
    type: int = 4,
    cutoff_76: float = 1100.0,
    cutoff_disc: Optional[Tuple[float, float]] = (-15.0, 5.0),
    exterr: bool = False,
    constants: Optional[Constants] = None,
) -> pd.DataFrame:
    """Select one age per aliquot and drop discordant aliquots.

    Args:
        type: ``1`` 207Pb/235U, ``2`` 206Pb/238U, ``3`` 207Pb/206Pb, ``4``
            206Pb/238U below ``cutoff_76`` Ma and 207Pb/206Pb above it.
        cutoff_76: Switch-over age in Ma.
        cutoff_disc: Allowed percentage discordance ``(min, max)``, measured
            between the 206Pb/238U age and the 207Pb/235U age (young
            aliquots) or the 207Pb/206Pb age (old aliquots). ``None``
            disables the filter.

    Returns:
        pandas.DataFrame: Columns ``t`` and ``s[t]`` indexed by aliquot.
    """
    if type not in (1, 2, 3, 4):
        raise InvalidInputError("U-Pb age type must be 1, 2, 3 or 4.")
    tab = upb_ages(dataset, exterr=exterr, constants=constants)
    young = tab["t.68"].to_numpy() < cutoff_76
    key = {1: "75", 2: "68", 3: "76"}.get(type)
    if key is None:
        t = np.where(young, tab["t.68"], tab["t.76"])
        st = np.where(young, tab["s[t.68]"], tab["s[t.76]"])
    else:
        t = tab[f"t.{key}"].to_numpy()
        st = tab[f"s[t.{key}]"].to_numpy()
    keep = np.isfinite(t)
    if cutoff_disc is not None:
        lo, hi = cutoff_disc
        with np.errstate(divide="ignore", invalid="ignore"):
            disc = np.where(
                young,
                100.0 * (1.0 - tab["t.68"] / tab["t.75"]),
                100.0 * (1.0 - tab["t.68"] / tab["t.76"]),
            )
        keep &= (disc > lo) & (disc < hi)
        if not keep.all():
            logger.info("Discordance filter removed %d of %d aliquots", int((~keep).sum()), len(keep))
    return age_table(t[keep], st[keep], index=tab.index[keep])


class UPbChronometer(Chronometer):
    scheme = Scheme.UPB

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        x, cov = wetherill_data(dataset, constants)
        names = ["Pb207U235", "Pb206U238", "Pb204U238"][: x.shape[1]]
        return pd.DataFrame(cov[i], index=names, columns=names)

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        self._check(dataset)
        return filter_upb_ages(
            dataset,
            type=options.get("type", 4),
            cutoff_76=options.get("cutoff_76", 1100.0),
            cutoff_disc=options.get("cutoff_disc", (-15.0, 5.0)),
            exterr=exterr,
            constants=constants,
        )

    def add_exterr(self, dataset, tt, st, constants=None, **options):
        age_type = options.get("type", 4)
        cutoff_76 = options.get("cutoff_76", 1100.0)
        if age_type == 1:
            R, sR = age_to_Pb207U235_ratio(tt, st, constants)
            return Pb207U235_age(R, sR, True, constants)
        if age_type == 2 or (age_type == 4 and tt < cutoff_76):
            R, sR = age_to_Pb206U238_ratio(tt, st, constants)
            return Pb206U238_age(R, sR, True, constants)
        R, sR = age_to_Pb207Pb206_ratio(tt, st, constants)
        return Pb207Pb206_age(R, sR, True, constants)
