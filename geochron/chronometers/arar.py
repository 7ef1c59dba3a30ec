"""40Ar/39Ar ages with atmospheric argon correction."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import pandas as pd

from geochron.chronometers.base import Chronometer, age_table, pair, safe_sqrt
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.schema import Scheme
from geochron.stats.regression import york
from geochron.stats.uncertainty import (
    cov_reciprocal,
    cov_xz_yz,
    cov_xz_zy,
    cov_zx_zy,
    propagate,
    symmetrize,
)

BASIS = ("Ar39Ar40", "Ar36Ar40", "Ar39Ar36", "Ar40Ar36")


def _ratio_covariance(x: np.ndarray, s: np.ndarray) -> np.ndarray:
    """4x4 covariance of the four ratios from their errors alone."""
    cov = np.diag(s**2)
    cov[0, 1] = cov_xz_yz(x[0], s[0], x[1], s[1], s[2])
    cov[0, 2] = cov_zx_zy(x[0], s[0], x[2], s[2], s[3])
    cov[0, 3] = cov_xz_zy(x[0], s[0], x[3], s[3], s[2])
    cov[1, 2] = cov_xz_zy(x[2], s[2], x[1], s[1], s[0])
    cov[1, 3] = cov_reciprocal(x[1], s[1], x[3], s[3])
    cov[2, 3] = cov_xz_yz(x[2], s[2], x[3], s[3], s[0])
    return symmetrize(cov)


def _pair_covariance(a, sa, b, sb, r, inverse: bool) -> Tuple[np.ndarray, np.ndarray]:
    cov2 = np.array([[sa**2, r * sa * sb], [r * sa * sb, sb**2]])
    if inverse:
        # (39/40, 36/40) -> basis
        x = np.array([a, b, a / b, 1.0 / b])
        jac = np.array([[1.0, 0.0], [0.0, 1.0], [1.0 / b, -a / b**2], [0.0, -1.0 / b**2]])
    else:
        # (39/36, 40/36) -> basis
        x = np.array([a / b, 1.0 / b, a, b])
        jac = np.array([[1.0 / b, -a / b**2], [0.0, -1.0 / b**2], [1.0, 0.0], [0.0, 1.0]])
    return x, propagate(jac, cov2)


def basis_data(dataset: Dataset) -> Tuple[np.ndarray, np.ndarray]:
    """All four Ar ratios per aliquot, shaped ``(n, 4)``, with ``(n, 4, 4)``
    covariance matrices ordered as :data:`BASIS`."""
    n = len(dataset)
    if dataset.format == 1:
        x = np.column_stack([dataset.column(c) for c in BASIS])
        s = np.column_stack([dataset.column(f"err{c}") for c in BASIS])
        return x, np.array([_ratio_covariance(x[i], s[i]) for i in range(n)])
    first, second = dataset.contract.values
    a, sa = dataset.column(first), dataset.column(f"err{first}")
    b, sb = dataset.column(second), dataset.column(f"err{second}")
    r = dataset.column("rXY")
    out = [_pair_covariance(a[i], sa[i], b[i], sb[i], r[i], dataset.format == 3) for i in range(n)]
    return np.array([o[0] for o in out]), np.array([o[1] for o in out])


def _york_table(x: np.ndarray, cov: np.ndarray, ix: int, iy: int) -> pd.DataFrame:
    sX = np.sqrt(cov[:, ix, ix])
    sY = np.sqrt(cov[:, iy, iy])
    return pd.DataFrame(
        {"X": x[:, ix], "sX": sX, "Y": x[:, iy], "sY": sY, "rXY": cov[:, ix, iy] / (sX * sY)}
    )


def ArAr_age(Ar40Ar39, sAr40Ar39=0.0, J=(1.0, 0.0), exterr=False, constants: Optional[Constants] = None):
    """Age in Ma from the radiogenic 40Ar*/39Ar ratio and the J-factor.

    The J-factor error is external and is only added with ``exterr``.
    """
    lam, slam = resolve(constants).decay("K40")
    R = np.asarray(Ar40Ar39, dtype=float)
    Jv, sJ = J
    t = np.log1p(Jv * R) / lam
    denom = lam * (1.0 + Jv * R)
    var = (Jv / denom * np.asarray(sAr40Ar39, dtype=float)) ** 2
    if exterr:
        var = var + (R / denom * sJ) ** 2 + (t / lam * slam) ** 2
    return pair(t, safe_sqrt(var))


def age_to_Ar40Ar39_ratio(t, st=0.0, J=(1.0, 0.0), constants: Optional[Constants] = None):
    lam, _ = resolve(constants).decay("K40")
    t = np.asarray(t, dtype=float)
    return pair(np.expm1(lam * t) / J[0], lam * np.exp(lam * t) * np.asarray(st, dtype=float) / J[0])


class ArArChronometer(Chronometer):
    scheme = Scheme.ARAR

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        _, cov = basis_data(dataset)
        return pd.DataFrame(cov[i], index=list(BASIS), columns=list(BASIS))

    def _atmospheric(self, dataset, i2i, constants):
        if not i2i:
            return resolve(constants).iratio("Ar40Ar36")
        x, cov = basis_data(dataset)
        d = _york_table(x, cov, 0, 1)
        fit = york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"])
        a, sa = fit.value("a"), fit.stderr("a")
        return 1.0 / a, sa / a**2

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        """Ages from 40Ar*/39Ar = 40Ar/39Ar - (40Ar/36Ar)_0 / (39Ar/36Ar)."""
        self._check(dataset)
        atm, satm = self._atmospheric(dataset, i2i, constants)
        x, cov = basis_data(dataset)
        R = 1.0 / x[:, 0] - atm / x[:, 2]
        var = np.empty(len(dataset))
        for i in range(len(dataset)):
            jac = np.array([-1.0 / x[i, 0] ** 2, atm / x[i, 2] ** 2])
            var[i] = jac @ cov[i][np.ix_([0, 2], [0, 2])] @ jac
            if exterr:
                var[i] += (satm / x[i, 2]) ** 2
        t, st = ArAr_age(R, safe_sqrt(var), dataset.J, exterr, constants)
        return age_table(t, st)

    def add_exterr(self, dataset, tt, st, constants=None, **options):
        R, sR = age_to_Ar40Ar39_ratio(tt, st, dataset.J, constants)
        return ArAr_age(R, sR, dataset.J, True, constants)

    def isochron_data(self, dataset, constants=None):
        """Normal isochron: 39Ar/36Ar vs 40Ar/36Ar."""
        self._check(dataset)
        x, cov = basis_data(dataset)
        return _york_table(x, cov, 2, 3)

    def isochron_age(self, fit, dataset, exterr=False, constants=None):
        b, sb = fit.value("b"), fit.stderr("b")
        t, st_ext = ArAr_age(b, sb, dataset.J, exterr, constants)
        _, st = ArAr_age(b, sb, dataset.J, False, constants)
        dt_db = st / sb if sb > 0 else 0.0
        cov = np.array(
            [
                [st_ext**2, dt_db * fit.cov[0, 1]],
                [dt_db * fit.cov[0, 1], fit.cov[0, 0]],
            ]
        )
        return np.array([t, fit.value("a")]), cov, ("t", "Ar40Ar36i")

    def step_weights(self, dataset: Dataset) -> np.ndarray:
        """Relative 39Ar amounts of heating steps, uniform if not supplied."""
        if dataset.has("Ar39"):
            w = dataset.column("Ar39")
        else:
            w = np.ones(len(dataset))
        return w / np.sum(w)
