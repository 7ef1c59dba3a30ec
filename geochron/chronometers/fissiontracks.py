"""Fission-track ages by the external detector method (EDM)."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import pandas as pd

from geochron.chronometers.base import Chronometer, age_table, pair, safe_sqrt
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme


def _calibration(zeta: Tuple[float, float], rhoD: Tuple[float, float], lam: float) -> float:
    # zeta in yr cm^2, lambda in Ma^-1
    return 0.5 * lam * zeta[0] * 1e-6 * rhoD[0]


def FT_age(
    R,
    sR,
    zeta: Tuple[float, float],
    rhoD: Tuple[float, float],
    exterr: bool = False,
    constants: Optional[Constants] = None,
):
    """Age in Ma from the spontaneous/induced track density ratio.

    ``t = ln(1 + lambda zeta rhoD R / 2) / lambda``. The zeta, rhoD and decay
    constant errors are external and only added with ``exterr``.
    """
    lam, slam = resolve(constants).decay("U238")
    R = np.asarray(R, dtype=float)
    sR = np.asarray(sR, dtype=float)
    A = _calibration(zeta, rhoD, lam) * R
    t = np.log1p(A) / lam
    dt_dA = 1.0 / (lam * (1.0 + A))
    var = (dt_dA * _calibration(zeta, rhoD, lam) * sR) ** 2
    if exterr:
        rel = (zeta[1] / zeta[0]) ** 2 + (rhoD[1] / rhoD[0]) ** 2
        dt_dlam = A / (lam**2 * (1.0 + A)) - t / lam
        var = var + (dt_dA * A) ** 2 * rel + (dt_dlam * slam) ** 2
    return pair(t, safe_sqrt(var))


def age_to_FT_ratio(t, st, zeta, rhoD, constants: Optional[Constants] = None):
    lam, _ = resolve(constants).decay("U238")
    t = np.asarray(t, dtype=float)
    c = _calibration(zeta, rhoD, lam)
    return pair(np.expm1(lam * t) / c, lam * np.exp(lam * t) * np.asarray(st, dtype=float) / c)


def count_ratios(dataset: Dataset) -> Tuple[np.ndarray, np.ndarray]:
    """``Ns/Ni`` and its Poisson standard error.

    Grains without spontaneous tracks get ``sR = 1/Ni``.
    """
    Ns = dataset.column("Ns")
    Ni = dataset.column("Ni")
    if np.any(Ni <= 0) or np.any(Ns < 0):
        raise InvalidInputError("Track counts must be non-negative with Ni > 0.")
    R = Ns / Ni
    Ns_safe = np.where(Ns > 0, Ns, 1.0)
    sR = np.where(Ns > 0, R * np.sqrt(1.0 / Ns_safe + 1.0 / Ni), 1.0 / Ni)
    return R, sR


class FissionTrackChronometer(Chronometer):
    scheme = Scheme.FISSIONTRACKS

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        names = ["Ns", "Ni"]
        counts = [dataset.column(n)[i] for n in names]
        return pd.DataFrame(np.diag(counts), index=names, columns=names)

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        self._check(dataset)
        R, sR = count_ratios(dataset)
        t, st = FT_age(R, sR, dataset.zeta, dataset.rhoD, exterr, constants)
        return age_table(t, st)

    def add_exterr(self, dataset, tt, st, constants=None, **options):
        R, sR = age_to_FT_ratio(tt, st, dataset.zeta, dataset.rhoD, constants)
        return FT_age(R, sR, dataset.zeta, dataset.rhoD, True, constants)
