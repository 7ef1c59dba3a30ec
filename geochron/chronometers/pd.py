"""Simple parent-daughter schemes: Rb-Sr, Sm-Nd, Re-Os and Lu-Hf.

All four share the decay law ``D/d = (D/d)_0 + P/d (exp(lambda t) - 1)``,
where ``P/d`` is the parent and ``D/d`` the daughter ratio, both normalised to
a stable isotope of the daughter element.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from geochron.chronometers.base import Chronometer, age_table, pair, ratio_pair, safe_sqrt
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.schema import PARENT_DAUGHTER, Scheme
from geochron.stats.regression import york


def pd_age(
    parent,
    sparent,
    daughter,
    sdaughter,
    rxy=0.0,
    nuclide: str = "Rb87",
    initial=(0.0, 0.0),
    exterr: bool = False,
    constants: Optional[Constants] = None,
):
    """Age of a parent-daughter pair given the initial daughter ratio.

    Args:
        parent, sparent: Parent ratio (e.g. 87Rb/86Sr) and its error.
        daughter, sdaughter: Daughter ratio (e.g. 87Sr/86Sr) and its error.
        rxy: Error correlation between the two ratios.
        nuclide: Parent nuclide whose decay constant is used.
        initial: Initial daughter ratio ``(value, stderr)``.
        exterr: Also propagate the initial ratio and decay constant errors.

    Returns:
        tuple: ``(t, st)`` in Ma.
    """
    lam, slam = resolve(constants).decay(nuclide)
    X = np.asarray(parent, dtype=float)
    Y = np.asarray(daughter, dtype=float)
    sX = np.asarray(sparent, dtype=float)
    sY = np.asarray(sdaughter, dtype=float)
    Y0, sY0 = initial
    q = (Y - Y0) / X
    t = np.log1p(q) / lam
    dt_dY = 1.0 / (X * lam * (1.0 + q))
    dt_dX = -q * dt_dY
    var = dt_dX**2 * sX**2 + dt_dY**2 * sY**2 + 2 * dt_dX * dt_dY * rxy * sX * sY
    if exterr:
        var = var + (dt_dY * sY0) ** 2 + (t / lam * slam) ** 2
    return pair(t, safe_sqrt(var))


def age_to_pd_ratio(t, st=0.0, nuclide: str = "Rb87", constants: Optional[Constants] = None):
    """Radiogenic daughter/parent ratio ``exp(lambda t) - 1``."""
    lam, _ = resolve(constants).decay(nuclide)
    t = np.asarray(t, dtype=float)
    return pair(np.expm1(lam * t), lam * np.exp(lam * t) * np.asarray(st, dtype=float))


class ParentDaughterChronometer(Chronometer):
    """Converter for one of the four parent-daughter schemes."""

    def __init__(self, scheme: Scheme) -> None:
        self.scheme = Scheme(scheme)
        self.nuclide, self.parent, self.daughter = PARENT_DAUGHTER[self.scheme]

    @property
    def initial_ratio(self) -> str:
        return self.daughter

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        d = self.isochron_data(dataset).iloc[i]
        c = d["rXY"] * d["sX"] * d["sY"]
        names = [self.parent, self.daughter]
        return pd.DataFrame([[d["sX"] ** 2, c], [c, d["sY"] ** 2]], index=names, columns=names)

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        """Model ages relative to the tabulated initial ratio, or to the
        isochron intercept with ``i2i``."""
        self._check(dataset)
        d = self.isochron_data(dataset)
        if i2i:
            fit = york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"])
            initial = (fit.value("a"), fit.stderr("a"))
        else:
            initial = resolve(constants).iratio(self.initial_ratio)
        t, st = pd_age(
            d["X"].to_numpy(),
            d["sX"].to_numpy(),
            d["Y"].to_numpy(),
            d["sY"].to_numpy(),
            d["rXY"].to_numpy(),
            self.nuclide,
            initial,
            exterr,
            constants,
        )
        return age_table(t, st)

    def add_exterr(self, dataset, tt, st, constants=None, **options):
        lam, slam = resolve(constants).decay(self.nuclide)
        q, sq = age_to_pd_ratio(tt, st, self.nuclide, constants)
        t = np.log1p(q) / lam
        var = (sq / (lam * (1.0 + q))) ** 2 + (t / lam * slam) ** 2
        return float(t), float(np.sqrt(var))

    def isochron_data(self, dataset: Dataset, constants=None):
        self._check(dataset)
        return ratio_pair(dataset, self.parent, self.daughter)

    def isochron_age(self, fit, dataset, exterr=False, constants=None):
        lam, slam = resolve(constants).decay(self.nuclide)
        b = fit.value("b")
        t = np.log1p(b) / lam
        dt_db = 1.0 / (lam * (1.0 + b))
        var_t = dt_db**2 * fit.cov[1, 1]
        if exterr:
            var_t += (t / lam * slam) ** 2
        cov_ta = dt_db * fit.cov[0, 1]
        cov = np.array([[var_t, cov_ta], [cov_ta, fit.cov[0, 0]]])
        return np.array([t, fit.value("a")]), cov, ("t", f"{self.daughter}i")
