"""230Th-234U-238U disequilibrium ages of carbonates.

Input ratios are activity ratios; ages are in ka because the U234 and Th230
decay constants are tabulated in ka^-1.
"""

from __future__ import annotations

import math
import warnings
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from geochron.chronometers.base import Chronometer
from geochron.constants import Constants, resolve
from geochron.schema import Scheme

_T_MAX = 2000.0


def _residual(t, A08, A48, l0, l4):
    k = l0 / (l0 - l4)
    E = math.exp((l4 - l0) * t)
    return 1.0 - math.exp(-l0 * t) + (A48 - 1.0) * k * (1.0 - E) - A08


def _sensitivities(t, A48, l0, l4):
    """Partial derivatives of the residual by t, A48, l0 and l4."""
    k = l0 / (l0 - l4)
    E = math.exp((l4 - l0) * t)
    f_t = l0 * math.exp(-l0 * t) + (A48 - 1.0) * l0 * E
    f_48 = k * (1.0 - E)
    f_l0 = t * math.exp(-l0 * t) + (A48 - 1.0) * (
        -l4 / (l0 - l4) ** 2 * (1.0 - E) + k * t * E
    )
    f_l4 = (A48 - 1.0) * (l0 / (l0 - l4) ** 2 * (1.0 - E) - k * t * E)
    return f_t, f_48, f_l0, f_l4


def ThU_age(
    Th230U238: float,
    U234U238: float,
    cov: Optional[np.ndarray] = None,
    exterr: bool = False,
    constants: Optional[Constants] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Age and initial 234U/238U activity ratio of one aliquot.

    Solves ``A08 = 1 - exp(-l0 t) + (A48 - 1) l0/(l0 - l4) (1 - exp((l4 - l0) t))``
    for ``t`` and back-calculates ``A48_0 = 1 + (A48 - 1) exp(l4 t)``.

    Args:
        Th230U238: Measured 230Th/238U activity ratio (``A08``).
        U234U238: Measured 234U/238U activity ratio (``A48``).
        cov: 2x2 covariance of ``(U234U238, Th230U238)``.
        exterr: Also propagate the Th230 and U234 decay constant errors.

    Returns:
        tuple: ``(par, cov)`` with ``par = [t, A48_0]`` and their 2x2
        covariance. ``par`` is NaN when the ratios admit no finite age.
    """
    c = resolve(constants)
    l0, sl0 = c.decay("Th230")
    l4, sl4 = c.decay("U234")
    A08 = float(Th230U238)
    A48 = float(U234U238)
    lo = _residual(0.0, A08, A48, l0, l4)
    hi = _residual(_T_MAX, A08, A48, l0, l4)
    if not (lo < 0.0 < hi):
        warnings.warn(
            f"230Th/238U = {A08:g} and 234U/238U = {A48:g} have no finite Th-U age.",
            UserWarning,
            stacklevel=2,
        )
        return np.full(2, np.nan), np.full((2, 2), np.nan)
    t = brentq(_residual, 0.0, _T_MAX, args=(A08, A48, l0, l4), xtol=1e-12)

    f_t, f_48, f_l0, f_l4 = _sensitivities(t, A48, l0, l4)
    # inputs: A48, A08, l0, l4
    dt = np.array([-f_48, 1.0, -f_l0, -f_l4]) / f_t
    g = math.exp(l4 * t)
    A48_0 = 1.0 + (A48 - 1.0) * g
    dA = (A48 - 1.0) * l4 * g * dt + np.array([g, 0.0, 0.0, (A48 - 1.0) * t * g])

    E_in = np.zeros((4, 4))
    if cov is not None:
        E_in[:2, :2] = np.asarray(cov, dtype=float)
    if exterr:
        E_in[2, 2] = sl0**2
        E_in[3, 3] = sl4**2
    J = np.vstack([dt, dA])
    out = J @ E_in @ J.T
    return np.array([t, A48_0]), (out + out.T) / 2.0


class ThUChronometer(Chronometer):
    scheme = Scheme.THU

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        s48 = dataset.column("errU234U238")[i]
        s08 = dataset.column("errTh230U238")[i]
        c = dataset.column("rXY")[i] * s48 * s08
        names = ["U234U238", "Th230U238"]
        return pd.DataFrame([[s48**2, c], [c, s08**2]], index=names, columns=names)

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        """Ages (ka) with the initial 234U/238U ratio ``48_0``, its error and
        its error correlation with the age."""
        self._check(dataset)
        A48 = dataset.column("U234U238")
        A08 = dataset.column("Th230U238")
        rows = []
        for i in range(len(dataset)):
            cov = self.covariance(dataset, i, constants).to_numpy()
            par, pcov = ThU_age(A08[i], A48[i], cov, exterr, constants)
            st, s0 = np.sqrt(np.diag(pcov))
            rho = pcov[0, 1] / (st * s0) if st > 0 and s0 > 0 else np.nan
            rows.append((par[0], st, par[1], s0, rho))
        return pd.DataFrame(rows, columns=["t", "s[t]", "48_0", "s[48_0]", "r[t,48_0]"])

    def add_exterr(self, dataset, tt, st, constants=None, **options):
        """Add the Th230 and U234 decay constant errors to a pooled age,
        evaluating the age sensitivities at the mean 234U/238U ratio."""
        c = resolve(constants)
        l0, sl0 = c.decay("Th230")
        l4, sl4 = c.decay("U234")
        A48 = float(np.mean(dataset.column("U234U238")))
        f_t, _, f_l0, f_l4 = _sensitivities(tt, A48, l0, l4)
        var = st**2 + (f_l0 / f_t * sl0) ** 2 + (f_l4 / f_t * sl4) ** 2
        return float(tt), float(np.sqrt(var))
