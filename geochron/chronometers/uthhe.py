"""U-Th-(Sm)-He ages and log-ratio compositions."""

from __future__ import annotations

import math
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from geochron.chronometers.base import Chronometer, age_table
from geochron.constants import Constants, resolve
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme


class _Decay:
    """Helium production law for given decay constants."""

    def __init__(self, constants: Optional[Constants]) -> None:
        c = resolve(constants)
        self.l8 = c.decay("U238")[0]
        self.l5 = c.decay("U235")[0]
        self.l2 = c.decay("Th232")[0]
        self.l7 = c.decay("Sm147")[0]
        R = c.iratio("U238U235")[0]
        self.f8 = 8.0 * R / (R + 1.0)
        self.f5 = 7.0 / (R + 1.0)
        self.f7 = c.iratio("Sm147Sm")[0]

    def helium(self, t, U, Th, Sm):
        return (
            self.f8 * U * math.expm1(self.l8 * t)
            + self.f5 * U * math.expm1(self.l5 * t)
            + 6.0 * Th * math.expm1(self.l2 * t)
            + self.f7 * Sm * math.expm1(self.l7 * t)
        )

    def gradient(self, t, U, Th, Sm) -> Tuple[float, float, float, float]:
        """Derivatives of the helium production by t, U, Th and Sm."""
        e8, e5 = math.exp(self.l8 * t), math.exp(self.l5 * t)
        e2, e7 = math.exp(self.l2 * t), math.exp(self.l7 * t)
        d_t = (
            self.f8 * U * self.l8 * e8
            + self.f5 * U * self.l5 * e5
            + 6.0 * Th * self.l2 * e2
            + self.f7 * Sm * self.l7 * e7
        )
        d_U = self.f8 * (e8 - 1.0) + self.f5 * (e5 - 1.0)
        return d_t, d_U, 6.0 * (e2 - 1.0), self.f7 * (e7 - 1.0)

    def solve(self, U, Th, Sm, He) -> float:
        if He == 0:
            return 0.0
        hi = 1.0
        while self.helium(hi, U, Th, Sm) < He:
            hi *= 2.0
        return float(brentq(lambda t: self.helium(t, U, Th, Sm) - He, 0.0, hi, xtol=1e-12))


def uthhe_age(
    U: float,
    sU: float,
    Th: float,
    sTh: float,
    He: float,
    sHe: float,
    Sm: float = 0.0,
    sSm: float = 0.0,
    constants: Optional[Constants] = None,
) -> Tuple[float, float]:
    """Age of one aliquot from independent U, Th, He and Sm abundances.

    The abundances must share consistent molar units. Returns ``(t, st)`` in
    Ma, with ``st`` obtained by implicit differentiation of the helium
    production equation.
    """
    if U <= 0 and Th <= 0:
        raise InvalidInputError("U-Th-He ages require a positive U or Th content.")
    if He < 0:
        raise InvalidInputError("Helium content must be non-negative.")
    law = _Decay(constants)
    t = law.solve(U, Th, Sm, He)
    d_t, d_U, d_Th, d_Sm = law.gradient(t, U, Th, Sm)
    var = ((d_U * sU) ** 2 + (d_Th * sTh) ** 2 + (d_Sm * sSm) ** 2 + sHe**2) / d_t**2
    return t, math.sqrt(var)


def logratio_data(dataset: Dataset, w: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    """Log-ratio compositions ``ln(U/He), ln(Th/He)[, ln(Sm/He)]``.

    Args:
        dataset: U-Th-He dataset.
        w: Overdispersion, added as a relative error to every element.

    Returns:
        tuple: ``(n, d)`` compositions and their ``(n, d, d)`` covariance
        matrices, with ``d = 3`` when the dataset has an Sm channel.
    """
    U, Th, He = (dataset.column(c) for c in ("U", "Th", "He"))
    elements = [(U, dataset.column("errU")), (Th, dataset.column("errTh"))]
    if dataset.has("Sm") and dataset.has("errSm"):
        elements.append((dataset.column("Sm"), dataset.column("errSm")))
    if np.any(He <= 0) or any(np.any(x <= 0) for x, _ in elements):
        raise InvalidInputError("Log-ratio compositions require positive U, Th, Sm and He.")
    d = len(elements)
    comp = np.column_stack([np.log(x / He) for x, _ in elements])
    rHe = (dataset.column("errHe") / He) ** 2 + w**2
    cov = np.tile(rHe[:, None, None], (1, d, d))
    for j, (x, s) in enumerate(elements):
        cov[:, j, j] += (s / x) ** 2 + w**2
    return comp, cov


def logratio_age_jacobian(
    mu: np.ndarray, constants: Optional[Constants] = None
) -> Tuple[float, np.ndarray]:
    """Age of a log-ratio composition and its derivatives by the log-ratios."""
    mu = np.asarray(mu, dtype=float)
    U, Th = math.exp(mu[0]), math.exp(mu[1])
    Sm = math.exp(mu[2]) if mu.size > 2 else 0.0
    law = _Decay(constants)
    t = law.solve(U, Th, Sm, 1.0)
    d_t, d_U, d_Th, d_Sm = law.gradient(t, U, Th, Sm)
    return t, -np.array([d_U * U, d_Th * Th, d_Sm * Sm])[: mu.size] / d_t


def logratio_age(
    mu: np.ndarray, cov: np.ndarray, constants: Optional[Constants] = None
) -> Tuple[float, float]:
    """Age and standard error of a mean log-ratio composition."""
    t, J = logratio_age_jacobian(mu, constants)
    return t, float(np.sqrt(J @ np.asarray(cov, dtype=float) @ J))


class UThHeChronometer(Chronometer):
    scheme = Scheme.UTHHE

    def _elements(self, dataset):
        names = ["U", "Th", "He"]
        if dataset.has("Sm") and dataset.has("errSm"):
            names.append("Sm")
        return names

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        names = self._elements(dataset)
        var = [dataset.column(f"err{n}")[i] ** 2 for n in names]
        return pd.DataFrame(np.diag(var), index=names, columns=names)

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        self._check(dataset)
        cols = {n: dataset.column(n) for n in ("U", "errU", "Th", "errTh", "He", "errHe")}
        with_sm = "Sm" in self._elements(dataset)
        Sm = dataset.column("Sm") if with_sm else np.zeros(len(dataset))
        sSm = dataset.column("errSm") if with_sm else np.zeros(len(dataset))
        out = [
            uthhe_age(
                cols["U"][i],
                cols["errU"][i],
                cols["Th"][i],
                cols["errTh"][i],
                cols["He"][i],
                cols["errHe"][i],
                Sm[i],
                sSm[i],
                constants,
            )
            for i in range(len(dataset))
        ]
        return age_table([o[0] for o in out], [o[1] for o in out])
