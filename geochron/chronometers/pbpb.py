"""Pb-Pb ages from 204Pb-normalised or 206Pb-normalised lead ratios."""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from geochron.chronometers.base import Chronometer, age_table, safe_sqrt
from geochron.chronometers.upb import Pb207Pb206_age, age_to_Pb207Pb206_ratio
from geochron.constants import Constants
from geochron.dataset import Dataset
from geochron.schema import Scheme
from geochron.stats.regression import york


def inverse_isochron_data(dataset: Dataset) -> pd.DataFrame:
    """204Pb/206Pb vs 207Pb/206Pb York table."""
    r = dataset.column("rXY")
    if dataset.format == 2:
        X, sX = dataset.column("Pb204Pb206"), dataset.column("errPb204Pb206")
        Y, sY = dataset.column("Pb207Pb206"), dataset.column("errPb207Pb206")
        return pd.DataFrame({"X": X, "sX": sX, "Y": Y, "sY": sY, "rXY": r})
    a, sa = dataset.column("Pb206Pb204"), dataset.column("errPb206Pb204")
    b, sb = dataset.column("Pb207Pb204"), dataset.column("errPb207Pb204")
    cov_ab = r * sa * sb
    # X = 1/a, Y = b/a
    var_x = (sa / a**2) ** 2
    var_y = (b / a**2) ** 2 * sa**2 + (sb / a) ** 2 - 2 * b / a**3 * cov_ab
    cov_xy = (1 / a**2) * (b / a**2) * sa**2 - (1 / a**2) * (1 / a) * cov_ab
    sX = np.sqrt(var_x)
    sY = safe_sqrt(var_y)
    return pd.DataFrame(
        {"X": 1 / a, "sX": sX, "Y": b / a, "sY": sY, "rXY": cov_xy / (sX * sY)}
    )


class PbPbChronometer(Chronometer):
    scheme = Scheme.PBPB

    def covariance(self, dataset, i, constants=None):
        self._check(dataset)
        d = inverse_isochron_data(dataset).iloc[i]
        c = d["rXY"] * d["sX"] * d["sY"]
        names = ["Pb204Pb206", "Pb207Pb206"]
        return pd.DataFrame([[d["sX"] ** 2, c], [c, d["sY"] ** 2]], index=names, columns=names)

    def ages(self, dataset, exterr=False, i2i=False, constants=None, **options):
        """Ages from radiogenic 207Pb/206Pb after subtracting common lead
        with the isochron slope (``i2i``) or without correction."""
        self._check(dataset)
        d = inverse_isochron_data(dataset)
        c0 = 0.0
        if i2i:
            c0 = york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"]).value("b")
        R = d["Y"] - c0 * d["X"]
        var = c0**2 * d["sX"] ** 2 + d["sY"] ** 2 - 2 * c0 * d["rXY"] * d["sX"] * d["sY"]
        t, st = Pb207Pb206_age(R.to_numpy(), safe_sqrt(var), exterr, constants)
        return age_table(t, st)

    def add_exterr(self, dataset, tt, st, constants=None, **options):
        R, sR = age_to_Pb207Pb206_ratio(tt, st, constants)
        return Pb207Pb206_age(R, sR, True, constants)

    def isochron_data(self, dataset, constants=None):
        self._check(dataset)
        return inverse_isochron_data(dataset)

    def isochron_age(self, fit, dataset, exterr=False, constants: Optional[Constants] = None):
        a, sa = fit.value("a"), fit.stderr("a")
        t, st_ext = Pb207Pb206_age(a, sa, exterr, constants)
        _, st = Pb207Pb206_age(a, sa, False, constants)
        dt_da = st / sa if sa > 0 else 0.0
        cov = np.array(
            [
                [st_ext**2, dt_da * fit.cov[0, 1]],
                [dt_da * fit.cov[0, 1], fit.cov[1, 1]],
            ]
        )
        return np.array([t, fit.value("b")]), cov, ("t", "74i")
