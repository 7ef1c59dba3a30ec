"""Isochron ages from a York fit in each scheme's isochron coordinates."""

from __future__ import annotations

from typing import Optional

from geochron.chronometers import get_chronometer
from geochron.config import EstimationSettings
from geochron.constants import Constants
from geochron.dataset import Dataset
from geochron.results import FitResult
from geochron.stats.regression import york


def isochron(
    dataset: Dataset,
    exterr: bool = False,
    alpha: float = 0.05,
    settings: Optional[EstimationSettings] = None,
    constants: Optional[Constants] = None,
) -> FitResult:
    """Fit an isochron and convert slope or intercept to an age.

    Args:
        dataset: Pb-Pb, Ar-Ar, Rb-Sr, Sm-Nd, Re-Os or Lu-Hf data.
        exterr: Propagate decay constant and calibration errors into the age.
        alpha: Significance level of the confidence intervals.
        settings: York iteration knobs.
        constants: Constants table; the process-wide default if omitted.

    Returns:
        FitResult: Parameters ``("t", <initial ratio>)`` with their
        covariance; ``df``, ``mswd`` and ``p_value`` come from the York fit,
        which is kept in ``extras["york"]``.

    Raises:
        InvalidInputError: For schemes without an isochron (use
            :func:`geochron.ludwig.ludwig` for U-Pb).
    """
    chron = get_chronometer(dataset.scheme)
    d = chron.isochron_data(dataset, constants)
    fit = york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"], alpha=alpha, settings=settings)
    par, cov, names = chron.isochron_age(fit, dataset, exterr, constants)
    return FitResult(
        par=par,
        cov=cov,
        names=names,
        df=fit.df,
        mswd=fit.mswd,
        p_value=fit.p_value,
        tfact=fit.tfact,
        extras={"york": fit},
    )
