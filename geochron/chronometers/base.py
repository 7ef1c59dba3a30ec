"""Common interface implemented by every decay-scheme converter."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from geochron.constants import Constants
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.results import FitResult
from geochron.schema import Scheme


def pair(t, st):
    """Return ``(t, st)`` as floats for scalar input, arrays otherwise."""
    t = np.asarray(t, dtype=float)
    st = np.asarray(st, dtype=float)
    if t.ndim == 0 and st.ndim == 0:
        return float(t), float(st)
    return t, st


def age_table(t, st, index=None, columns: Sequence[str] = ("t", "s[t]")) -> pd.DataFrame:
    return pd.DataFrame({columns[0]: np.asarray(t, float), columns[1]: np.asarray(st, float)}, index=index)


def safe_sqrt(var):
    var = np.asarray(var, dtype=float)
    return np.sqrt(np.where(var > 0, var, 0.0))


class Chronometer(ABC):
    """Converter from measured ratios to ages for one decay scheme.

    Subclasses provide per-aliquot covariance matrices and delta-method
    ages; schemes with an isochron representation also provide the York
    coordinates and the conversion of a fitted line to an age.
    """

    scheme: Scheme

    def _check(self, dataset: Dataset) -> None:
        if dataset.scheme is not self.scheme:
            raise InvalidInputError(
                f"{type(self).__name__} cannot process {dataset.scheme.value} data."
            )

    @abstractmethod
    def covariance(
        self, dataset: Dataset, i: int, constants: Optional[Constants] = None
    ) -> pd.DataFrame:
        """Labelled covariance matrix of aliquot ``i``."""

    @abstractmethod
    def ages(
        self,
        dataset: Dataset,
        exterr: bool = False,
        i2i: bool = False,
        constants: Optional[Constants] = None,
        **options,
    ) -> pd.DataFrame:
        """Per-aliquot ages with columns ``t`` and ``s[t]``.

        Rows are indexed by aliquot position; aliquots rejected by a
        scheme-specific filter are dropped.
        """

    def add_exterr(
        self,
        dataset: Dataset,
        tt: float,
        st: float,
        constants: Optional[Constants] = None,
        **options,
    ) -> Tuple[float, float]:
        """Fold external (decay constant, calibration) uncertainty into a
        pooled age computed without it."""
        return float(tt), float(st)

    def isochron_data(
        self, dataset: Dataset, constants: Optional[Constants] = None
    ) -> pd.DataFrame:
        raise InvalidInputError(f"No isochron is defined for {self.scheme.value} data.")

    def isochron_age(
        self,
        fit: FitResult,
        dataset: Dataset,
        exterr: bool = False,
        constants: Optional[Constants] = None,
    ) -> Tuple[np.ndarray, np.ndarray, Tuple[str, str]]:
        raise InvalidInputError(f"No isochron is defined for {self.scheme.value} data.")


def ratio_pair(dataset: Dataset, x: str, y: str) -> pd.DataFrame:
    """York table ``X, sX, Y, sY, rXY`` from two ratio columns."""
    r = dataset.column("rXY") if "rXY" in dataset.table.columns else np.zeros(len(dataset))
    return pd.DataFrame(
        {
            "X": dataset.column(x),
            "sX": dataset.column(f"err{x}"),
            "Y": dataset.column(y),
            "sY": dataset.column(f"err{y}"),
            "rXY": r,
        }
    )


def apply_exterr(
    fit: FitResult,
    chronometer: Chronometer,
    dataset: Dataset,
    constants: Optional[Constants] = None,
    names: Optional[Sequence[str]] = None,
    **options,
) -> FitResult:
    """Return ``fit`` with external errors folded into its age parameters.

    Each age row and column of the covariance matrix is rescaled, so the
    correlations with the other parameters are preserved.
    """
    par = np.array(fit.par)
    cov = np.array(fit.cov)
    targets = names if names is not None else [n for n in fit.names if n.startswith("t")]
    for name in targets:
        i = fit.names.index(name)
        st = fit.stderr(name)
        _, st_ext = chronometer.add_exterr(dataset, par[i], st, constants, **options)
        if st > 0:
            f = st_ext / st
            cov[i, :] *= f
            cov[:, i] *= f
        else:
            cov[i, i] = st_ext**2
    return replace(fit, cov=cov, extras={**fit.extras, "exterr": True})
