"""Result container returned by every estimation engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from geochron.stats.uncertainty import format_value_with_uncertainty


def _frozen(arr: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if arr is None:
        return None
    out = np.array(arr, dtype=float if np.asarray(arr).dtype != bool else bool)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class FitResult:
    """Fitted parameters, their covariance and goodness-of-fit diagnostics.

    Attributes:
        par: Parameter estimates, ordered as ``names``.
        cov: Covariance matrix of ``par``.
        names: Parameter labels, e.g. ``("t", "76i")`` or ``("a", "b")``.
        df: Degrees of freedom of the fit.
        mswd: Mean square of weighted deviates (NaN when undefined).
        p_value: Chi-square p-value of the fit (NaN when undefined).
        model: Variance model (1 analytical, 2 unweighted, 3 overdispersed).
        tfact: Student-t multiplier used for the confidence intervals.
        disp: Overdispersion estimate (standard deviation), 0 if none.
        disp_ci: Confidence half-width of ``disp``.
        props: Mixing proportions of a mixture model.
        props_err: Standard errors of ``props``.
        loglik: Log-likelihood at the optimum, where defined.
        valid: Per-aliquot inclusion mask (outlier rejection, plateau steps).
        extras: Engine-specific outputs (e.g. initial ratios, BIC).
    """

    par: np.ndarray
    cov: np.ndarray
    names: Tuple[str, ...]
    df: float
    mswd: float
    p_value: float
    model: int = 1
    tfact: float = math.nan
    disp: float = 0.0
    disp_ci: float = 0.0
    props: Optional[np.ndarray] = None
    props_err: Optional[np.ndarray] = None
    loglik: float = math.nan
    valid: Optional[np.ndarray] = None
    extras: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        par = _frozen(np.atleast_1d(self.par))
        cov = _frozen(np.atleast_2d(self.cov))
        if cov.shape != (par.size, par.size):
            raise ValueError("Covariance shape must match the parameter vector.")
        if len(self.names) != par.size:
            raise ValueError("One name is required per parameter.")
        object.__setattr__(self, "par", par)
        object.__setattr__(self, "cov", cov)
        object.__setattr__(self, "names", tuple(self.names))
        object.__setattr__(self, "props", _frozen(self.props))
        object.__setattr__(self, "props_err", _frozen(self.props_err))
        object.__setattr__(self, "valid", _frozen(self.valid))
        object.__setattr__(self, "extras", dict(self.extras))

    def _index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"No parameter named '{name}'.") from None

    def value(self, name: str) -> float:
        return float(self.par[self._index(name)])

    def stderr(self, name: str) -> float:
        var = float(self.cov[self._index(name), self._index(name)])
        return math.sqrt(var) if var > 0 else 0.0 if var == 0 else math.nan

    def ci(self, name: str) -> float:
        """Confidence half-width of a parameter (``tfact * stderr``)."""
        return self.tfact * self.stderr(name)

    @property
    def err(self) -> np.ndarray:
        d = np.diag(self.cov)
        return np.sqrt(np.where(d >= 0, d, np.nan))

    def summary(self) -> pd.DataFrame:
        err = self.err
        return pd.DataFrame(
            {"value": self.par, "s": err, "ci": self.tfact * err},
            index=pd.Index(self.names, name="parameter"),
        )

    def format(self, name: str, sigdig: int = 2) -> str:
        return format_value_with_uncertainty(self.value(name), self.stderr(name), sigdig=sigdig)
