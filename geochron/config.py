"""Iteration caps and convergence tolerances for the estimation engines.

Every iterative engine exits on its tolerance first and uses the cap only as
a safety bound. Reaching a cap is logged, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class EstimationSettings:
    """Container for engine iteration knobs.

    Attributes:
        central_max_iter: Cap on the Galbraith fixed-point loop (central ages).
        central_tol: Relative change in the central value and dispersion
            below which the loop stops.
        em_max_iter: Cap on EM iterations in the mixture models.
        em_tol: Threshold on the squared relative log-likelihood change.
        york_max_iter: Cap on York slope updates.
        york_tol: Relative slope change below which York stops.
        titterington_max_iter: Cap on alternating latent/parameter updates.
        titterington_tol: Relative parameter change below which Titterington
            stops.
        bic_max_k: Largest number of components tried by ``k='auto'``.
        overdispersion_max_doublings: Cap on bracket expansion when solving
            for the overdispersion that brings the MSWD to unity.
        minage_grid: Grid sizes for (mu, sigma, proportion) in the minimum
            age model.
    """

    central_max_iter: int = 30
    central_tol: float = 1e-10
    em_max_iter: int = 100
    em_tol: float = 1e-20
    york_max_iter: int = 100
    york_tol: float = 1e-12
    titterington_max_iter: int = 1000
    titterington_tol: float = 1e-12
    bic_max_k: int = 5
    overdispersion_max_doublings: int = 60
    minage_grid: Tuple[int, int, int] = (100, 10, 20)


DEFAULT_SETTINGS = EstimationSettings()


def resolve(settings: Optional[EstimationSettings]) -> EstimationSettings:
    return DEFAULT_SETTINGS if settings is None else settings
