"""Define the decay schemes and the column layout each input format carries."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from geochron.exceptions import InvalidInputError


class Scheme(str, Enum):
    """Supported decay systems."""

    UPB = "UPb"
    PBPB = "PbPb"
    ARAR = "ArAr"
    THU = "ThU"
    REOS = "ReOs"
    SMND = "SmNd"
    RBSR = "RbSr"
    LUHF = "LuHf"
    UTHHE = "UThHe"
    FISSIONTRACKS = "FissionTracks"


@dataclass(frozen=True)
class ColumnContract:
    """Container for the column labels of one scheme/format combination.

    Attributes:
        values: Measured quantities (isotopic ratios, abundances or counts)
            in the order the converters address them as X, Y, Z.
        errors: Column names of the one-sigma absolute standard errors, one
            per entry of ``values``. Empty for count data.
        correlations: Error correlation coefficients between pairs of
            ``values`` (rXY, rXZ, rYZ).
        optional: Columns that are used when present, e.g. the Sm channel of
            U-Th-He data or the 39Ar step amounts of Ar-Ar spectra.
    """

    values: Tuple[str, ...]
    errors: Tuple[str, ...] = ()
    correlations: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()

    @property
    def required(self) -> Tuple[str, ...]:
        return self.values + self.errors + self.correlations


def _ratios(*names: str, correlations: Tuple[str, ...] = (), optional=()) -> ColumnContract:
    return ColumnContract(
        values=tuple(names),
        errors=tuple(f"err{n}" for n in names),
        correlations=correlations,
        optional=tuple(optional),
    )


_R2 = ("rXY",)
_R3 = ("rXY", "rXZ", "rYZ")

CONTRACTS: Dict[Tuple[Scheme, int], ColumnContract] = {
    # Wetherill and Tera-Wasserburg, without and with 204Pb
    (Scheme.UPB, 1): _ratios("Pb207U235", "Pb206U238", correlations=_R2),
    (Scheme.UPB, 2): _ratios("U238Pb206", "Pb207Pb206", correlations=_R2),
    (Scheme.UPB, 4): _ratios("Pb207U235", "Pb206U238", "Pb204U238", correlations=_R3),
    (Scheme.UPB, 5): _ratios("U238Pb206", "Pb207Pb206", "Pb204Pb206", correlations=_R3),
    (Scheme.PBPB, 1): _ratios("Pb206Pb204", "Pb207Pb204", correlations=_R2),
    (Scheme.PBPB, 2): _ratios("Pb204Pb206", "Pb207Pb206", correlations=_R2),
    (Scheme.ARAR, 1): _ratios(
        "Ar39Ar40", "Ar36Ar40", "Ar39Ar36", "Ar40Ar36", optional=("Ar39",)
    ),
    (Scheme.ARAR, 2): _ratios("Ar39Ar36", "Ar40Ar36", correlations=_R2, optional=("Ar39",)),
    (Scheme.ARAR, 3): _ratios("Ar39Ar40", "Ar36Ar40", correlations=_R2, optional=("Ar39",)),
    (Scheme.THU, 1): _ratios("U234U238", "Th230U238", correlations=_R2),
    (Scheme.RBSR, 1): _ratios("Rb87Sr86", "Sr87Sr86", correlations=_R2),
    (Scheme.SMND, 1): _ratios("Sm147Nd144", "Nd143Nd144", correlations=_R2),
    (Scheme.REOS, 1): _ratios("Re187Os188", "Os187Os188", correlations=_R2),
    (Scheme.LUHF, 1): _ratios("Lu176Hf177", "Hf176Hf177", correlations=_R2),
    (Scheme.UTHHE, 1): _ratios("U", "Th", "He", optional=("Sm", "errSm")),
    (Scheme.FISSIONTRACKS, 1): ColumnContract(values=("Ns", "Ni")),
}

# Parent-daughter schemes: (parent nuclide, parent ratio, daughter ratio)
PARENT_DAUGHTER: Dict[Scheme, Tuple[str, str, str]] = {
    Scheme.RBSR: ("Rb87", "Rb87Sr86", "Sr87Sr86"),
    Scheme.SMND: ("Sm147", "Sm147Nd144", "Nd143Nd144"),
    Scheme.REOS: ("Re187", "Re187Os188", "Os187Os188"),
    Scheme.LUHF: ("Lu176", "Lu176Hf177", "Hf176Hf177"),
}


def get_contract(scheme: Scheme, fmt: int) -> ColumnContract:
    try:
        return CONTRACTS[(Scheme(scheme), int(fmt))]
    except (KeyError, ValueError):
        raise InvalidInputError(
            f"Unsupported format {fmt} for scheme '{getattr(scheme, 'value', scheme)}'."
        ) from None
