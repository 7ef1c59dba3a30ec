"""
Per-aliquot age converters, one per decay scheme.

Each converter implements the :class:`~geochron.chronometers.base.Chronometer`
interface: a labelled covariance matrix per aliquot, delta-method ages with
and without external (decay constant, calibration) errors, and, where the
scheme has one, the isochron representation used by :mod:`.isochron`.

Modules:
    upb:
        Single-ratio U-Pb ages, Wetherill and Tera-Wasserburg ratio sets,
        age-type selection and discordance filtering.

    pbpb, arar, pd, thu, uthhe, fissiontracks:
        Converters for the remaining decay schemes.

    isochron:
        York isochron ages for Pb-Pb, Ar-Ar and the parent-daughter schemes.

Design Principle:
    The set of schemes is closed. Dispatch goes through
    :func:`get_chronometer`, never through attribute lookup on the data.
"""

from typing import Dict

from geochron.chronometers.arar import ArArChronometer
from geochron.chronometers.base import Chronometer
from geochron.chronometers.fissiontracks import FissionTrackChronometer
from geochron.chronometers.pbpb import PbPbChronometer
from geochron.chronometers.pd import ParentDaughterChronometer
from geochron.chronometers.thu import ThUChronometer
from geochron.chronometers.upb import UPbChronometer
from geochron.chronometers.uthhe import UThHeChronometer
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme

_REGISTRY: Dict[Scheme, Chronometer] = {
    Scheme.UPB: UPbChronometer(),
    Scheme.PBPB: PbPbChronometer(),
    Scheme.ARAR: ArArChronometer(),
    Scheme.THU: ThUChronometer(),
    Scheme.RBSR: ParentDaughterChronometer(Scheme.RBSR),
    Scheme.SMND: ParentDaughterChronometer(Scheme.SMND),
    Scheme.REOS: ParentDaughterChronometer(Scheme.REOS),
    Scheme.LUHF: ParentDaughterChronometer(Scheme.LUHF),
    Scheme.UTHHE: UThHeChronometer(),
    Scheme.FISSIONTRACKS: FissionTrackChronometer(),
}


def get_chronometer(scheme) -> Chronometer:
    """Return the converter for a decay scheme tag or its string value."""
    try:
        return _REGISTRY[Scheme(scheme)]
    except ValueError:
        raise InvalidInputError(f"Unknown decay scheme '{scheme}'.") from None


__all__ = [
    "Chronometer",
    "get_chronometer",
    "UPbChronometer",
    "PbPbChronometer",
    "ArArChronometer",
    "ThUChronometer",
    "ParentDaughterChronometer",
    "UThHeChronometer",
    "FissionTrackChronometer",
]
