"""Decay constants and reference isotopic ratios consumed by the converters.

Values are stored as ``(value, stderr)`` pairs keyed by category and name:

- ``lambda``: decay constants in Ma^-1 (U234 and Th230 in ka^-1).
- ``iratio``: reference isotopic ratios (atomic, not activity).

A process-wide default table is created at import. Engines accept an explicit
``constants`` argument and only fall back to the default when it is omitted,
so a caller can run with a modified table without touching shared state.
"""

from __future__ import annotations

import copy
import math
from typing import Dict, Mapping, Optional, Sequence, Tuple

from geochron.exceptions import ConstantNotFoundError, InvalidInputError

_DEFAULT_TABLE: Dict[str, Dict[str, Tuple[float, float]]] = {
    "lambda": {
        "U238": (0.000155125, 0.0000000835),
        "U235": (0.00098485, 0.00000067),
        "Th232": (0.000049475, 0.00000017),
        "K40": (0.0005543, 0.0000010),
        "Rb87": (0.000013972, 0.0000000045),
        "Sm147": (0.00000654, 0.000000025),
        "Re187": (0.00001666, 0.000000025),
        "Lu176": (0.00001867, 0.00000004),
        "U234": (0.00282206, 0.0000034),
        "Th230": (0.0091705, 0.0000008),
    },
    "iratio": {
        "U238U235": (137.818, 0.0225),
        "Ar40Ar36": (298.56, 0.155),
        "Pb206Pb204": (18.7, 0.0),
        "Pb207Pb204": (15.628, 0.0),
        "Sr87Sr86": (0.7045, 0.0),
        "Nd143Nd144": (0.512638, 0.0),
        "Os187Os188": (0.127, 0.0),
        "Hf176Hf177": (0.282785, 0.0),
        "Sm147Sm": (0.1499, 0.0),
    },
}


class Constants:
    """Table of physical constants with their standard errors."""

    def __init__(
        self, table: Optional[Mapping[str, Mapping[str, Tuple[float, float]]]] = None
    ) -> None:
        source = _DEFAULT_TABLE if table is None else table
        self._table: Dict[str, Dict[str, Tuple[float, float]]] = {
            category: {name: (float(v), float(s)) for name, (v, s) in entries.items()}
            for category, entries in source.items()
        }

    def get(self, category: str, name: str) -> Tuple[float, float]:
        """Return ``(value, stderr)`` for a tabulated constant.

        Raises:
            ConstantNotFoundError: If the category or name is unknown.
        """
        try:
            return self._table[category][name]
        except KeyError:
            raise ConstantNotFoundError(category, name) from None

    def set(self, category: str, name: str, value: float, stderr: float = 0.0) -> None:
        """Insert or overwrite a constant in this table."""
        value = float(value)
        stderr = float(stderr)
        if not math.isfinite(value) or not math.isfinite(stderr):
            raise InvalidInputError("Constant value and stderr must be finite.")
        if stderr < 0:
            raise InvalidInputError("Constant stderr must be non-negative.")
        self._table.setdefault(category, {})[name] = (value, stderr)

    def decay(self, nuclide: str) -> Tuple[float, float]:
        return self.get("lambda", nuclide)

    def iratio(self, ratio: str) -> Tuple[float, float]:
        return self.get("iratio", ratio)

    def names(self, category: str) -> Sequence[str]:
        return tuple(self._table.get(category, {}))

    def copy(self) -> "Constants":
        return Constants(copy.deepcopy(self._table))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Mapping[str, Sequence[float]]]) -> "Constants":
        """Build a table from the persisted ``{category: {name: [value, stderr]}}``
        layout. Entries absent from ``mapping`` keep their default values."""
        out = cls()
        for category, entries in mapping.items():
            for name, pair in entries.items():
                if len(pair) != 2:
                    raise InvalidInputError(
                        f"Constant '{category}/{name}' must be a [value, stderr] pair."
                    )
                out.set(category, name, pair[0], pair[1])
        return out

    def to_mapping(self) -> Dict[str, Dict[str, list]]:
        return {
            category: {name: [v, s] for name, (v, s) in entries.items()}
            for category, entries in self._table.items()
        }


_default_constants = Constants()


def get_default_constants() -> Constants:
    return _default_constants


def set_default_constants(constants: Constants) -> None:
    """Replace the process-wide default table used when no table is passed."""
    global _default_constants
    if not isinstance(constants, Constants):
        raise InvalidInputError("set_default_constants expects a Constants instance.")
    _default_constants = constants


def get_constant(category: str, name: str) -> Tuple[float, float]:
    return _default_constants.get(category, name)


def set_constant(category: str, name: str, value: float, stderr: float = 0.0) -> None:
    _default_constants.set(category, name, value, stderr)


def resolve(constants: Optional[Constants]) -> Constants:
    return _default_constants if constants is None else constants
