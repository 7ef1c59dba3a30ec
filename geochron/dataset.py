"""Immutable collections of aliquots sharing a decay scheme and input format."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from geochron.exceptions import InvalidInputError
from geochron.schema import ColumnContract, Scheme, get_contract


def _as_pair(name: str, pair: Optional[Sequence[float]]) -> Optional[Tuple[float, float]]:
    if pair is None:
        return None
    if len(pair) != 2:
        raise InvalidInputError(f"{name} must be a (value, stderr) pair.")
    value, stderr = float(pair[0]), float(pair[1])
    if not (math.isfinite(value) and math.isfinite(stderr)):
        raise InvalidInputError(f"{name} must be finite.")
    if value <= 0 or stderr < 0:
        raise InvalidInputError(f"{name} must be positive with a non-negative stderr.")
    return value, stderr


@dataclass(frozen=True)
class Dataset:
    """Ordered aliquots of one decay scheme.

    Attributes:
        scheme: Decay system tag.
        format: Input column layout, see :data:`geochron.schema.CONTRACTS`.
        table: One row per aliquot. Columns are coerced to float on
            construction and the frame is copied, so later edits to the
            caller's frame do not leak in.
        J: Ar-Ar irradiation parameter ``(value, stderr)``.
        zeta: Fission-track zeta calibration factor ``(value, stderr)``.
        rhoD: Fission-track dosimeter track density ``(value, stderr)``.
    """

    scheme: Scheme
    format: int
    table: pd.DataFrame = field(repr=False)
    J: Optional[Tuple[float, float]] = None
    zeta: Optional[Tuple[float, float]] = None
    rhoD: Optional[Tuple[float, float]] = None

    def __post_init__(self) -> None:
        try:
            scheme = Scheme(self.scheme)
        except ValueError:
            raise InvalidInputError(f"Unknown decay scheme '{self.scheme}'.") from None
        object.__setattr__(self, "scheme", scheme)
        object.__setattr__(self, "format", int(self.format))
        contract = get_contract(scheme, self.format)

        if not isinstance(self.table, pd.DataFrame):
            raise InvalidInputError("Dataset table must be a pandas DataFrame.")
        missing = [c for c in contract.required if c not in self.table.columns]
        if missing:
            raise InvalidInputError(
                f"Missing columns for {scheme.value} format {self.format}: {missing}"
            )
        if len(self.table) == 0:
            raise InvalidInputError("Dataset must contain at least one aliquot.")

        present = [c for c in contract.required + contract.optional if c in self.table.columns]
        table = self.table[present].apply(pd.to_numeric, errors="coerce").reset_index(drop=True)
        if table[list(contract.required)].isna().to_numpy().any():
            raise InvalidInputError("Dataset columns must be finite numbers.")
        object.__setattr__(self, "table", table)

        object.__setattr__(self, "J", _as_pair("J", self.J))
        object.__setattr__(self, "zeta", _as_pair("zeta", self.zeta))
        object.__setattr__(self, "rhoD", _as_pair("rhoD", self.rhoD))
        if scheme is Scheme.ARAR and self.J is None:
            raise InvalidInputError("Ar-Ar datasets require a J-factor.")
        if scheme is Scheme.FISSIONTRACKS and (self.zeta is None or self.rhoD is None):
            raise InvalidInputError("Fission-track datasets require zeta and rhoD.")

    def __len__(self) -> int:
        return int(len(self.table))

    @property
    def contract(self) -> ColumnContract:
        return get_contract(self.scheme, self.format)

    def column(self, name: str) -> np.ndarray:
        """Return one column as a float array."""
        if name not in self.table.columns:
            raise InvalidInputError(f"Column '{name}' is not present in this dataset.")
        return self.table[name].to_numpy(dtype=float)

    def has(self, name: str) -> bool:
        return name in self.table.columns and bool(np.isfinite(self.column(name)).all())

    def subset(self, mask: Sequence[bool]) -> "Dataset":
        """Return a new dataset restricted to the aliquots where ``mask`` is true."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self),):
            raise InvalidInputError("Mask length must match the number of aliquots.")
        return Dataset(
            self.scheme,
            self.format,
            self.table.loc[mask].reset_index(drop=True),
            J=self.J,
            zeta=self.zeta,
            rhoD=self.rhoD,
        )
