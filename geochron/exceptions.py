"""Exception types raised by the estimation core."""

from __future__ import annotations


class GeochronError(Exception):
    """Base exception for all geochron errors."""


class InvalidInputError(GeochronError, ValueError):
    """Raised when data or arguments are rejected before any computation."""


class ConstantNotFoundError(GeochronError, KeyError):
    """Raised when a decay constant or isotopic ratio is not tabulated."""

    def __init__(self, category: str, name: str) -> None:
        self.category = category
        self.name = name
        super().__init__(f"No {category} constant named '{name}'.")

    def __str__(self) -> str:
        return str(self.args[0])


class ConvergenceError(GeochronError):
    """Raised when neither the analytical nor the numerical covariance of a
    fit could be computed."""
