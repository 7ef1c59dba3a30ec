"""
Statistical utilities for the estimation engines.

This subpackage provides the numerical building blocks shared by the
geochronological engines: error propagation, regression of correlated
errors-in-variables data and small numerical helpers. All functions operate
on arrays and primitive types; no decay-scheme logic is included.

Modules:
    uncertainty:
        Covariance identities for ratios sharing an isotope, correlation to
        covariance conversion, delta-method propagation and rounding of a
        value to its uncertainty.

    regression:
        Ordinary least squares, York (2-D) and Titterington (3-D) regression
        with correlated errors. Import it directly from
        ``geochron.stats.regression``; it depends on the result container,
        which in turn depends on this package.

    numerics:
        Goodness-of-fit statistics, Student-t factors, numerical Hessians,
        Schur-complement covariances and the overdispersion root search.

Design Principle:
    This subpackage has no dependencies on the chronometers or on the
    engines. It provides pure numerical utilities that can be independently
    tested.
"""

from .numerics import (
    as_vector,
    goodness_of_fit,
    inverse_hessian,
    numerical_hessian,
    schur_covariance,
    solve_unit_mswd,
    student_t_factor,
)
from .uncertainty import (
    cor2cov,
    cov2d,
    cov3d,
    cov_reciprocal,
    cov_xz_yz,
    cov_xz_zy,
    cov_zx_zy,
    format_value_with_uncertainty,
    propagate,
    propagate_error,
    round_value_to_uncertainty,
    symmetrize,
)

__all__ = [
    # Numerics
    "as_vector",
    "goodness_of_fit",
    "student_t_factor",
    "numerical_hessian",
    "inverse_hessian",
    "schur_covariance",
    "solve_unit_mswd",
    # Uncertainty
    "cov_xz_yz",
    "cov_zx_zy",
    "cov_xz_zy",
    "cov_reciprocal",
    "cor2cov",
    "cov2d",
    "cov3d",
    "symmetrize",
    "propagate",
    "propagate_error",
    "round_value_to_uncertainty",
    "format_value_with_uncertainty",
]
