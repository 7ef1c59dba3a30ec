import math

import numpy as np
import pytest

from geochron.exceptions import InvalidInputError
from geochron.stats.uncertainty import (
    cor2cov,
    cov_xz_yz,
    format_value_with_uncertainty,
    propagate,
    propagate_error,
    round_value_to_uncertainty,
    symmetrize,
)


def test_shared_denominator_covariance_vanishes_for_independent_logs():
    # relative errors of 1% and 2%, so x/y carries sqrt(1e-4 + 4e-4)
    xz, yz = 2.0, 4.0
    err_xy = 0.5 * math.sqrt(0.01**2 + 0.02**2)
    assert math.isclose(cov_xz_yz(xz, 0.02, yz, 0.08, err_xy), 0.0, abs_tol=1e-15)


def test_cor2cov_and_symmetry():
    cov = cor2cov([1.0, 2.0], np.array([[1.0, 0.5], [0.5, 1.0]]))
    assert np.allclose(cov, [[1.0, 1.0], [1.0, 4.0]])
    with pytest.raises(InvalidInputError):
        cor2cov([1.0, 2.0, 3.0], np.eye(2))
    assert np.allclose(symmetrize(np.array([[1.0, 2.0], [0.0, 3.0]])), [[1.0, 2.0], [2.0, 3.0]])


def test_propagate_sum_of_correlated_values():
    cov = np.array([[0.04, 0.01], [0.01, 0.09]])
    # var(x + y) = 0.04 + 0.09 + 2 * 0.01
    assert math.isclose(propagate_error([1.0, 1.0], cov), math.sqrt(0.15))
    out = propagate(np.eye(2), cov)
    assert np.allclose(out, cov)


def test_round_value_to_uncertainty():
    assert round_value_to_uncertainty(12.3456, 0.0962) == (12.346, 0.096)
    # rounding the uncertainty up into the next decade
    v, u = round_value_to_uncertainty(12.3456, 0.0996)
    assert math.isclose(u, 0.1)
    assert math.isclose(v, 12.35)


def test_format_value_with_uncertainty():
    assert format_value_with_uncertainty(251.2751, 0.1093) == "251.28 ± 0.11"
    assert format_value_with_uncertainty(1234.5, 56.0, unit="Ma") == "1234 ± 56 Ma"
