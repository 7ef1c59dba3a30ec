import math

import numpy as np
import pytest
from scipy.optimize import minimize

from geochron.exceptions import InvalidInputError
from geochron.stats.regression import ordinary_least_squares, titterington, york


def _york_objective(p, d):
    a, b = p
    var = d["sY"] ** 2 + b**2 * d["sX"] ** 2 - 2 * b * d["rXY"] * d["sX"] * d["sY"]
    return float(np.sum((d["Y"] - a - b * d["X"]) ** 2 / var))


def test_york_matches_direct_minimisation(york_data):
    d = york_data
    fit = york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"])

    ols = ordinary_least_squares(d["X"], d["Y"])
    res = minimize(
        _york_objective,
        [ols["a"], ols["b"]],
        args=(d,),
        method="Nelder-Mead",
        options={"xatol": 1e-12, "fatol": 1e-12, "maxiter": 20000},
    )
    assert math.isclose(fit.value("a"), res.x[0], rel_tol=1e-3)
    assert math.isclose(fit.value("b"), res.x[1], rel_tol=1e-3)
    assert math.isclose(fit.mswd, res.fun / (len(d) - 2), rel_tol=1e-3)
    assert fit.df == 10
    assert 0.0 <= fit.p_value <= 1.0


def test_york_pearson_benchmark():
    # Pearson's data with York's weights (York et al., 2004, Table I)
    X = np.array([0.0, 0.9, 1.8, 2.6, 3.3, 4.4, 5.2, 6.1, 6.5, 7.4])
    Y = np.array([5.9, 5.4, 4.4, 4.6, 3.5, 3.7, 2.8, 2.8, 2.4, 1.5])
    wX = np.array([1000.0, 1000.0, 500.0, 800.0, 200.0, 80.0, 60.0, 20.0, 1.8, 1.0])
    wY = np.array([1.0, 1.8, 4.0, 8.0, 20.0, 20.0, 70.0, 70.0, 100.0, 500.0])
    fit = york(X, 1.0 / np.sqrt(wX), Y, 1.0 / np.sqrt(wY))
    assert math.isclose(fit.value("b"), -0.480533, rel_tol=1e-5)
    assert math.isclose(fit.value("a"), 5.47991, rel_tol=1e-5)
    assert math.isclose(fit.stderr("b"), 0.0576, rel_tol=0.02)
    assert math.isclose(fit.stderr("a"), 0.292, rel_tol=0.02)
    assert math.isclose(fit.mswd * fit.df, 11.866, rel_tol=1e-3)


def test_york_covariance_is_symmetric_positive(york_data):
    d = york_data
    fit = york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"])
    assert np.allclose(fit.cov, fit.cov.T)
    assert np.all(np.diag(fit.cov) > 0)
    assert fit.names == ("a", "b")
    assert math.isclose(fit.ci("b"), fit.tfact * fit.stderr("b"))


def test_york_reduces_to_ols_without_x_errors():
    x = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    y = np.array([2.1, 3.9, 6.2, 7.8, 10.1, 12.2])
    sy = 0.2
    fit = york(x, 0.0, y, sy, 0.0)
    b, a = np.polyfit(x, y, 1)
    assert math.isclose(fit.value("a"), a, rel_tol=1e-9)
    assert math.isclose(fit.value("b"), b, rel_tol=1e-9)
    # known-variance OLS slope error
    assert math.isclose(fit.stderr("b"), sy / math.sqrt(np.sum((x - x.mean()) ** 2)), rel_tol=1e-9)


def test_york_rejects_bad_input():
    with pytest.raises(InvalidInputError):
        york([1.0, 2.0, 3.0], [0.1, 0.1], [1.0, 2.0, 3.0], 0.1)
    with pytest.raises(InvalidInputError) as exc_info:
        york([1.0, 2.0, 3.0], 0.1, [1.0, 2.0, 3.0], 0.1, 1.5)
    assert "correlation" in str(exc_info.value).lower()
    with pytest.raises(InvalidInputError):
        york([1.0, 2.0, 3.0], 0.0, [1.0, 2.0, 3.0], 0.0)


def test_york_logs_iteration_cap(york_data, caplog):
    from geochron.config import EstimationSettings

    d = york_data
    caplog.set_level("WARNING")
    york(d["X"], d["sX"], d["Y"], d["sY"], d["rXY"], settings=EstimationSettings(york_max_iter=1))
    assert any("iteration cap" in rec.getMessage() for rec in caplog.records)


def test_ols_requires_enough_points():
    with pytest.raises(InvalidInputError) as exc_info:
        ordinary_least_squares([1.0, 2.0], [1.0, 2.0])
    assert "insufficient" in str(exc_info.value).lower()


class TestTitterington:
    """Three-dimensional regression of correlated X, Y, Z data."""

    DATA = np.array(
        [
            [0.1677, 0.0047, 1.105, 0.014, 0.782, 0.015, 0.24, 0.51, 0.33],
            [0.2820, 0.0064, 1.081, 0.013, 0.798, 0.015, 0.26, 0.63, 0.32],
            [0.3699, 0.0076, 1.038, 0.011, 0.819, 0.015, 0.27, 0.69, 0.30],
            [0.4473, 0.0087, 1.051, 0.011, 0.812, 0.015, 0.27, 0.73, 0.30],
            [0.5065, 0.0095, 1.049, 0.010, 0.842, 0.015, 0.27, 0.76, 0.29],
            [0.5520, 0.0100, 1.039, 0.010, 0.862, 0.015, 0.27, 0.78, 0.28],
        ]
    )

    def test_four_parameters_and_degrees_of_freedom(self):
        fit = titterington(*self.DATA.T)
        assert fit.names == ("a", "b", "A", "B")
        assert fit.df == 8
        assert fit.cov.shape == (4, 4)
        assert np.all(np.isfinite(fit.cov))
        assert np.all(np.diag(fit.cov) > 0)
        assert math.isfinite(fit.mswd)

    def test_exact_plane_is_recovered(self):
        x = np.linspace(1.0, 5.0, 7)
        n = x.size
        fit = titterington(
            x, np.full(n, 0.01), 2.0 + 0.5 * x, np.full(n, 0.02), -1.0 + 3.0 * x, np.full(n, 0.05)
        )
        assert np.allclose(fit.par, [2.0, 0.5, -1.0, 3.0], atol=1e-8)
        assert fit.mswd < 1e-10

    def test_needs_three_points(self):
        with pytest.raises(InvalidInputError):
            titterington(*self.DATA[:2].T)
