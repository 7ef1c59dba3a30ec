"""Discordia regression of Tera-Wasserburg data with common lead."""

import math
import sys

import numpy as np
import pandas as pd
import pytest

from geochron.dataset import Dataset
from geochron.exceptions import ConvergenceError, InvalidInputError
from geochron.ludwig import ludwig
from geochron.schema import Scheme

T_TRUE = 1000.0
A0_TRUE = 0.85
FRACTIONS = np.array([0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.85, 0.95])


def _tw_dataset(constants, noise=None):
    """Aliquots on the line from the common Pb ratio to the concordia point."""
    l5 = constants.decay("U235")[0]
    l8 = constants.decay("U238")[0]
    U = constants.iratio("U238U235")[0]
    b = math.expm1(l5 * T_TRUE) / U - A0_TRUE * math.expm1(l8 * T_TRUE)
    X = FRACTIONS / math.expm1(l8 * T_TRUE)
    Y = A0_TRUE + b * X
    sX = 0.002 * X
    sY = 0.01 * Y
    if noise is not None:
        Y = Y + noise * sY
    return Dataset(
        Scheme.UPB,
        2,
        pd.DataFrame(
            {
                "U238Pb206": X,
                "errU238Pb206": sX,
                "Pb207Pb206": Y,
                "errPb207Pb206": sY,
                "rXY": np.zeros(X.size),
            }
        ),
    )


def _alternating(scale):
    return scale * np.array([1.0, -1.0] * (FRACTIONS.size // 2))


def test_exact_data_recovers_age_and_common_lead(constants):
    fit = ludwig(_tw_dataset(constants), constants=constants)
    assert fit.names == ("t", "76i")
    assert fit.df == FRACTIONS.size - 2
    assert math.isclose(fit.value("t"), T_TRUE, rel_tol=1e-3)
    assert math.isclose(fit.value("76i"), A0_TRUE, rel_tol=1e-3)
    assert np.all(np.isfinite(fit.cov))
    assert np.allclose(fit.cov, fit.cov.T)
    assert fit.stderr("t") > 0
    assert fit.disp == 0.0


def test_decay_constant_errors_widen_the_age(constants):
    ds = _tw_dataset(constants)
    fit = ludwig(ds, constants=constants)
    ext = ludwig(ds, exterr=True, constants=constants)
    assert ext.stderr("t") >= fit.stderr("t")
    assert ext.extras["exterr"] is True


class TestScatteredData:
    """Overdispersed data under the three variance models."""

    def test_model_1_stays_close(self, constants):
        fit = ludwig(_tw_dataset(constants, _alternating(5.0)), model=1, constants=constants)
        assert abs(fit.value("t") - T_TRUE) < 100.0
        assert fit.mswd > 1.0
        assert 0.0 <= fit.p_value < 0.05

    def test_model_2_scales_unit_weights(self, constants):
        fit = ludwig(_tw_dataset(constants, _alternating(5.0)), model=2, constants=constants)
        assert fit.model == 2
        assert fit.disp > 0
        assert math.isfinite(fit.value("t"))

    def test_model_3_absorbs_the_scatter(self, constants):
        fit = ludwig(_tw_dataset(constants, _alternating(5.0)), model=3, constants=constants)
        assert fit.disp > 0
        assert fit.disp_ci > fit.disp
        assert fit.mswd <= 1.0 + 1e-3


def test_rejects_other_schemes_and_models(constants):
    ds = Dataset(
        Scheme.RBSR,
        1,
        pd.DataFrame(
            {
                "Rb87Sr86": [1.0, 2.0],
                "errRb87Sr86": [0.01, 0.02],
                "Sr87Sr86": [0.71, 0.72],
                "errSr87Sr86": [1e-4, 1e-4],
                "rXY": [0.0, 0.0],
            }
        ),
    )
    with pytest.raises(InvalidInputError):
        ludwig(ds, constants=constants)
    with pytest.raises(InvalidInputError) as exc_info:
        ludwig(_tw_dataset(constants), model=4, constants=constants)
    assert "model" in str(exc_info.value).lower()


def test_pinned_age_and_mswd(constants):
    """Scatter orthogonal to the line leaves the age exact and fixes S.

    With negligible X errors and a common Y error the fit reduces to a
    weighted linear regression, so residuals orthogonal to ``1`` and ``X``
    do not move it and the sum of squares is ``sum((dY/sY)^2) = 24``. The
    MSWD is reported as ``S / 2 / df``.
    """
    l5 = constants.decay("U235")[0]
    l8 = constants.decay("U238")[0]
    U = constants.iratio("U238U235")[0]
    b = math.expm1(l5 * T_TRUE) / U - A0_TRUE * math.expm1(l8 * T_TRUE)
    X = FRACTIONS / math.expm1(l8 * T_TRUE)
    design = np.column_stack([np.ones(X.size), X])
    curved = X**2
    v = curved - design @ np.linalg.lstsq(design, curved, rcond=None)[0]
    sY = 0.005
    dY = sY * v * math.sqrt(24.0 / np.sum(v**2))
    ds = Dataset(
        Scheme.UPB,
        2,
        pd.DataFrame(
            {
                "U238Pb206": X,
                "errU238Pb206": 1e-5 * X,
                "Pb207Pb206": A0_TRUE + b * X + dY,
                "errPb207Pb206": np.full(X.size, sY),
                "rXY": np.zeros(X.size),
            }
        ),
    )
    fit = ludwig(ds, constants=constants)
    assert math.isclose(fit.value("t"), T_TRUE, abs_tol=0.05)
    assert math.isclose(fit.value("76i"), A0_TRUE, rel_tol=1e-5)
    assert fit.df == 6
    assert math.isclose(fit.mswd, 2.0, rel_tol=1e-3)
    assert math.isclose(fit.loglik, -12.0, rel_tol=1e-3)
    # chi-square survival function with 6 degrees of freedom at 12
    assert math.isclose(fit.p_value, 25.0 * math.exp(-6.0), rel_tol=1e-3)


def test_wetherill_204_fit(constants):
    l5 = constants.decay("U235")[0]
    l8 = constants.decay("U238")[0]
    U = constants.iratio("U238U235")[0]
    a0, b0 = 18.0, 15.5
    z = np.array([0.0002, 0.0005, 0.001, 0.002, 0.003, 0.005])
    X = math.expm1(l5 * T_TRUE) + U * b0 * z
    Y = math.expm1(l8 * T_TRUE) + a0 * z
    n = z.size
    ds = Dataset(
        Scheme.UPB,
        4,
        pd.DataFrame(
            {
                "Pb207U235": X,
                "errPb207U235": 0.005 * X,
                "Pb206U238": Y,
                "errPb206U238": 0.005 * Y,
                "Pb204U238": z,
                "errPb204U238": 0.005 * z,
                "rXY": np.zeros(n),
                "rXZ": np.zeros(n),
                "rYZ": np.zeros(n),
            }
        ),
    )
    fit = ludwig(ds, constants=constants)
    assert fit.names == ("t", "64i", "74i")
    assert fit.df == 2 * n - 2
    assert np.allclose(fit.par, [T_TRUE, a0, b0], rtol=1e-4)
    assert fit.cov.shape == (3, 3)
    assert np.all(np.diag(fit.cov) > 0)


class TestCovarianceFallback:
    """Covariance when the Fisher information cannot be inverted."""

    @staticmethod
    def _singular(*args, **kwargs):
        raise np.linalg.LinAlgError("singular matrix")

    def test_numerical_hessian_is_used(self, constants, monkeypatch, caplog):
        ds = _tw_dataset(constants)
        fisher = ludwig(ds, constants=constants)
        monkeypatch.setattr(sys.modules["geochron.ludwig"], "schur_covariance", self._singular)
        caplog.set_level("WARNING")
        fit = ludwig(ds, constants=constants)
        assert fit.extras["covariance"] == "hessian"
        assert fisher.extras["covariance"] == "fisher"
        assert math.isclose(fit.stderr("t"), fisher.stderr("t"), rel_tol=0.02)
        assert any("numerical Hessian" in rec.getMessage() for rec in caplog.records)

    def test_both_methods_failing_raises(self, constants, monkeypatch):
        monkeypatch.setattr(sys.modules["geochron.ludwig"], "schur_covariance", self._singular)
        monkeypatch.setattr(sys.modules["geochron.ludwig"], "inverse_hessian", self._singular)
        with pytest.raises(ConvergenceError) as exc_info:
            ludwig(_tw_dataset(constants), constants=constants)
        assert "covariance" in str(exc_info.value)
