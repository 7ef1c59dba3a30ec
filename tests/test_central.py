"""Central ages: log-normal pooling, fission-track counts and U-Th-He log-ratios."""

import math

import numpy as np
import pandas as pd
import pytest

from geochron.central import central, central_age, central_fissiontracks, central_uthhe
from geochron.chronometers.fissiontracks import FT_age
from geochron.chronometers.uthhe import uthhe_age
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme

ZETA = (350.0, 10.0)
RHOD = (1.5e5, 2e3)


def _tracks(Ns, Ni):
    return Dataset(
        Scheme.FISSIONTRACKS,
        1,
        pd.DataFrame({"Ns": Ns, "Ni": Ni}),
        zeta=ZETA,
        rhoD=RHOD,
    )


def _uthhe(n=5, He=None):
    U = np.full(n, 50.0)
    Th = np.full(n, 20.0)
    return Dataset(
        Scheme.UTHHE,
        1,
        pd.DataFrame(
            {
                "U": U,
                "errU": 0.02 * U,
                "Th": Th,
                "errTh": 0.02 * Th,
                "He": np.full(n, 1.5) if He is None else He,
                "errHe": np.full(n, 0.015),
            }
        ),
    )


def test_identical_values_have_no_dispersion():
    fit = central_age([100.0] * 4, [2.0] * 4)
    assert math.isclose(fit.value("t"), 100.0)
    assert fit.disp == 0.0
    assert fit.mswd == 0.0
    assert fit.df == 2
    # log-scale pooling of four equal relative errors
    assert math.isclose(fit.stderr("t"), 1.0, rel_tol=1e-12)


def test_overdispersed_values():
    values = [80.0, 95.0, 100.0, 110.0, 130.0, 150.0]
    fit = central_age(values, [1.0] * len(values))
    assert fit.disp > 0.1
    assert min(values) < fit.value("t") < max(values)
    assert fit.mswd > 1.0
    assert fit.p_value < 0.01
    assert "mu" in fit.extras


def test_central_age_logs_iteration_cap(caplog):
    from geochron.config import EstimationSettings

    caplog.set_level("WARNING")
    central_age([80.0, 120.0, 100.0], [1.0, 1.0, 1.0], settings=EstimationSettings(central_max_iter=1))
    assert any("iteration cap" in rec.getMessage() for rec in caplog.records)


def test_central_age_requires_positive_values():
    with pytest.raises(InvalidInputError) as exc_info:
        central_age([10.0, 0.0, 12.0], [1.0, 1.0, 1.0])
    assert "positive" in str(exc_info.value)
    with pytest.raises(InvalidInputError):
        central_age([10.0, 11.0], [1.0, -1.0])


class TestFissionTracks:
    """Count-based central ages."""

    def test_homogeneous_counts(self, constants):
        fit = central_fissiontracks(_tracks([50.0] * 5, [50.0] * 5), constants=constants)
        t_expected, _ = FT_age(1.0, 0.0, ZETA, RHOD, constants=constants)
        assert math.isclose(fit.value("t"), float(t_expected), rel_tol=1e-9)
        assert fit.disp == 0.0
        assert math.isclose(fit.extras["theta"], 0.5)
        assert fit.df == 3

    def test_exterr_widens_the_age(self, constants):
        ds = _tracks([40.0, 55.0, 50.0, 61.0], [50.0, 48.0, 52.0, 50.0])
        fit = central_fissiontracks(ds, constants=constants)
        ext = central_fissiontracks(ds, exterr=True, constants=constants)
        assert ext.stderr("t") > fit.stderr("t")
        assert math.isclose(ext.value("t"), fit.value("t"))

    def test_dispatch(self, constants):
        ds = _tracks([50.0] * 3, [50.0] * 3)
        assert math.isclose(central(ds, constants=constants).extras["theta"], 0.5)

    def test_grain_without_tracks_is_rejected(self, constants):
        with pytest.raises(InvalidInputError):
            central_fissiontracks(_tracks([0.0, 10.0], [0.0, 12.0]), constants=constants)


class TestUThHe:
    """Log-ratio central ages."""

    def test_identical_aliquots(self, constants):
        fit = central_uthhe(_uthhe(), constants=constants)
        t_single, _ = uthhe_age(50.0, 1.0, 20.0, 0.4, 1.5, 0.015, constants=constants)
        assert fit.names == ("t", "u", "v")
        assert fit.df == 2 * (5 - 1)
        assert math.isclose(fit.value("t"), t_single, rel_tol=1e-6)
        assert math.isclose(fit.value("u"), math.log(50.0 / 1.5), rel_tol=1e-6)

    def test_unweighted_mean(self, constants):
        He = np.array([1.4, 1.5, 1.6, 1.45, 1.55])
        fit = central_uthhe(_uthhe(He=He), model=2, constants=constants)
        assert math.isclose(fit.value("u"), float(np.mean(np.log(50.0 / He))), rel_tol=1e-12)
        assert math.isnan(fit.mswd)

    def test_overdispersion_model(self, constants):
        He = np.array([1.2, 1.5, 1.9, 1.3, 1.7])
        fit = central_uthhe(_uthhe(He=He), model=3, constants=constants)
        assert fit.disp > 0
        assert math.isclose(fit.mswd, 1.0, rel_tol=1e-3)

    def test_wrong_scheme(self, constants):
        with pytest.raises(InvalidInputError):
            central_uthhe(_tracks([1.0], [1.0]), constants=constants)


def test_central_dataset_from_ages(constants):
    ds = Dataset(
        Scheme.ARAR,
        3,
        pd.DataFrame(
            {
                "Ar39Ar40": [0.05, 0.05, 0.05],
                "errAr39Ar40": [5e-5, 5e-5, 5e-5],
                "Ar36Ar40": [1e-4, 1e-4, 1e-4],
                "errAr36Ar40": [1e-6, 1e-6, 1e-6],
                "rXY": [0.0, 0.0, 0.0],
            }
        ),
        J=(0.01, 1e-5),
    )
    fit = central(ds, constants=constants)
    ext = central(ds, exterr=True, constants=constants)
    assert fit.disp == 0.0
    assert ext.stderr("t") > fit.stderr("t")
    assert ext.extras["exterr"] is True
