"""Per-aliquot age converters and isochrons."""

import math

import numpy as np
import pandas as pd
import pytest

from geochron.chronometers import get_chronometer
from geochron.chronometers.arar import ArAr_age, age_to_Ar40Ar39_ratio
from geochron.chronometers.fissiontracks import FT_age, age_to_FT_ratio, count_ratios
from geochron.chronometers.isochron import isochron
from geochron.chronometers.pd import pd_age
from geochron.chronometers.thu import ThU_age
from geochron.chronometers.upb import (
    Pb206U238_age,
    Pb207Pb206_age,
    age_to_Pb206U238_ratio,
    age_to_Pb207Pb206_ratio,
    filter_upb_ages,
)
from geochron.chronometers.uthhe import uthhe_age
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme


def _rbsr_dataset(constants, t=500.0, initial=0.7045):
    lam = constants.decay("Rb87")[0]
    parent = np.array([0.5, 1.0, 2.0, 4.0, 6.0, 8.0])
    daughter = initial + parent * math.expm1(lam * t)
    return Dataset(
        Scheme.RBSR,
        1,
        pd.DataFrame(
            {
                "Rb87Sr86": parent,
                "errRb87Sr86": 0.005 * parent,
                "Sr87Sr86": daughter,
                "errSr87Sr86": np.full(parent.size, 5e-5),
                "rXY": np.zeros(parent.size),
            }
        ),
    )


class TestRoundTrips:
    """Ages converted to ratios and back recover the original age."""

    def test_pb206u238(self, constants):
        R, sR = age_to_Pb206U238_ratio(1000.0, 5.0, constants)
        t, st = Pb206U238_age(R, sR, constants=constants)
        assert math.isclose(t, 1000.0, rel_tol=1e-12)
        assert math.isclose(st, 5.0, rel_tol=1e-9)

    def test_pb207pb206(self, constants):
        R, sR = age_to_Pb207Pb206_ratio(2000.0, 10.0, constants)
        t, st = Pb207Pb206_age(R, sR, constants=constants)
        assert math.isclose(t, 2000.0, rel_tol=1e-8)
        assert math.isclose(st, 10.0, rel_tol=1e-6)

    def test_exterr_increases_error(self, constants):
        R, sR = age_to_Pb206U238_ratio(1000.0, 5.0, constants)
        _, st_ext = Pb206U238_age(R, sR, exterr=True, constants=constants)
        assert st_ext > 5.0

    def test_arar(self, constants):
        J = (0.01, 1e-5)
        R, sR = age_to_Ar40Ar39_ratio(100.0, 0.5, J, constants)
        t, st = ArAr_age(R, sR, J, constants=constants)
        assert math.isclose(t, 100.0, rel_tol=1e-12)
        assert math.isclose(st, 0.5, rel_tol=1e-9)

    def test_fission_tracks(self, constants):
        zeta, rhoD = (350.0, 10.0), (1.5e5, 2e3)
        R, sR = age_to_FT_ratio(50.0, 2.0, zeta, rhoD, constants)
        t, st = FT_age(R, sR, zeta, rhoD, constants=constants)
        assert math.isclose(t, 50.0, rel_tol=1e-12)
        assert math.isclose(st, 2.0, rel_tol=1e-9)

    def test_parent_daughter(self, constants):
        lam = constants.decay("Rb87")[0]
        daughter = 0.7045 + 2.0 * math.expm1(lam * 500.0)
        t, _ = pd_age(2.0, 0.0, daughter, 0.0, nuclide="Rb87", initial=(0.7045, 0.0), constants=constants)
        assert math.isclose(t, 500.0, rel_tol=1e-10)

    def test_thu(self, constants):
        l0 = constants.decay("Th230")[0]
        l4 = constants.decay("U234")[0]
        t, A48_0 = 100.0, 1.15
        A48 = 1.0 + (A48_0 - 1.0) * math.exp(-l4 * t)
        A08 = (
            1.0
            - math.exp(-l0 * t)
            + (A48 - 1.0) * l0 / (l0 - l4) * (1.0 - math.exp((l4 - l0) * t))
        )
        par, cov = ThU_age(A08, A48, np.diag([1e-6, 1e-6]), constants=constants)
        assert math.isclose(par[0], t, rel_tol=1e-8)
        assert math.isclose(par[1], A48_0, rel_tol=1e-8)
        assert np.allclose(cov, cov.T)

    def test_uthhe(self, constants):
        l8, l5 = constants.decay("U238")[0], constants.decay("U235")[0]
        R = constants.iratio("U238U235")[0]
        U, t = 50.0, 30.0
        He = 8 * R / (R + 1) * U * math.expm1(l8 * t) + 7 / (R + 1) * U * math.expm1(l5 * t)
        age, sage = uthhe_age(U, 0.5, 0.0, 0.0, He, 0.0, constants=constants)
        assert math.isclose(age, t, rel_tol=1e-9)
        assert sage > 0


def test_pb207pb206_outside_concordia_warns(constants):
    with pytest.warns(UserWarning):
        t, st = Pb207Pb206_age(np.array([0.01, 0.1]), np.array([0.001, 0.001]), constants=constants)
    assert math.isnan(t[0])
    assert math.isfinite(t[1])


def test_thu_without_age_warns(constants):
    with pytest.warns(UserWarning):
        par, _ = ThU_age(1.5, 1.0, constants=constants)
    assert np.all(np.isnan(par))


def test_count_ratios_zero_spontaneous_tracks():
    ds = Dataset(
        Scheme.FISSIONTRACKS,
        1,
        pd.DataFrame({"Ns": [0.0, 10.0], "Ni": [20.0, 40.0]}),
        zeta=(350.0, 10.0),
        rhoD=(1.5e5, 2e3),
    )
    R, sR = count_ratios(ds)
    assert R[0] == 0.0
    assert math.isclose(sR[0], 1.0 / 20.0)
    assert math.isclose(sR[1], 0.25 * math.sqrt(1 / 10 + 1 / 40))


def test_get_chronometer_dispatch():
    assert get_chronometer("UPb").scheme is Scheme.UPB
    assert get_chronometer(Scheme.SMND).nuclide == "Sm147"
    with pytest.raises(InvalidInputError):
        get_chronometer("KCa")


def test_dataset_requires_columns_and_calibration():
    with pytest.raises(InvalidInputError) as exc_info:
        Dataset(Scheme.RBSR, 1, pd.DataFrame({"Rb87Sr86": [1.0]}))
    assert "missing" in str(exc_info.value).lower()
    with pytest.raises(InvalidInputError):
        Dataset(
            Scheme.ARAR,
            3,
            pd.DataFrame(
                {"Ar39Ar40": [0.1], "errAr39Ar40": [0.001], "Ar36Ar40": [1e-4], "errAr36Ar40": [1e-6], "rXY": [0.0]}
            ),
        )


def test_filter_upb_ages_selects_type_and_drops_discordant(constants):
    ages = np.array([500.0, 800.0, 1500.0])
    l5 = constants.decay("U235")[0]
    r75 = np.expm1(l5 * ages)
    r68 = np.expm1(constants.decay("U238")[0] * ages)
    # make the last aliquot strongly discordant
    r68[-1] *= 0.7
    ds = Dataset(
        Scheme.UPB,
        1,
        pd.DataFrame(
            {
                "Pb207U235": r75,
                "errPb207U235": 0.001 * r75,
                "Pb206U238": r68,
                "errPb206U238": 0.001 * r68,
                "rXY": np.full(3, 0.5),
            }
        ),
    )
    tab = filter_upb_ages(ds, type=4, constants=constants)
    assert list(tab.index) == [0, 1]
    assert np.allclose(tab["t"], [500.0, 800.0], rtol=1e-9)
    all_ages = filter_upb_ages(ds, type=2, cutoff_disc=None, constants=constants)
    assert len(all_ages) == 3


def test_rbsr_isochron_recovers_age_and_initial_ratio(constants):
    fit = isochron(_rbsr_dataset(constants), constants=constants)
    assert fit.names == ("t", "Sr87Sr86i")
    assert math.isclose(fit.value("t"), 500.0, rel_tol=1e-8)
    assert math.isclose(fit.value("Sr87Sr86i"), 0.7045, rel_tol=1e-8)
    assert fit.df == 4
    ext = isochron(_rbsr_dataset(constants), exterr=True, constants=constants)
    assert ext.stderr("t") > fit.stderr("t")
    assert "york" in fit.extras


def test_isochron_undefined_for_upb(constants):
    ds = Dataset(
        Scheme.UPB,
        2,
        pd.DataFrame(
            {"U238Pb206": [5.0], "errU238Pb206": [0.05], "Pb207Pb206": [0.1], "errPb207Pb206": [0.001], "rXY": [0.0]}
        ),
    )
    with pytest.raises(InvalidInputError):
        isochron(ds, constants=constants)


def test_dataset_subset_keeps_calibration():
    ds = Dataset(
        Scheme.FISSIONTRACKS,
        1,
        pd.DataFrame({"Ns": [5.0, 10.0, 15.0], "Ni": [20.0, 40.0, 60.0]}),
        zeta=(350.0, 10.0),
        rhoD=(1.5e5, 2e3),
    )
    sub = ds.subset([True, False, True])
    assert len(sub) == 2
    assert list(sub.column("Ns")) == [5.0, 15.0]
    assert sub.zeta == ds.zeta
    with pytest.raises(InvalidInputError):
        ds.subset([True, False])
