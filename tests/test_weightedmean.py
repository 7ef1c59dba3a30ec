"""Weighted means, Chauvenet rejection and Ar-Ar plateau ages."""

import math
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from geochron.chronometers.arar import ArAr_age
from geochron.dataset import Dataset
from geochron.exceptions import InvalidInputError
from geochron.schema import Scheme
from geochron.weightedmean import (
    chauvenet,
    plateau,
    plateau_steps,
    weighted_mean,
    weighted_mean_dataset,
)

AGES = [251.9, 251.59, 251.47, 251.35, 251.1, 251.04, 250.79, 250.73, 251.22, 228.43]
ERRORS = [0.28, 0.28, 0.63, 0.34, 0.28, 0.63, 0.28, 0.4, 0.28, 0.33]
J = (0.01, 1e-5)


def _steps(R, Ar39=None):
    """Format 3 step-heating data with a fixed atmospheric component."""
    R = np.asarray(R, dtype=float)
    b = np.full(R.size, 1e-4)
    a = (1.0 - 298.56 * b) / R
    table = {
        "Ar39Ar40": a,
        "errAr39Ar40": 1e-3 * a,
        "Ar36Ar40": b,
        "errAr36Ar40": np.full(R.size, 1e-6),
        "rXY": np.zeros(R.size),
    }
    if Ar39 is not None:
        table["Ar39"] = Ar39
    return Dataset(Scheme.ARAR, 3, pd.DataFrame(table), J=J)


def test_outlier_is_rejected(caplog):
    caplog.set_level("INFO")
    fit = weighted_mean(AGES, ERRORS)
    assert list(fit.valid) == [True] * 9 + [False]
    assert fit.df == 8
    assert math.isclose(fit.value("t"), 251.2751, abs_tol=1e-3)
    assert math.isclose(fit.mswd, 1.477, abs_tol=1e-2)
    assert "disp[t]" in fit.extras
    assert fit.extras["disp[t]"] > fit.ci("t")
    assert any("Rejected outlier 9" in rec.getMessage() for rec in caplog.records)


def test_chauvenet_mask_matches_the_fit():
    mask = chauvenet(AGES, ERRORS)
    assert mask.sum() == 9
    assert not mask[9]


def test_chauvenet_keeps_at_least_three_values(monkeypatch):
    # every value looks like an outlier, so rejection runs to its floor
    monkeypatch.setattr("geochron.weightedmean.norm", SimpleNamespace(sf=np.zeros_like))
    mask = chauvenet(AGES, ERRORS)
    assert mask.sum() == 3
    assert chauvenet([10.0, 10.1, 30.0], [0.1] * 3).all()


def test_outliers_kept_on_request():
    fit = weighted_mean(AGES, ERRORS, detect_outliers=False)
    assert fit.valid.all()
    assert fit.df == 9
    assert fit.value("t") < 251.0


def test_unweighted_mean():
    values = np.array([10.0, 11.0, 12.5, 9.5])
    fit = weighted_mean(values, np.full(4, 0.1), model=2, detect_outliers=False)
    assert math.isclose(fit.value("t"), values.mean())
    assert math.isclose(fit.stderr("t"), values.std(ddof=1) / 2.0)
    assert fit.model == 2


def test_overdispersion_brings_mswd_to_one():
    values = [10.0, 12.0, 9.0, 11.5, 8.5]
    fit = weighted_mean(values, [0.1] * 5, model=3, detect_outliers=False)
    assert fit.disp > 0
    assert math.isclose(fit.mswd, 1.0, rel_tol=1e-6)
    # the overdispersion dominates the analytical errors
    assert math.isclose(fit.value("t"), np.mean(values), rel_tol=1e-3)


def test_invalid_inputs():
    with pytest.raises(InvalidInputError):
        weighted_mean([1.0, 2.0], [0.1, 0.0])
    with pytest.raises(InvalidInputError) as exc_info:
        weighted_mean([1.0, 2.0], [0.1, 0.1], model=4)
    assert "model" in str(exc_info.value).lower()
    with pytest.raises(InvalidInputError):
        weighted_mean([1.0], [0.1], model=2)
    with pytest.raises(InvalidInputError):
        weighted_mean([1.0, 2.0], [0.1])


class TestPlateau:
    """Selection of contiguous homogeneous heating steps."""

    def test_longest_run_wins(self):
        assert plateau_steps([1.0, 1.0, 1.0, 5.0, 5.0, 5.0, 5.0], [0.1] * 7) == (3, 6)

    def test_gas_fraction_wins(self):
        fractions = [10.0, 10.0, 10.0, 1.0, 1.0, 1.0, 1.0]
        assert plateau_steps([1.0, 1.0, 1.0, 5.0, 5.0, 5.0, 5.0], [0.1] * 7, fractions) == (0, 2)

    def test_no_plateau(self):
        assert plateau_steps([1.0, 2.0, 3.0, 4.0], [0.01] * 4) == (-1, -1)

    def test_two_steps_are_not_a_plateau(self):
        assert plateau_steps([1.0, 1.0], [0.1, 0.1]) == (-1, -1)

    def test_step_heating_plateau(self, constants):
        fit = plateau(_steps([5.0, 10.0, 10.0, 10.0, 10.0, 15.0]), constants=constants)
        assert fit.extras["steps"] == (1, 4)
        assert math.isclose(fit.extras["fraction"], 4.0 / 6.0)
        assert list(fit.valid) == [False, True, True, True, True, False]
        t_expected, _ = ArAr_age(10.0, 0.0, J, constants=constants)
        assert math.isclose(fit.value("t"), float(t_expected), rel_tol=1e-9)
        assert fit.df == 3

    def test_steps_weighted_by_argon_39(self, constants):
        ds = _steps([10.0, 10.0, 10.0, 20.0, 20.0, 20.0, 20.0], Ar39=[5.0, 5.0, 5.0, 1.0, 1.0, 1.0, 1.0])
        fit = plateau(ds, constants=constants)
        assert fit.extras["steps"] == (0, 2)
        assert math.isclose(fit.extras["fraction"], 15.0 / 19.0)

    def test_plateau_exterr(self, constants):
        ds = _steps([5.0, 10.0, 10.0, 10.0, 10.0, 15.0])
        fit = plateau(ds, constants=constants)
        ext = plateau(ds, exterr=True, constants=constants)
        assert ext.stderr("t") > fit.stderr("t")
        assert math.isclose(ext.value("t"), fit.value("t"))

    def test_missing_plateau_warns_and_averages_all_steps(self, constants):
        with pytest.warns(UserWarning, match="No plateau"):
            fit = plateau(_steps([5.0, 10.0, 20.0, 40.0]), constants=constants)
        assert fit.valid.all()
        assert fit.extras["steps"] == (0, 3)

    def test_requires_argon_data(self, constants):
        ds = Dataset(
            Scheme.FISSIONTRACKS,
            1,
            pd.DataFrame({"Ns": [10.0], "Ni": [20.0]}),
            zeta=(350.0, 10.0),
            rhoD=(1.5e5, 2e3),
        )
        with pytest.raises(InvalidInputError):
            plateau(ds, constants=constants)


def test_weighted_mean_dataset_adds_external_errors(constants):
    ds = _steps([10.0, 10.0, 10.0])
    fit = weighted_mean_dataset(ds, constants=constants)
    ext = weighted_mean_dataset(ds, exterr=True, constants=constants)
    assert fit.valid.all()
    assert ext.stderr("t") > fit.stderr("t")


def test_summary_and_formatting():
    fit = weighted_mean(AGES, ERRORS)
    table = fit.summary()
    assert list(table.columns) == ["value", "s", "ci"]
    assert list(table.index) == ["t"]
    assert math.isclose(table.loc["t", "ci"], fit.ci("t"))
    assert fit.format("t") == "251.28 ± 0.11"
    with pytest.raises(KeyError):
        fit.value("x")
