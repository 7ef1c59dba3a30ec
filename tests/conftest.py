"""Pytest configuration for repository-relative imports and shared data."""

import os
import sys

import numpy as np
import pandas as pd
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from geochron.constants import Constants  # noqa: E402


@pytest.fixture
def constants():
    """A private constants table, so tests never touch the process default."""
    return Constants()


@pytest.fixture
def york_data():
    """Twelve-point isochron with 1% and 0.5% errors correlated at 0.8."""
    X = np.array([1.550, 12.395, 20.445, 20.435, 20.610, 24.900,
                  28.530, 50.540, 51.595, 86.51, 106.40, 157.35])
    Y = np.array([.7268, .7849, .8200, .8156, .8160, .8322,
                  .8642, .9584, .9617, 1.135, 1.230, 1.490])
    return pd.DataFrame(
        {"X": X, "sX": 0.01 * X, "Y": Y, "sY": 0.005 * Y, "rXY": np.full(X.size, 0.8)}
    )

