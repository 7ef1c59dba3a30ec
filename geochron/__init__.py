"""
A Python package for radiometric age estimation with rigorous uncertainties.

Converts isotopic measurements of U-Pb, Pb-Pb, Ar-Ar, Th-U, Rb-Sr, Sm-Nd,
Re-Os, Lu-Hf, U-Th-(Sm)-He and fission-track aliquots to ages, and pools
them with regression, discordia, central age, mixture and weighted mean
estimators that report covariance matrices and goodness-of-fit statistics.

Modules:
    - dataset, schema: Immutable aliquot collections and their column layouts.
    - constants, config: Decay constants, isotopic ratios and iteration knobs.
    - chronometers: Per-aliquot ages and isochrons for every decay scheme.
    - ludwig: Maximum likelihood discordia ages for U-Pb data.
    - central, peakfit, weightedmean: Pooled ages of age distributions.
    - stats: Error propagation, York/Titterington regression and numerics.
"""

__version__ = "1.0.0"

from .central import central, central_age, central_dataset, central_fissiontracks, central_uthhe
from .chronometers import get_chronometer
from .chronometers.isochron import isochron
from .config import DEFAULT_SETTINGS, EstimationSettings
from .constants import Constants, get_constant, get_default_constants, set_constant
from .dataset import Dataset
from .exceptions import ConstantNotFoundError, ConvergenceError, GeochronError, InvalidInputError
from .ludwig import ludwig
from .peakfit import peakfit, peakfit_dataset, peakfit_fissiontracks
from .results import FitResult
from .schema import Scheme
from .stats.regression import ordinary_least_squares, titterington, york
from .weightedmean import plateau, weighted_mean, weighted_mean_dataset

__all__ = [
    # Data
    "Dataset",
    "Scheme",
    "FitResult",
    # Configuration
    "Constants",
    "get_constant",
    "set_constant",
    "get_default_constants",
    "EstimationSettings",
    "DEFAULT_SETTINGS",
    # Errors
    "GeochronError",
    "InvalidInputError",
    "ConstantNotFoundError",
    "ConvergenceError",
    # Ages
    "get_chronometer",
    "isochron",
    # Regression
    "ordinary_least_squares",
    "york",
    "titterington",
    "ludwig",
    # Pooled ages
    "central",
    "central_age",
    "central_dataset",
    "central_fissiontracks",
    "central_uthhe",
    "peakfit",
    "peakfit_dataset",
    "peakfit_fissiontracks",
    "weighted_mean",
    "weighted_mean_dataset",
    "plateau",
]
