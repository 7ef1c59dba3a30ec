import math

import pytest

from geochron.constants import Constants, get_constant, get_default_constants
from geochron.exceptions import ConstantNotFoundError, InvalidInputError


def test_default_decay_constants():
    lam, slam = get_constant("lambda", "U238")
    assert math.isclose(lam, 0.000155125)
    assert slam > 0


def test_private_table_does_not_leak(constants):
    constants.set("lambda", "U238", 0.0002, 0.0)
    assert constants.decay("U238") == (0.0002, 0.0)
    assert math.isclose(get_default_constants().decay("U238")[0], 0.000155125)


def test_unknown_constant_is_a_key_error(constants):
    with pytest.raises(ConstantNotFoundError) as exc_info:
        constants.get("iratio", "Xe129Xe130")
    assert isinstance(exc_info.value, KeyError)
    assert "Xe129Xe130" in str(exc_info.value)


def test_negative_stderr_rejected(constants):
    with pytest.raises(InvalidInputError):
        constants.set("iratio", "Ar40Ar36", 295.5, -1.0)


def test_mapping_round_trip(constants):
    mapping = constants.to_mapping()
    mapping["iratio"]["Ar40Ar36"] = [295.5, 0.5]
    copy = Constants.from_mapping(mapping)
    assert copy.iratio("Ar40Ar36") == (295.5, 0.5)
    assert copy.decay("K40") == constants.decay("K40")
    with pytest.raises(InvalidInputError):
        Constants.from_mapping({"iratio": {"Ar40Ar36": [295.5]}})
