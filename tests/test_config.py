import pytest

from benford_watch.config import Settings, load_settings
from benford_watch.exceptions import ConfigError


def test_defaults():
    s = load_settings({})
    assert s == Settings()
    assert s.significance_level == 0.05
    assert s.min_sample == 100
    assert s.min_spread == 100.0
    assert s.max_deviation == 5.0
    assert s.producer_share == 50.0


def test_environment_overrides():
    s = load_settings({
        "BENFORD_SIGNIFICANCE": "0.01",
        "BENFORD_MIN_SAMPLE": "250",
        "BENFORD_STEP_DELAY": "0.01",
        "LOG_LEVEL": "debug",
        "BENFORD_MAX_DEVIATION": "",
    })
    assert s.significance_level == 0.01
    assert s.min_sample == 250
    assert s.step_delay == 0.01
    assert s.log_level == "debug"
    assert s.max_deviation == 5.0


@pytest.mark.parametrize("name, value", [
    ("BENFORD_SIGNIFICANCE", "1.5"),
    ("BENFORD_MIN_SAMPLE", "many"),
    ("BENFORD_PRODUCER_SHARE", "100"),
])
def test_invalid_values_raise(name, value):
    with pytest.raises(ConfigError):
        load_settings({name: value})
