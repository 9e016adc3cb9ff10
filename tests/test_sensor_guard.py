import pytest

from fcl_emulator.core.sensor_guard import detect_sensor_issue
from fcl_emulator.fcl_structs import SensorIssue


@pytest.mark.parametrize(
    "values, issue",
    [
        ([6.0, 6.1, 9.5], SensorIssue.JUMP_TOO_LARGE),
        ([9.0, 5.5, 5.6], SensorIssue.JUMP_TOO_LARGE),
        ([6.0, 7.0, 6.2], SensorIssue.OSCILLATION),
        ([7.0, 6.0, 6.8], SensorIssue.OSCILLATION),
        ([7.0, 5.5, 3.8, 4.6, 5.5], SensorIssue.COMPRESSION_LOW),
    ],
)
def test_detects_sensor_artefacts(series, values, issue):
    assert detect_sensor_issue(series(values)) == issue


@pytest.mark.parametrize(
    "values",
    [
        [6.0, 6.1, 6.2, 6.3, 6.4],
        [6.0, 6.4, 6.2],  # small wiggle
        [9.0, 8.0, 7.0, 6.0, 5.0],  # fast but monotonic fall
        [6.0, 6.5],
    ],
)
def test_physiological_traces_pass(series, values):
    assert detect_sensor_issue(series(values)) is None


def test_slow_low_is_not_compression(series):
    # same drop spread over 40 minutes
    history = series([7.0, 5.5, 3.8, 4.6, 5.5], step=10)
    assert detect_sensor_issue(history) is None
