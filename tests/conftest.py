import json
from datetime import datetime, timedelta

import pytest

from fcl_emulator.config import CycleInputs, FclSettings
from fcl_emulator.core.session import FclSession
from fcl_emulator.fcl_structs import GlucoseSample

# midday, outside the night window
BASE = datetime(2024, 3, 5, 12, 0)


def build_series(values, start=BASE, step=5, iob=0.0):
    return [GlucoseSample(start + timedelta(minutes=i * step), float(v), iob) for i, v in enumerate(values)]


@pytest.fixture
def series():
    return build_series


@pytest.fixture
def settings():
    return FclSettings()


@pytest.fixture
def inputs():
    return CycleInputs(target_bg=6.0, isf=2.0, carb_ratio=10.0, max_bolus=2.0, max_iob=3.0)


@pytest.fixture
def session(settings):
    return FclSession.create(settings=settings)


@pytest.fixture
def load_json():
    def _load(path):
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    return _load
