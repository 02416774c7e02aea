import matplotlib

matplotlib.use("Agg")

import pytest

from nnsunfold import Detector

from _synthetic import response_frame, true_readings


@pytest.fixture
def detector():
    return Detector(response_frame())


@pytest.fixture
def readings():
    return true_readings()
