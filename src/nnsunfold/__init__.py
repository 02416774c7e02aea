# nnsunfold/__init__.py
__all__ = [
    "Detector",
    "DimensionMismatch",
    "energy_correction",
    "normalize_response",
    "run_map",
    "run_mlem",
]

from .detector import Detector
from .unfolding_helpers import (
    DimensionMismatch,
    energy_correction,
    normalize_response,
    run_map,
    run_mlem,
)
