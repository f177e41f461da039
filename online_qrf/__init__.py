"""Online quantile regression forests with out-of-bag conformal calibration."""
from __future__ import annotations

from online_qrf.conformal import (
    ApproximateRecalibration,
    CalibrationRecord,
    ExactRecalibration,
    OoBConformalRegressor,
)
from online_qrf.exceptions import ConcurrencyFault, ConfigurationError, InvariantViolation
from online_qrf.forest import OnlineQRF, calculate_subspace_size
from online_qrf.instance import Instance
from online_qrf.sketch import RankSketch
from online_qrf.tree import QuantileTree

__all__ = [
    "ApproximateRecalibration",
    "CalibrationRecord",
    "ConcurrencyFault",
    "ConfigurationError",
    "ExactRecalibration",
    "Instance",
    "InvariantViolation",
    "OnlineQRF",
    "OoBConformalRegressor",
    "QuantileTree",
    "RankSketch",
    "calculate_subspace_size",
]
