from __future__ import annotations

import abc
import dataclasses
import logging
import math
import time
import typing

import numpy as np
from river import base

from online_qrf.exceptions import ConfigurationError, InvariantViolation
from online_qrf.forest import OnlineQRF
from online_qrf.instance import Instance

__all__ = [
    "ApproximateRecalibration",
    "CalibrationRecord",
    "ExactRecalibration",
    "OoBConformalRegressor",
]

logger = logging.getLogger(__name__)

# name -> (score function, inverse mapping a score back to an interval radius)
ERROR_FUNCTIONS: dict[str, tuple[typing.Callable[[float, float], float], typing.Callable[[float], float]]] = {
    "absolute": (lambda y_pred, y_true: abs(y_pred - y_true), lambda score: score),
    "squared": (lambda y_pred, y_true: (y_pred - y_true) ** 2, math.sqrt),
}


@dataclasses.dataclass
class CalibrationRecord:
    """Out-of-bag bookkeeping for every retained calibration instance.

    `predictions` maps an instance to the cached prediction of each member that
    did not train on it, `last_recalibrated` to the logical time its cache was last
    refreshed and `scores` to its current calibration score. The three maps always
    share the same keys.

    """

    predictions: dict[Instance, dict[int, float]] = dataclasses.field(default_factory=dict)
    last_recalibrated: dict[Instance, int] = dataclasses.field(default_factory=dict)
    scores: dict[Instance, float] = dataclasses.field(default_factory=dict)

    def __len__(self):
        return len(self.predictions)

    def add(self, instance: Instance, predictions: dict[int, float], now: int, score: float):
        self.predictions[instance] = predictions
        self.last_recalibrated[instance] = now
        self.scores[instance] = score

    def pop_oldest(self) -> Instance:
        instance = next(iter(self.predictions))
        del self.predictions[instance]
        del self.last_recalibrated[instance]
        del self.scores[instance]
        return instance

    def check_consistency(self):
        keys = self.predictions.keys()
        if keys != self.last_recalibrated.keys() or keys != self.scores.keys():
            raise InvariantViolation(
                f"Calibration maps out of sync: {len(self.predictions)} cached predictions, "
                f"{len(self.last_recalibrated)} recalibration times, {len(self.scores)} scores"
            )


class RecalibrationStrategy(abc.ABC):
    """Decides which cached out-of-bag predictions to refresh before scoring."""

    @abc.abstractmethod
    def update_scores(
        self,
        record: CalibrationRecord,
        time_of_update: typing.Sequence[int],
        predict: typing.Callable[[int, Instance], float],
        error_function: typing.Callable[[float, float], float],
        now: int,
    ) -> int:
        """Refresh `record` in place and return the number of member predictions made."""


class ExactRecalibration(RecalibrationStrategy):
    """Recompute every out-of-bag prediction of every instance on each pass."""

    def update_scores(self, record, time_of_update, predict, error_function, now):
        calls = 0
        for instance, cached in list(record.predictions.items()):
            fresh = {i: predict(i, instance) for i in cached}
            calls += len(fresh)
            record.predictions[instance] = fresh
            record.last_recalibrated[instance] = now
            record.scores[instance] = error_function(np.mean(list(fresh.values())), instance.y)
        record.check_consistency()
        return calls


class ApproximateRecalibration(RecalibrationStrategy):
    """Refresh only when enough of the calibration set has gone stale.

    A member is stale for an instance if it was updated after the instance's
    predictions were last refreshed. An instance is marked when its fraction of
    stale members reaches `element_ratio`. The marked instances are refreshed, and
    only their stale members re-queried, if they make up at least `set_ratio` of
    the retained instances. Otherwise nothing is recomputed and the previous scores
    stay as they are.

    Parameters
    ----------
    element_ratio
        Stale-member fraction at which an instance is marked.
    set_ratio
        Marked-instance fraction at which a refresh happens.

    """

    def __init__(self, element_ratio: float = 0.5, set_ratio: float = 0.5):
        for name, value in (("element_ratio", element_ratio), ("set_ratio", set_ratio)):
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1], got {value}")
        self.element_ratio = element_ratio
        self.set_ratio = set_ratio

    def stale_ratio(self, cached: dict[int, float], last: int, time_of_update) -> float:
        if not cached:
            return 0.0
        stale = sum(1 for i in cached if time_of_update[i] > last)
        ratio = stale / len(cached)
        if ratio > 1.0:
            raise InvariantViolation(f"Stale ratio above one: {ratio}")
        return ratio

    def update_scores(self, record, time_of_update, predict, error_function, now):
        marked = {
            instance
            for instance, cached in record.predictions.items()
            if self.stale_ratio(cached, record.last_recalibrated[instance], time_of_update) >= self.element_ratio
        }
        set_ratio = len(marked) / len(record) if len(record) else 0.0
        recalibrate = bool(record) and set_ratio >= self.set_ratio
        logger.debug(
            "%d of %d calibration instances stale (ratio %.3f), recalibrating: %s",
            len(marked),
            len(record),
            set_ratio,
            recalibrate,
        )

        calls = 0
        if recalibrate:
            for instance in marked:
                last = record.last_recalibrated[instance]
                fresh = {}
                for i, y_pred in record.predictions[instance].items():
                    if time_of_update[i] > last:
                        fresh[i] = predict(i, instance)
                        calls += 1
                    else:
                        fresh[i] = y_pred
                record.predictions[instance] = fresh
                record.last_recalibrated[instance] = now
                record.scores[instance] = error_function(np.mean(list(fresh.values())), instance.y)

        record.check_consistency()
        return calls


class OoBConformalRegressor(base.Wrapper, base.Regressor):
    """Prediction intervals calibrated on out-of-bag errors.

    Every training instance that some member skipped because of bagging is kept
    as a calibration instance, together with the predictions of the members that
    skipped it. The calibration score of an instance is the error of the mean of
    those predictions. At prediction time the interval is the mean member
    prediction plus or minus the conformal quantile of the scores.

    Members keep learning, so the cached predictions go stale. `recalibration`
    chooses how they are refreshed: "exact" re-queries every member on every pass,
    "approximate" only refreshes when enough instances have enough stale members.

    Parameters
    ----------
    forest
        The ensemble to calibrate. Defaults to `OnlineQRF()`.
    confidence_level
        Target coverage of the interval.
    error_function
        "absolute" or "squared".
    recalibration
        "exact" or "approximate".
    element_recalibration_ratio
        Stale-member fraction at which an instance needs a refresh.
    set_recalibration_ratio
        Fraction of instances needing a refresh at which a refresh happens.
    max_calibration_instances
        If set, the oldest calibration instances are dropped beyond this count.

    """

    _EXACT = "exact"
    _APPROXIMATE = "approximate"
    _VALID_RECALIBRATION = (_EXACT, _APPROXIMATE)

    def __init__(
        self,
        forest: OnlineQRF | None = None,
        confidence_level: float = 0.9,
        error_function: str = "absolute",
        recalibration: str = "approximate",
        element_recalibration_ratio: float = 0.5,
        set_recalibration_ratio: float = 0.5,
        max_calibration_instances: int | None = None,
    ):
        self.forest = forest if forest is not None else OnlineQRF()
        self.confidence_level = confidence_level
        self.error_function = error_function
        self.recalibration = recalibration
        self.element_recalibration_ratio = element_recalibration_ratio
        self.set_recalibration_ratio = set_recalibration_ratio
        self.max_calibration_instances = max_calibration_instances

        if not 0.0 <= confidence_level <= 1.0:
            raise ConfigurationError(f"confidence_level must be in [0, 1], got {confidence_level}")
        if error_function not in ERROR_FUNCTIONS:
            raise ConfigurationError(
                f"Invalid error_function: {error_function}. Valid options are: {list(ERROR_FUNCTIONS)}"
            )
        if recalibration == self._EXACT:
            self._strategy: RecalibrationStrategy = ExactRecalibration()
        elif recalibration == self._APPROXIMATE:
            self._strategy = ApproximateRecalibration(element_recalibration_ratio, set_recalibration_ratio)
        else:
            raise ConfigurationError(
                f"Invalid recalibration: {recalibration}. Valid options are: {self._VALID_RECALIBRATION}"
            )
        if max_calibration_instances is not None and max_calibration_instances < 1:
            raise ConfigurationError(
                f"max_calibration_instances must be positive, got {max_calibration_instances}"
            )

        self._score, self._radius = ERROR_FUNCTIONS[error_function]
        self.record = CalibrationRecord()
        self._time_of_update = [0] * self.forest.n_models
        self._n_training_instances = 0
        self._n_vote_calls = 0
        self._training_time = 0

    @property
    def _wrapped_model(self):
        return self.forest

    @property
    def time_of_update(self) -> list[int]:
        return self._time_of_update

    @property
    def n_training_instances(self) -> int:
        return self._n_training_instances

    def _member_prediction(self, i: int, instance: Instance) -> float:
        return self.forest[i].predict_one(instance.x)

    def train(self, instance: Instance):
        start = time.perf_counter_ns()
        self._n_training_instances += 1
        now = self._n_training_instances

        n_updates = {i: member.n_updates for i, member in enumerate(self.forest)}
        out_of_bag = self.forest.train(instance)
        # A member reaching a frozen leaf does not change, so its clock stays
        for i, member in enumerate(self.forest):
            if member.n_updates != n_updates.get(i, 0):
                self._time_of_update[i] = now

        if out_of_bag:
            predictions = {i: self._member_prediction(i, instance) for i in out_of_bag}
            self._n_vote_calls += len(predictions)
            score = self._score(np.mean(list(predictions.values())), instance.y)
            self.record.add(instance, predictions, now, score)
            if self.max_calibration_instances is not None and len(self.record) > self.max_calibration_instances:
                self.record.pop_oldest()
                logger.debug("Evicted oldest calibration instance, %d retained", len(self.record))

        self._training_time += time.perf_counter_ns() - start

    def learn_one(self, x: dict, y: base.typing.RegTarget, **kwargs):
        self.train(Instance(x, y))
        return self

    def update_calibration_scores(self):
        self._n_vote_calls += self._strategy.update_scores(
            self.record,
            self._time_of_update,
            self._member_prediction,
            self._score,
            self._n_training_instances,
        )

    def calibration_radius(self) -> float | None:
        """Half-width of the interval, or None before any calibration instance exists."""
        if not self.record.scores:
            return None
        scores = np.fromiter(self.record.scores.values(), dtype=float)
        n = len(scores)
        level = min(1.0, math.ceil((n + 1) * self.confidence_level) / n)
        return self._radius(float(np.quantile(scores, level, method="higher")))

    def predict_one(self, x: dict) -> tuple[float, float]:
        self.update_calibration_scores()
        radius = self.calibration_radius()
        predictions = self.forest.member_predictions(x)
        if radius is None or not predictions:
            return self.forest.predict_one(x, confidence_level=self.confidence_level)
        y_pred = float(np.mean(predictions))
        return y_pred - radius, y_pred + radius

    def predict(self, instance: Instance) -> tuple[float, float]:
        return self.predict_one(instance.x)

    def model_measurements(self) -> dict:
        return {
            "average training time (nanosec)": (
                self._training_time / self._n_training_instances if self._n_training_instances else 0.0
            ),
            "member prediction calls": self._n_vote_calls,
        }

    def shutdown(self):
        self.forest.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
