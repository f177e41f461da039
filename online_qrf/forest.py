from __future__ import annotations

import abc
import concurrent.futures
import functools
import logging
import math
import random
import time

from river import base
from river.tree.splitter import Splitter
from river.utils.random import poisson

from online_qrf.exceptions import ConfigurationError
from online_qrf.instance import Instance
from online_qrf.parallel import TaskPool, parallel_reduce
from online_qrf.sketch import RankSketch
from online_qrf.tree import QuantileTree

__all__ = ["OnlineQRF", "calculate_subspace_size"]

logger = logging.getLogger(__name__)

_SUBSPACE_SPECIFIED = "specified"
_SUBSPACE_SQRT = "sqrt"
_SUBSPACE_SQRT_INV = "rmsqrt"
_SUBSPACE_PERCENTAGE = "percentage"
_VALID_SUBSPACE_MODES = (_SUBSPACE_SPECIFIED, _SUBSPACE_SQRT, _SUBSPACE_SQRT_INV, _SUBSPACE_PERCENTAGE)


def calculate_subspace_size(mode: str, m: int, n_features: int) -> int:
    """Number of features each leaf may split on.

    Parameters
    ----------
    mode
        One of "specified" (m itself), "sqrt" (ceil(sqrt(M)) + 1), "rmsqrt"
        (M - (ceil(sqrt(M)) + 1)) or "percentage" (M * m / 100).
    m
        Count or percentage. Negative values count down from M.
    n_features
        Total number of features M.

    """
    if mode == _SUBSPACE_SPECIFIED:
        size = m + n_features if m < 0 else m
    elif mode == _SUBSPACE_SQRT:
        size = math.ceil(math.sqrt(n_features)) + 1
    elif mode == _SUBSPACE_SQRT_INV:
        size = n_features - (math.ceil(math.sqrt(n_features)) + 1)
    elif mode == _SUBSPACE_PERCENTAGE:
        percent = (100 + m) / 100.0 if m < 0 else m / 100.0
        size = round(n_features * percent)
    else:
        raise ConfigurationError(f"Invalid subspace_mode: {mode}. Valid options are: {_VALID_SUBSPACE_MODES}")

    size = min(size, n_features)
    if size <= 0:
        raise ConfigurationError(
            f"subspace_mode={mode!r} with subspace_size={m} gives {size} features out of {n_features}"
        )
    return size


class BaseForest(base.Ensemble):
    """Online bagging over a list of trees.

    Every member sees each instance k ~ Poisson(lambda_value) times. Members are
    built on the first call, when the number of features becomes known.

    """

    def __init__(
        self,
        n_models: int,
        lambda_value: float,
        subspace_mode: str,
        subspace_size: int,
        n_jobs: int,
        seed: int | None,
    ):
        super().__init__([])  # type: ignore
        self.n_models = n_models
        self.lambda_value = lambda_value
        self.subspace_mode = subspace_mode
        self.subspace_size = subspace_size
        self.n_jobs = n_jobs
        self.seed = seed

        if n_models < 1:
            raise ConfigurationError(f"n_models must be at least 1, got {n_models}")
        if lambda_value < 1.0:
            raise ConfigurationError(f"lambda_value must be at least 1.0, got {lambda_value}")
        if subspace_mode not in _VALID_SUBSPACE_MODES:
            raise ConfigurationError(
                f"Invalid subspace_mode: {subspace_mode}. Valid options are: {_VALID_SUBSPACE_MODES}"
            )

        self._rng = random.Random(self.seed)
        self._pool = TaskPool(n_jobs)
        self._max_features: int | None = None
        self._n_samples_seen = 0
        self._training_time = 0

    @property
    def _min_number_of_models(self):
        return 0

    @property
    def max_features(self) -> int | None:
        return self._max_features

    @property
    def n_samples_seen(self) -> int:
        return self._n_samples_seen

    @abc.abstractmethod
    def _new_base_model(self, rng: random.Random) -> QuantileTree:
        raise NotImplementedError

    def _init_ensemble(self, features: list):
        self._max_features = calculate_subspace_size(self.subspace_mode, self.subspace_size, len(features))
        self.data = [
            self._new_base_model(rng=random.Random(self._rng.randint(0, 2**32 - 1)))
            for _ in range(self.n_models)
        ]
        logger.info(
            "Initialized %d members with %d of %d features per leaf",
            self.n_models,
            self._max_features,
            len(features),
        )

    def train(self, instance: Instance) -> list[int]:
        """Train on one instance and return the indices of the members that skipped it."""
        self._n_samples_seen += 1
        if not self.data:
            self._init_ensemble(sorted(instance.x.keys()))

        start = time.perf_counter_ns()
        trainers = []
        out_of_bag = []
        for i, model in enumerate(self):
            k = poisson(rate=self.lambda_value, rng=self._rng)
            if k == 0:
                out_of_bag.append(i)
                continue
            weighted = instance.with_weight(k)
            trainers.append(functools.partial(model.learn_one, weighted.x, weighted.y, w=weighted.w))

        # Blocks until every member has been updated
        self._pool.run(trainers)
        self._training_time += time.perf_counter_ns() - start
        return out_of_bag

    def learn_one(self, x: dict, y: base.typing.RegTarget, **kwargs):
        self.train(Instance(x, y))
        return self

    def model_measurements(self) -> dict:
        return {
            "average training time (nanosec)": (
                self._training_time / self._n_samples_seen if self._n_samples_seen else 0.0
            ),
            "instances seen": self._n_samples_seen,
        }

    def shutdown(self):
        self._pool.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()


class OnlineQRF(BaseForest, base.Regressor):
    """Online quantile regression forest.

    Each member is a `QuantileTree` trained with online bagging. To predict, the
    label sketches of the leaves reached by `x` in every member are merged into a
    single sketch, from which the two quantiles bracketing `confidence_level` are
    read.

    Parameters
    ----------
    n_models
        Number of trees.
    confidence_level
        Coverage of the predicted interval. 0.9 gives the [0.05, 0.95] quantiles.
    n_bins
        Resolution of each leaf sketch.
    lambda_value
        Mean of the Poisson draw used for bagging.
    subspace_mode
        How `subspace_size` is turned into a feature count: "specified", "sqrt",
        "rmsqrt" or "percentage".
    subspace_size
        Count or percentage used by `subspace_mode`. Negative values mean M - m.
    n_jobs
        Workers used to train and query members. -1 uses every core, 0 and 1 run
        everything on the calling thread.
    grace_period
    max_depth
    delta
    tau
    min_samples_split
    splitter
    merit_preprune
    max_active_leaves
        Tree parameters, see `QuantileTree`.
    seed
        Seed of the ensemble's random source.

    """

    def __init__(
        self,
        n_models: int = 10,
        confidence_level: float = 0.9,
        n_bins: int = 128,
        lambda_value: float = 6.0,
        subspace_mode: str = "percentage",
        subspace_size: int = 100,
        n_jobs: int = 1,
        grace_period: int = 200,
        max_depth: int | None = None,
        delta: float = 1e-7,
        tau: float = 0.05,
        min_samples_split: int = 5,
        splitter: Splitter | None = None,
        merit_preprune: bool = True,
        max_active_leaves: int | None = None,
        seed: int | None = None,
    ):
        super().__init__(
            n_models=n_models,
            lambda_value=lambda_value,
            subspace_mode=subspace_mode,
            subspace_size=subspace_size,
            n_jobs=n_jobs,
            seed=seed,
        )
        self.confidence_level = confidence_level
        self.n_bins = n_bins
        self.grace_period = grace_period
        self.max_depth = max_depth
        self.delta = delta
        self.tau = tau
        self.min_samples_split = min_samples_split
        self.splitter = splitter
        self.merit_preprune = merit_preprune
        self.max_active_leaves = max_active_leaves

        if not 0.0 <= confidence_level <= 1.0:
            raise ConfigurationError(f"confidence_level must be in [0, 1], got {confidence_level}")
        if n_bins < 1:
            raise ConfigurationError(f"n_bins must be at least 1, got {n_bins}")

        # Merges get their own pool so that they never wait behind member tasks
        self._reduce_executor = (
            concurrent.futures.ThreadPoolExecutor(max_workers=self._pool.n_workers)
            if self._pool.is_parallel
            else None
        )

    @staticmethod
    def quantile_bounds(confidence_level: float) -> tuple[float, float]:
        half_significance = (1.0 - confidence_level) / 2.0
        return half_significance, 1.0 - half_significance

    def _new_base_model(self, rng: random.Random) -> QuantileTree:
        return QuantileTree(
            n_bins=self.n_bins,
            max_features=self._max_features,
            grace_period=self.grace_period,
            max_depth=self.max_depth,
            delta=self.delta,
            tau=self.tau,
            min_samples_split=self.min_samples_split,
            splitter=self.splitter.clone() if self.splitter is not None else None,
            merit_preprune=self.merit_preprune,
            max_active_leaves=self.max_active_leaves,
            rng=rng,
        )

    def prediction_sketch(self, x: dict) -> RankSketch:
        """Merge the sketches of the leaves reached by `x` across all started members."""
        if not self.data:
            self._init_ensemble(sorted(x.keys()))

        fetchers = [
            functools.partial(model.prediction_sketch, x)
            for model in self
            if model.training_has_started
        ]
        # Arrival order is irrelevant: the merge is commutative
        sketches = list(self._pool.as_completed(fetchers))
        return parallel_reduce(
            sketches,
            combine=RankSketch.merge,
            identity=RankSketch(self.n_bins),
            executor=self._reduce_executor,
        )

    def predict_one(self, x: dict, confidence_level: float | None = None) -> tuple[float, float]:
        combined = self.prediction_sketch(x)
        if combined.is_empty():
            return 0.0, 0.0
        lower, upper = self.quantile_bounds(
            self.confidence_level if confidence_level is None else confidence_level
        )
        return combined.quantile(lower), combined.quantile(upper)

    def predict(self, instance: Instance, confidence_level: float | None = None) -> tuple[float, float]:
        return self.predict_one(instance.x, confidence_level=confidence_level)

    def member_predictions(self, x: dict) -> list[float]:
        """Point prediction of every member that has started training."""
        if not self.data:
            self._init_ensemble(sorted(x.keys()))
        return self._pool.run(
            [functools.partial(model.predict_one, x) for model in self if model.training_has_started]
        )

    def shutdown(self):
        super().shutdown()
        if self._reduce_executor is not None:
            self._reduce_executor.shutdown(wait=True)
            self._reduce_executor = None
