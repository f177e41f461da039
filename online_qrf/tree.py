from __future__ import annotations

import dataclasses
import logging
import math
import numbers
import random

from river import base, stats
from river.tree.split_criterion import VarianceReductionSplitCriterion
from river.tree.splitter import Splitter, TEBSTSplitter

from online_qrf.sketch import RankSketch

__all__ = ["Inactive", "Leaf", "QuantileTree", "Split"]

logger = logging.getLogger(__name__)


# ================================================================
# Nodes. The tree keeps them in a flat list and links them by index.
# ================================================================
@dataclasses.dataclass(eq=False)
class Leaf:
    depth: int
    sketch: RankSketch
    stats: stats.Var = dataclasses.field(default_factory=stats.Var)
    weight_seen: float = 0.0
    sum_of_values: float = 0.0
    sum_of_squares: float = 0.0
    sum_of_abs_errors: float = 0.0
    feature_indices: list | None = None
    splitters: dict = dataclasses.field(default_factory=dict)
    last_split_attempt_at: float = 0.0

    def prediction(self, nodes, x) -> float:
        return self.stats.mean.get()

    def prediction_sketch(self, nodes, x) -> RankSketch:
        return self.sketch


@dataclasses.dataclass(eq=False)
class Split:
    depth: int
    feature: base.typing.FeatureName
    threshold: float
    children: list[int]
    default_branch: int = 0

    def branch_no(self, x) -> int:
        try:
            return 0 if x[self.feature] <= self.threshold else 1
        except KeyError:
            return self.default_branch

    def prediction(self, nodes, x) -> float:
        return nodes[self.children[self.branch_no(x)]].prediction(nodes, x)

    def prediction_sketch(self, nodes, x) -> RankSketch:
        return nodes[self.children[self.branch_no(x)]].prediction_sketch(nodes, x)


@dataclasses.dataclass(eq=False)
class Inactive:
    """A frozen leaf. It keeps answering queries but no longer learns."""

    depth: int
    sketch: RankSketch
    mean: float

    def prediction(self, nodes, x) -> float:
        return self.mean

    def prediction_sketch(self, nodes, x) -> RankSketch:
        return self.sketch


# ================================================================
# Tree
# ================================================================
class QuantileTree(base.Regressor):
    """Incremental regression tree with a label sketch in every leaf.

    Split search follows the Hoeffding tree regressor: each leaf feeds a river
    splitter per candidate feature and the best two split suggestions are compared
    with a Hoeffding bound once `grace_period` weight has accumulated. Each leaf
    only considers a random subset of `max_features` features, drawn once on its
    first update.

    Parameters
    ----------
    n_bins
        Resolution of the label sketch held by each leaf.
    max_features
        Size of the per-leaf feature subset.
    grace_period
        Weight a leaf must observe between split attempts.
    max_depth
        Leaves at this depth keep learning but never split. `None` means unlimited.
    delta
        Significance level of the Hoeffding bound.
    tau
        Tie-breaking threshold.
    min_samples_split
        Minimum weight each branch of a candidate split must hold.
    splitter
        Attribute observer used for numeric features. Defaults to `TEBSTSplitter`.
    merit_preprune
        If True, a split must beat the null split, otherwise the leaf is frozen.
    max_active_leaves
        If set, the least promising active leaves are frozen whenever the tree
        holds more active leaves than this. A leaf is only frozen once it has
        seen `grace_period` weight.
    growth_allowed
        Disables split attempts when False.
    rng
        Random source for feature subsets.

    """

    def __init__(
        self,
        n_bins: int = 128,
        max_features: int = 2,
        grace_period: int = 200,
        max_depth: int | None = None,
        delta: float = 1e-7,
        tau: float = 0.05,
        min_samples_split: int = 5,
        splitter: Splitter | None = None,
        merit_preprune: bool = True,
        max_active_leaves: int | None = None,
        growth_allowed: bool = True,
        rng: random.Random | None = None,
    ):
        self.n_bins = n_bins
        self.max_features = max_features
        self.grace_period = grace_period
        self.max_depth = max_depth if max_depth is not None else math.inf
        self.delta = delta
        self.tau = tau
        self.min_samples_split = min_samples_split
        self.splitter = splitter or TEBSTSplitter()
        self.merit_preprune = merit_preprune
        self.max_active_leaves = max_active_leaves
        self.growth_allowed = growth_allowed
        self.rng = rng or random.Random()

        self._nodes: list[Leaf | Split | Inactive] = []
        self._root: int | None = None
        self.n_updates = 0

    @property
    def training_has_started(self) -> bool:
        return self.n_updates > 0

    @property
    def nodes(self):
        return self._nodes

    @property
    def summary(self) -> dict:
        return {
            "n_nodes": len(self._nodes),
            "n_splits": sum(isinstance(node, Split) for node in self._nodes),
            "n_active_leaves": sum(isinstance(node, Leaf) for node in self._nodes),
            "n_inactive_leaves": sum(isinstance(node, Inactive) for node in self._nodes),
            "height": max((node.depth for node in self._nodes), default=-1) + 1,
            "n_updates": self.n_updates,
        }

    def _new_leaf(self, depth: int = 0, initial_stats: stats.Var | None = None) -> int:
        leaf = Leaf(depth=depth, sketch=RankSketch(self.n_bins))
        if initial_stats is not None:
            leaf.stats = initial_stats
        self._nodes.append(leaf)
        return len(self._nodes) - 1

    def _sort(self, x) -> int:
        node_id = self._root
        node = self._nodes[node_id]
        while isinstance(node, Split):
            node_id = node.children[node.branch_no(x)]
            node = self._nodes[node_id]
        return node_id

    # ------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------
    def learn_one(self, x: dict, y: base.typing.RegTarget, *, w: float = 1.0):
        if self._root is None:
            self._root = self._new_leaf()

        leaf_id = self._sort(x)
        leaf = self._nodes[leaf_id]
        if isinstance(leaf, Inactive):
            return self

        self._learn_at_leaf(leaf, x, y, w)
        self.n_updates += 1

        if not self.growth_allowed:
            return self
        if leaf.weight_seen - leaf.last_split_attempt_at >= self.grace_period:
            # Leaves at max_depth keep learning but never split
            if leaf.depth < self.max_depth:
                self._attempt_to_split(leaf_id)
            leaf.last_split_attempt_at = leaf.weight_seen
            if self.max_active_leaves is not None:
                self._enforce_active_leaf_limit()

        return self

    def _learn_at_leaf(self, leaf: Leaf, x: dict, y: float, w: float):
        # Rejects fractional weights before any statistic moves
        leaf.sketch.update(y, w)
        if leaf.feature_indices is None:
            leaf.feature_indices = self._sample_features(x)

        error = abs(y - leaf.prediction(self._nodes, x))
        leaf.weight_seen += w
        leaf.sum_of_values += w * y
        leaf.sum_of_squares += w * y * y
        leaf.sum_of_abs_errors += w * error
        leaf.stats.update(y, w)

        for feature in leaf.feature_indices:
            value = x.get(feature)
            # Nominal and missing values are not observed
            if not isinstance(value, numbers.Number):
                continue
            try:
                splitter = leaf.splitters[feature]
            except KeyError:
                splitter = leaf.splitters[feature] = self.splitter.clone()
            splitter.update(value, y, w)

    def _sample_features(self, x: dict) -> list:
        features = sorted(x.keys())
        return self.rng.sample(features, k=min(self.max_features, len(features)))

    @staticmethod
    def _hoeffding_bound(range_val, confidence, n):
        return math.sqrt((range_val * range_val * math.log(1.0 / confidence)) / (2.0 * n))

    def _attempt_to_split(self, leaf_id: int):
        leaf = self._nodes[leaf_id]
        criterion = VarianceReductionSplitCriterion(min_samples_split=self.min_samples_split)

        # (merit, suggestion) pairs, None standing for "do not split"
        candidates = []
        for feature, splitter in leaf.splitters.items():
            suggestion = splitter.best_evaluated_split_suggestion(criterion, leaf.stats, feature, True)
            if suggestion.feature is not None and math.isfinite(suggestion.merit):
                candidates.append((suggestion.merit, suggestion))
        if self.merit_preprune:
            candidates.append((0.0, None))
        candidates.sort(key=lambda c: c[0])

        should_split = False
        if len(candidates) < 2:
            should_split = len(candidates) > 0
        else:
            hoeffding_bound = self._hoeffding_bound(
                criterion.range_of_merit(leaf.stats), self.delta, leaf.weight_seen
            )
            best_merit, second_merit = candidates[-1][0], candidates[-2][0]
            if best_merit > 0.0 and (
                second_merit / best_merit < 1 - hoeffding_bound or hoeffding_bound < self.tau
            ):
                should_split = True

        if not should_split:
            return

        decision = candidates[-1][1]
        if decision is None:
            self._deactivate(leaf_id)
            return

        self._split(leaf_id, decision)

    def _split(self, leaf_id: int, decision):
        leaf = self._nodes[leaf_id]
        children = [
            self._new_leaf(depth=leaf.depth + 1, initial_stats=child_stats)
            for child_stats in decision.children_stats
        ]
        weights = [child_stats.mean.n for child_stats in decision.children_stats]
        # The leaf's sketch goes away with it: the children start empty
        self._nodes[leaf_id] = Split(
            depth=leaf.depth,
            feature=decision.feature,
            threshold=decision.split_info,
            children=children,
            default_branch=max(range(len(weights)), key=weights.__getitem__),
        )
        logger.debug(
            "Split node %d on %r <= %.4f at depth %d", leaf_id, decision.feature, decision.split_info, leaf.depth
        )

    def _deactivate(self, leaf_id: int):
        leaf = self._nodes[leaf_id]
        self._nodes[leaf_id] = Inactive(
            depth=leaf.depth, sketch=leaf.sketch, mean=leaf.prediction(self._nodes, None)
        )
        logger.debug("Deactivated leaf %d at depth %d", leaf_id, leaf.depth)

    def _is_mature(self, leaf: Leaf) -> bool:
        return leaf.weight_seen >= self.grace_period and not leaf.sketch.is_empty()

    def _enforce_active_leaf_limit(self):
        """Freeze the least promising active leaves until the limit holds.

        Only leaves that went through a full grace period are candidates. Fresh
        children of a split may push the tree over the limit until they mature.

        """
        active = [i for i, node in enumerate(self._nodes) if isinstance(node, Leaf)]
        excess = len(active) - self.max_active_leaves
        if excess <= 0:
            return
        candidates = [i for i in active if self._is_mature(self._nodes[i])]
        # Promise counts the weight inherited from the split as well
        candidates.sort(key=lambda i: self._nodes[i].stats.mean.n)
        for leaf_id in candidates[:excess]:
            self._deactivate(leaf_id)

    # ------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------
    def predict_one(self, x: dict) -> base.typing.RegTarget:
        if self._root is None:
            return 0.0
        return self._nodes[self._root].prediction(self._nodes, x)

    def prediction_sketch(self, x: dict) -> RankSketch:
        if self._root is None:
            return RankSketch(self.n_bins)
        return self._nodes[self._root].prediction_sketch(self._nodes, x)
