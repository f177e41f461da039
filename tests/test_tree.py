"""Tests for the sketch-carrying regression tree."""
import random

import pytest

from online_qrf.tree import Inactive, Leaf, QuantileTree, Split


def step_stream(n, seed=0):
    """y jumps from 0 to 10 when a crosses 0.5; b and c are noise."""
    rng = random.Random(seed)
    for _ in range(n):
        x = {"a": rng.random(), "b": rng.random(), "c": rng.random()}
        y = (10.0 if x["a"] > 0.5 else 0.0) + rng.gauss(0, 0.1)
        yield x, y


def test_untrained_tree():
    tree = QuantileTree()
    assert not tree.training_has_started
    assert tree.predict_one({"a": 1.0}) == 0.0
    assert tree.prediction_sketch({"a": 1.0}).is_empty()


def test_leaf_feature_subset_never_changes():
    tree = QuantileTree(max_features=2, grace_period=10**6, rng=random.Random(3))
    stream = list(step_stream(300))

    tree.learn_one(*stream[0])
    leaf = tree.nodes[0]
    chosen = list(leaf.feature_indices)
    assert len(chosen) == 2
    assert set(chosen) <= {"a", "b", "c"}

    for x, y in stream[1:]:
        tree.learn_one(x, y)
        assert tree.nodes[0] is leaf
        assert leaf.feature_indices == chosen

    assert set(leaf.splitters) <= set(chosen)


def test_subset_is_capped_by_feature_count():
    tree = QuantileTree(max_features=10, rng=random.Random(0))
    tree.learn_one({"a": 1.0, "b": 2.0}, 1.0)
    assert sorted(tree.nodes[0].feature_indices) == ["a", "b"]


def test_leaf_statistics_use_weight():
    tree = QuantileTree(grace_period=10**6)
    tree.learn_one({"a": 1.0}, 2.0, w=3)
    leaf = tree.nodes[0]
    assert leaf.weight_seen == 3
    assert leaf.sum_of_values == 6.0
    assert leaf.sum_of_squares == 12.0
    assert leaf.sketch.n == 3
    assert tree.predict_one({"a": 1.0}) == pytest.approx(2.0)


def test_fractional_weight_leaves_the_leaf_untouched():
    tree = QuantileTree(grace_period=10**6)
    tree.learn_one({"a": 1.0}, 2.0)
    with pytest.raises(ValueError):
        tree.learn_one({"a": 1.0}, 5.0, w=0.5)

    leaf = tree.nodes[0]
    assert tree.n_updates == 1
    assert leaf.weight_seen == leaf.sketch.n == 1
    assert leaf.sum_of_values == 2.0


def test_tree_splits_on_informative_feature():
    tree = QuantileTree(max_features=3, grace_period=50, delta=0.01, rng=random.Random(1))
    for x, y in step_stream(2000, seed=1):
        tree.learn_one(x, y)

    root = tree.nodes[0]
    assert isinstance(root, Split)
    assert root.feature == "a"
    assert tree.summary["n_splits"] >= 1

    high = tree.prediction_sketch({"a": 0.9, "b": 0.5, "c": 0.5})
    low = tree.prediction_sketch({"a": 0.1, "b": 0.5, "c": 0.5})
    assert high.quantile(0.5) == pytest.approx(10.0, abs=1.0)
    assert low.quantile(0.5) == pytest.approx(0.0, abs=1.0)

    # The children started from empty sketches after the split
    leaves = [node for node in tree.nodes if isinstance(node, (Leaf, Inactive))]
    assert sum(node.sketch.n for node in leaves) < tree.n_updates


def test_missing_feature_follows_default_branch():
    tree = QuantileTree(max_features=3, grace_period=50, delta=0.01, rng=random.Random(1))
    for x, y in step_stream(2000, seed=1):
        tree.learn_one(x, y)

    root = tree.nodes[0]
    assert root.branch_no({"b": 0.5}) == root.default_branch
    assert isinstance(tree.predict_one({"b": 0.5}), float)


def test_depth_limit_leaves_keep_learning():
    tree = QuantileTree(max_features=3, grace_period=50, delta=0.01, max_depth=0)
    for x, y in step_stream(1000):
        tree.learn_one(x, y)

    root = tree.nodes[0]
    assert isinstance(root, Leaf)
    assert tree.summary["n_nodes"] == 1
    assert tree.n_updates == 1000
    assert root.sketch.n == 1000


def test_depth_limit_stops_splits_below_it():
    tree = QuantileTree(max_features=3, grace_period=50, delta=0.01, max_depth=1, rng=random.Random(1))
    stream = list(step_stream(3000, seed=1))
    for x, y in stream[:1500]:
        tree.learn_one(x, y)
    sizes = {i: node.sketch.n for i, node in enumerate(tree.nodes) if isinstance(node, Leaf)}

    for x, y in stream[1500:]:
        tree.learn_one(x, y)

    assert tree.summary["height"] <= 2
    assert tree.summary["n_inactive_leaves"] == 0
    for i, size in sizes.items():
        assert tree.nodes[i].sketch.n > size


def test_deactivation_carries_the_sketch_over_by_reference():
    tree = QuantileTree(grace_period=10**6)
    for v in range(10):
        tree.learn_one({"a": float(v)}, float(v))
    sketch = tree.nodes[0].sketch

    tree._deactivate(0)

    assert isinstance(tree.nodes[0], Inactive)
    assert tree.nodes[0].sketch is sketch

    tree.learn_one({"a": 2.0}, 8.0)
    assert tree.n_updates == 10
    assert sketch.n == 10
    assert tree.predict_one({"a": 2.0}) == pytest.approx(4.5)


def test_active_leaf_limit_only_freezes_mature_leaves():
    tree = QuantileTree(
        max_features=3, grace_period=50, delta=0.01, max_active_leaves=1, rng=random.Random(1)
    )
    for x, y in step_stream(2000, seed=1):
        tree.learn_one(x, y)
        mature = [node for node in tree.nodes if isinstance(node, Leaf) and node.weight_seen >= 50]
        assert len(mature) <= 1

    frozen = [node for node in tree.nodes if isinstance(node, Inactive)]
    assert frozen
    assert all(node.sketch.n >= 50 for node in frozen)
    for x, _ in step_stream(200, seed=2):
        if isinstance(tree.nodes[tree._sort(x)], Inactive):
            assert not tree.prediction_sketch(x).is_empty()


def test_growth_can_be_disabled():
    tree = QuantileTree(max_features=3, grace_period=50, delta=0.01, growth_allowed=False)
    for x, y in step_stream(1000):
        tree.learn_one(x, y)
    assert tree.summary["n_nodes"] == 1
    assert tree.nodes[0].sketch.n == 1000
