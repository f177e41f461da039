"""Tests for the rank sketch wrapper."""
import bisect
import functools
import random

import pytest

from online_qrf.parallel import parallel_reduce
from online_qrf.sketch import RankSketch

RANKS = [0.05, 0.25, 0.5, 0.75, 0.95]
# Loose bound on the normalized rank error of a k=200 KLL sketch
RANK_TOLERANCE = 0.04


def true_rank(sorted_values, value):
    return bisect.bisect_right(sorted_values, value) / len(sorted_values)


def test_empty_sketch():
    sketch = RankSketch(64)
    assert sketch.is_empty()
    with pytest.raises(ValueError):
        sketch.quantile(0.5)


def test_k_is_raised_to_the_kll_minimum():
    assert RankSketch(1).k == 8


def test_rank_outside_unit_interval():
    sketch = RankSketch().update(1.0)
    with pytest.raises(ValueError):
        sketch.quantile(1.5)


def test_weight_is_inserted_as_copies():
    sketch = RankSketch().update(3.0, w=4)
    assert sketch.n == 4
    assert sketch.quantile(0.0) == 3.0
    assert sketch.quantile(1.0) == 3.0


def test_merge_leaves_inputs_untouched():
    a, b = RankSketch(), RankSketch()
    for v in range(50):
        a.update(float(v))
        b.update(float(v + 50))
    median_a = a.quantile(0.5)

    merged = a.merge(b)

    assert a.n == 50 and b.n == 50
    assert a.quantile(0.5) == median_a
    assert merged.n == 100
    assert merged.quantile(0.0) == 0.0
    assert merged.quantile(1.0) == 99.0


def test_merge_with_empty_sketch():
    a = RankSketch().update(2.0)
    merged = RankSketch().merge(a)
    assert merged.n == 1
    assert merged.quantile(0.5) == 2.0
    assert RankSketch().merge(RankSketch()).is_empty()


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_merge_order_does_not_matter(seed):
    rng = random.Random(seed)
    values = [rng.gauss(0, 1) for _ in range(5000)]
    ordered = sorted(values)

    parts = [RankSketch(200) for _ in range(7)]
    for v in values:
        parts[rng.randrange(len(parts))].update(v)

    one_pass = RankSketch(200)
    for v in values:
        one_pass.update(v)

    shuffled = parts[:]
    rng.shuffle(shuffled)
    merges = [
        functools.reduce(RankSketch.merge, parts, RankSketch(200)),
        functools.reduce(RankSketch.merge, reversed(parts), RankSketch(200)),
        functools.reduce(RankSketch.merge, shuffled, RankSketch(200)),
        parallel_reduce(parts, RankSketch.merge, RankSketch(200)),
    ]

    for merged in merges:
        assert merged.n == len(values)
        for rank in RANKS:
            assert abs(true_rank(ordered, merged.quantile(rank)) - rank) <= RANK_TOLERANCE
            assert abs(true_rank(ordered, merged.quantile(rank)) - true_rank(ordered, one_pass.quantile(rank))) <= (
                2 * RANK_TOLERANCE
            )


@pytest.mark.parametrize("w", [0, -1, 0.5, 2.5])
def test_weight_must_be_a_positive_whole_number(w):
    sketch = RankSketch()
    with pytest.raises(ValueError):
        sketch.update(1.0, w=w)
    assert sketch.is_empty()


def test_whole_float_weight_is_accepted():
    assert RankSketch().update(1.0, w=2.0).n == 2


def test_sketches_combine_only_through_merge():
    with pytest.raises(TypeError):
        RankSketch().update(1.0) + RankSketch().update(2.0)
