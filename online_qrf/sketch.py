from __future__ import annotations

from datasketches import kll_doubles_sketch

__all__ = ["RankSketch"]

# Smallest k accepted by the KLL implementation.
MIN_K = 8


class RankSketch:
    """Approximate, mergeable summary of a stream of labels.

    Thin wrapper around a KLL sketch from Apache DataSketches. The wrapper fixes
    the contract the forest relies on: `merge` returns a new sketch and leaves both
    inputs untouched, which makes it safe to use as the combine step of a parallel
    reduction.

    Parameters
    ----------
    k
        Sketch resolution. Larger values give tighter rank error at the cost of
        memory. Values below the KLL minimum are raised to it.

    """

    __slots__ = ("k", "n", "_sketch")

    def __init__(self, k: int = 200):
        self.k = max(int(k), MIN_K)
        self.n = 0
        self._sketch = kll_doubles_sketch(self.k)

    def update(self, value: float, w: float = 1) -> RankSketch:
        """Insert `value` with a positive whole-number weight.

        The KLL sketch has no weighted insert, so a weight of k is k insertions.
        Bagging weights are Poisson counts and always satisfy this.

        """
        copies = int(w)
        if copies != w or copies < 1:
            raise ValueError(f"weight must be a positive whole number, got {w}")
        for _ in range(copies):
            self._sketch.update(float(value))
        self.n += copies
        return self

    def merge(self, other: RankSketch) -> RankSketch:
        merged = RankSketch(max(self.k, other.k))
        if not self.is_empty():
            merged._sketch.merge(self._sketch)
        if not other.is_empty():
            merged._sketch.merge(other._sketch)
        merged.n = self.n + other.n
        return merged

    def quantile(self, rank: float) -> float:
        if not 0.0 <= rank <= 1.0:
            raise ValueError(f"rank must be in [0, 1], got {rank}")
        if self.is_empty():
            raise ValueError("cannot query a quantile of an empty sketch")
        return float(self._sketch.get_quantile(rank))

    def is_empty(self) -> bool:
        return self.n == 0

    def __repr__(self):
        return f"RankSketch(k={self.k}, n={self.n})"
