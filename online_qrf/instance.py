from __future__ import annotations

import dataclasses


@dataclasses.dataclass(frozen=True, eq=False)
class Instance:
    """A labelled feature vector.

    Equality and hashing are by identity, so an instance can key the calibration
    maps for as long as it is retained there.

    """

    x: dict
    y: float
    w: float = 1.0

    def with_weight(self, w: float) -> Instance:
        return dataclasses.replace(self, w=w)
