"""Seeded random source with deterministic replay.

Calibration evaluates the same simulated cohort at many parameter values.
For the induced statistic to be comparable across those evaluations the
underlying random numbers must be identical each time, so every draw made
through :class:`SeededSource` starts again from the seed instead of
advancing a shared stream.

Child sources are derived with :class:`numpy.random.SeedSequence` spawn
keys, so the stage streams of one run never coincide with the streams of a
run under another seed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass(frozen=True)
class SeededSource:
    """Replayable source of uniforms and Bernoulli draws.

    Two calls with the same arguments always return the same numbers.
    Independent stages of one run (covariates, treatment, outcome,
    censoring) should use :meth:`spawn` so they do not share draws.
    """

    seed: int
    spawn_key: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if int(self.seed) < 0:
            raise ValueError(f"Seed must be non-negative, got {self.seed}")

    def seed_sequence(self) -> np.random.SeedSequence:
        return np.random.SeedSequence(int(self.seed), spawn_key=self.spawn_key)

    def rng(self) -> np.random.Generator:
        """Return a fresh generator positioned at the start of the stream."""
        return np.random.default_rng(self.seed_sequence())

    def uniform(self, n: int) -> np.ndarray:
        """Return the first ``n`` uniforms on [0, 1) of the stream."""
        if n < 0:
            raise ValueError(f"Cannot draw a negative number of values ({n})")
        return self.rng().random(int(n))

    def bernoulli(self, p: np.ndarray) -> np.ndarray:
        """Draw one 0/1 outcome per probability from the replayed uniforms.

        Observation ``i`` always uses uniform ``i``, so raising any ``p[i]``
        can only turn a 0 into a 1.
        """
        probs = np.asarray(p, dtype=float)
        return (self.uniform(probs.size) < probs.ravel()).astype(int).reshape(probs.shape)

    def spawn(self, offset: int) -> "SeededSource":
        """Derive an independent source for another stage of the run."""
        if int(offset) < 0:
            raise ValueError(f"Stream offset must be non-negative, got {offset}")
        return SeededSource(int(self.seed), self.spawn_key + (int(offset),))
