from __future__ import annotations

import numpy as np
import pytest

from ps_simkit.random_source import SeededSource


def test_uniform_replays_identical_sequence() -> None:
    source = SeededSource(123)
    np.testing.assert_array_equal(source.uniform(100), source.uniform(100))
    np.testing.assert_array_equal(source.uniform(10), source.uniform(100)[:10])


def test_root_stream_matches_default_rng() -> None:
    np.testing.assert_array_equal(SeededSource(7).uniform(20), np.random.default_rng(7).random(20))


def test_spawned_sources_are_independent() -> None:
    source = SeededSource(123)
    assert not np.array_equal(source.spawn(1).uniform(50), source.spawn(2).uniform(50))
    assert not np.array_equal(source.spawn(0).uniform(50), source.uniform(50))
    np.testing.assert_array_equal(source.spawn(1).uniform(50), SeededSource(123).spawn(1).uniform(50))


def test_stage_streams_do_not_overlap_across_adjacent_seeds() -> None:
    # Stage k of seed s must not reuse stage k-1 of seed s+1.
    for offset in range(1, 5):
        assert not np.array_equal(
            SeededSource(5).spawn(offset).uniform(10),
            SeededSource(6).spawn(offset - 1).uniform(10),
        )
    assert not np.array_equal(SeededSource(6).uniform(10), SeededSource(5).spawn(1).uniform(10))


def test_nested_spawns_extend_the_key() -> None:
    child = SeededSource(3).spawn(2).spawn(4)
    assert child.spawn_key == (2, 4)
    assert child.seed == 3


def test_bernoulli_is_monotone_in_probability() -> None:
    source = SeededSource(9)
    p = np.linspace(0.0, 1.0, 1000)
    low = source.bernoulli(p * 0.5)
    high = source.bernoulli(p)
    assert np.all(low <= high)
    assert source.bernoulli(np.zeros(20)).sum() == 0
    assert source.bernoulli(np.ones(20)).sum() == 20


def test_negative_seed_and_offset_are_rejected() -> None:
    with pytest.raises(ValueError):
        SeededSource(-1)
    with pytest.raises(ValueError):
        SeededSource(1).spawn(-1)
