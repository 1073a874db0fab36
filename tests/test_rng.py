"""Tests for lowd_popgen.rng — seeded RNG hierarchy and checkpointing."""

import numpy as np
import pytest

from lowd_popgen.rng import (
    STREAM_NAMES,
    create_rng_hierarchy,
    derive_seed,
    restore_rng_state,
    rng_state_snapshot,
)


class TestCreateRngHierarchy:
    def test_returns_correct_keys(self):
        rngs = create_rng_hierarchy(42)
        assert set(rngs) == set(STREAM_NAMES)
        assert 'engine' in rngs

    def test_generators_are_independent(self):
        """Different streams produce different sequences."""
        rngs = create_rng_hierarchy(42)
        vals = {name: rng.random() for name, rng in rngs.items()}
        assert len(set(vals.values())) == len(vals), "RNG streams produced duplicate values"

    def test_reproducibility(self):
        """Same seed produces identical sequences."""
        rngs1 = create_rng_hierarchy(42)
        rngs2 = create_rng_hierarchy(42)
        for name in rngs1:
            np.testing.assert_array_equal(rngs1[name].random(100), rngs2[name].random(100))

    def test_different_seeds_differ(self):
        rngs1 = create_rng_hierarchy(42)
        rngs2 = create_rng_hierarchy(43)
        assert not np.array_equal(rngs1['engine'].random(10), rngs2['engine'].random(10))

    def test_negative_seed_rejected(self):
        with pytest.raises(ValueError):
            create_rng_hierarchy(-1)


class TestDeriveSeed:
    def test_positive(self):
        seed = derive_seed()
        assert 0 < seed < 2 ** 63

    def test_usable_as_master_seed(self):
        rngs = create_rng_hierarchy(derive_seed())
        assert 0.0 <= rngs['engine'].random() < 1.0


class TestCheckpointing:
    def test_snapshot_restore_roundtrip(self):
        """Restoring a snapshot replays the exact same draws."""
        rngs = create_rng_hierarchy(7)
        rngs['engine'].random(13)
        snapshot = rng_state_snapshot(rngs)
        first = rngs['engine'].poisson(3.0, size=50)

        restore_rng_state(rngs, snapshot)
        second = rngs['engine'].poisson(3.0, size=50)
        np.testing.assert_array_equal(first, second)

    def test_snapshot_is_per_stream(self):
        rngs = create_rng_hierarchy(7)
        snapshot = rng_state_snapshot(rngs)
        assert set(snapshot) == set(STREAM_NAMES)

    def test_unknown_stream_raises(self):
        rngs = create_rng_hierarchy(7)
        snapshot = rng_state_snapshot(rngs)
        snapshot['bogus'] = snapshot['engine']
        with pytest.raises(KeyError):
            restore_rng_state(rngs, snapshot)
