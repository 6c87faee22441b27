"""Tests for the permutation null engine."""

import threading

import pytest
import numpy as np
import polars as pl

from pathgsea.errors import InsufficientPermutationsError, PermutationCancelledError
from pathgsea.permutation import build_null


@pytest.fixture
def sample_data():
    """Create synthetic abundance data with a shifted block of features."""
    rng = np.random.default_rng(0)
    n_features = 30
    samples = [f"S{i}" for i in range(8)]
    values = rng.gamma(2.0, 10.0, size=(n_features, len(samples)))
    values[:8, :4] *= 3

    abundance = pl.DataFrame({'feature_id': [f"K{i:05d}" for i in range(n_features)]}).with_columns(
        [pl.Series(s, values[:, j]) for j, s in enumerate(samples)]
    )
    metadata = pl.DataFrame({
        'sample': samples,
        'group': ['case'] * 4 + ['control'] * 4,
    })
    pathways = {
        'map_up': tuple(f"K{i:05d}" for i in range(8)),
        'map_rest': tuple(f"K{i:05d}" for i in range(8, 20)),
    }
    return abundance, metadata, pathways


class CountingEvent:
    """Event that reports set after a fixed number of checks."""

    def __init__(self, after):
        self.after = after
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.after


def test_null_shape(sample_data):
    """Test one null array of nperm values per pathway."""
    abundance, metadata, pathways = sample_data
    null = build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=20, seed=1)

    assert set(null) == set(pathways)
    for values in null.values():
        assert values.shape == (20,)
        assert np.isfinite(values).all()
        assert (np.abs(values) <= 1).all()


def test_null_reproducible(sample_data):
    """Test that the same seed gives identical nulls and a different seed does not."""
    abundance, metadata, pathways = sample_data
    first = build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=25, seed=7)
    second = build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=25, seed=7)
    other = build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=25, seed=8)

    for pathway_id in pathways:
        np.testing.assert_array_equal(first[pathway_id], second[pathway_id])
    assert any(not np.array_equal(first[p], other[p]) for p in pathways)


def test_null_independent_of_chunking(sample_data):
    """Test that chunk size does not change the sequential result."""
    abundance, metadata, pathways = sample_data
    default = build_null(abundance, metadata, 'group', pathways, 't_test', nperm=12, seed=3)
    chunked = build_null(abundance, metadata, 'group', pathways, 't_test', nperm=12, seed=3, chunk_size=5)

    for pathway_id in pathways:
        np.testing.assert_array_equal(default[pathway_id], chunked[pathway_id])


def test_parallel_matches_sequential(sample_data):
    """Test that worker processes reproduce the in-process null exactly."""
    abundance, metadata, pathways = sample_data
    sequential = build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=20, seed=11)
    parallel = build_null(
        abundance, metadata, 'group', pathways, 'signal2noise', nperm=20, seed=11,
        n_workers=2, chunk_size=5,
    )

    for pathway_id in pathways:
        np.testing.assert_array_equal(sequential[pathway_id], parallel[pathway_id])


def test_invalid_nperm(sample_data):
    """Test that zero permutations are rejected."""
    abundance, metadata, pathways = sample_data
    with pytest.raises(InsufficientPermutationsError):
        build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=0, seed=1)


def test_unknown_rank_method(sample_data):
    """Test that an unknown rank method is rejected."""
    abundance, metadata, pathways = sample_data
    with pytest.raises(ValueError, match="Unknown rank method"):
        build_null(abundance, metadata, 'group', pathways, 'median_ratio', nperm=5, seed=1)


def test_cancel_before_start(sample_data):
    """Test that a pre-set event stops the loop before any round."""
    abundance, metadata, pathways = sample_data
    event = threading.Event()
    event.set()

    with pytest.raises(PermutationCancelledError) as exc_info:
        build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=10, seed=1, cancel_event=event)

    assert exc_info.value.completed == 0
    assert exc_info.value.requested == 10


def test_cancel_mid_run(sample_data):
    """Test that cancellation reports the rounds already completed."""
    abundance, metadata, pathways = sample_data
    event = CountingEvent(after=3)

    with pytest.raises(PermutationCancelledError) as exc_info:
        build_null(abundance, metadata, 'group', pathways, 'signal2noise', nperm=10, seed=1, cancel_event=event)

    assert exc_info.value.completed == 3


def test_unset_event_runs_to_completion(sample_data):
    """Test that an event that is never set does not interfere."""
    abundance, metadata, pathways = sample_data
    null = build_null(
        abundance, metadata, 'group', pathways, 'signal2noise', nperm=5, seed=1,
        cancel_event=threading.Event(),
    )
    assert all(len(values) == 5 for values in null.values())
