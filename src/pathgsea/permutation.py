"""Phenotype-permutation null distributions for enrichment scores."""

import logging
import math
import multiprocessing
import platform
from concurrent.futures import ProcessPoolExecutor, as_completed
from functools import partial
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import polars as pl
from tqdm.auto import tqdm

from pathgsea.config import RANK_METHODS
from pathgsea.data import PreparedData, membership_matrix, prepare_inputs
from pathgsea.errors import InsufficientPermutationsError, PermutationCancelledError
from pathgsea.stats import _enrichment_batch, compute_rank_scores, rank_order

logger = logging.getLogger(__name__)

# ASCII bars render better in the macOS terminal
tqdm_kwargs = {
    'leave': True,
    'ncols': 100,
    'dynamic_ncols': True,
    'ascii': platform.system() == 'Darwin',
}


def _permutation_round(
    seed_sequence: np.random.SeedSequence,
    matrix: np.ndarray,
    is_test: np.ndarray,
    rank_method: str,
    membership: np.ndarray,
    weight: float,
) -> np.ndarray:
    """
    Score every pathway under one shuffled assignment of group labels.

    Args:
        seed_sequence: Seed of this round
        matrix: Feature x sample abundance values
        is_test: Observed test-group mask
        rank_method: Rank metric name
        membership: Boolean (n_pathways, n_features) membership matrix
        weight: Exponent applied to |score| for hits

    Returns:
        Array of null enrichment scores, one per pathway
    """
    rng = np.random.default_rng(seed_sequence)
    permuted = rng.permutation(is_test)
    scores = compute_rank_scores(matrix, permuted, rank_method)
    order = rank_order(scores)
    es, _ = _enrichment_batch(scores[order], order, membership, weight)
    return es


# Defined at module level so worker processes can unpickle it
def _permutation_chunk(
    indices: np.ndarray,
    seed_sequences: List[np.random.SeedSequence],
    matrix: np.ndarray,
    is_test: np.ndarray,
    rank_method: str,
    membership: np.ndarray,
    weight: float,
):
    """Run a block of permutation rounds and return them with their indices."""
    values = np.empty((len(indices), membership.shape[0]))
    for row, seed_sequence in enumerate(seed_sequences):
        values[row] = _permutation_round(seed_sequence, matrix, is_test, rank_method, membership, weight)
    return indices, values


def _chunk_indices(nperm: int, chunk_size: int) -> List[np.ndarray]:
    return [np.arange(start, min(start + chunk_size, nperm)) for start in range(0, nperm, chunk_size)]


def null_from_prepared(
    prepared: PreparedData,
    pathways: Mapping[str, Sequence[str]],
    rank_method: str,
    nperm: int,
    seed: int,
    weight_exponent: float = 1.0,
    n_workers: int = 1,
    chunk_size: Optional[int] = None,
    cancel_event=None,
    progress: bool = False,
) -> Dict[str, np.ndarray]:
    """
    Build permutation nulls from already validated inputs.

    Round k always uses the k-th child of SeedSequence(seed), and its scores
    are stored at row k, so the result does not depend on worker count,
    chunking or completion order.

    Args:
        prepared: Aligned abundance matrix and labels
        pathways: Pathway id mapped to member feature ids
        rank_method: Rank metric name
        nperm: Number of permutation rounds
        seed: Seed of the permutation generator
        weight_exponent: Exponent applied to |score| for hits
        n_workers: Worker processes; 1 runs in-process
        chunk_size: Rounds per worker task
        cancel_event: Object with is_set(), checked between rounds
        progress: Show a progress bar

    Returns:
        Pathway id mapped to an array of nperm null scores
    """
    if nperm < 1:
        raise InsufficientPermutationsError(f"nperm must be at least 1, got {nperm}")
    if rank_method not in RANK_METHODS:
        raise ValueError(f"Unknown rank method: {rank_method}")

    pathway_ids = list(pathways)
    membership = membership_matrix(pathways, prepared.feature_ids)
    seed_sequences = np.random.SeedSequence(seed).spawn(nperm)
    null = np.empty((nperm, len(pathway_ids)))

    run_round = partial(
        _permutation_round,
        matrix=prepared.matrix,
        is_test=prepared.is_test,
        rank_method=rank_method,
        membership=membership,
        weight=float(weight_exponent),
    )

    if chunk_size is None:
        chunk_size = max(1, math.ceil(nperm / (4 * n_workers)))
    chunks = _chunk_indices(nperm, chunk_size)

    logger.info(f"Running {nperm} permutations for {len(pathway_ids)} pathways with {n_workers} worker(s)")

    if n_workers > 1 and len(chunks) > 1:
        _run_parallel(null, chunks, seed_sequences, prepared, rank_method, membership,
                      float(weight_exponent), n_workers, cancel_event, progress)
    else:
        with tqdm(total=nperm, desc="Permutations", unit="perm", disable=not progress, **tqdm_kwargs) as pbar:
            for k in range(nperm):
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Permutations cancelled after {k} of {nperm} rounds")
                    raise PermutationCancelledError(k, nperm)
                null[k] = run_round(seed_sequences[k])
                pbar.update(1)

    return {pathway_id: null[:, j].copy() for j, pathway_id in enumerate(pathway_ids)}


def _run_parallel(null, chunks, seed_sequences, prepared, rank_method, membership,
                  weight, n_workers, cancel_event, progress):
    """Fill the null array from worker processes, one chunk of rounds per task."""
    nperm = len(seed_sequences)
    if cancel_event is not None and cancel_event.is_set():
        raise PermutationCancelledError(0, nperm)

    task = partial(
        _permutation_chunk,
        matrix=prepared.matrix,
        is_test=prepared.is_test,
        rank_method=rank_method,
        membership=membership,
        weight=weight,
    )

    completed = 0
    # spawn avoids forking a parent whose numba/BLAS threads are already running
    with ProcessPoolExecutor(max_workers=n_workers, mp_context=multiprocessing.get_context('spawn')) as executor:
        futures = {
            executor.submit(task, indices, [seed_sequences[i] for i in indices]): indices
            for indices in chunks
        }
        try:
            with tqdm(total=nperm, desc="Permutations", unit="perm", disable=not progress, **tqdm_kwargs) as pbar:
                for future in as_completed(futures):
                    indices, values = future.result()
                    null[indices] = values
                    completed += len(indices)
                    pbar.update(len(indices))
                    logger.debug(f"Completed permutation rounds {indices[0]}-{indices[-1]}")

                    if completed < nperm and cancel_event is not None and cancel_event.is_set():
                        logger.warning(f"Permutations cancelled after {completed} of {nperm} rounds")
                        raise PermutationCancelledError(completed, nperm)
        except Exception:
            executor.shutdown(wait=False, cancel_futures=True)
            raise


def build_null(
    abundance: pl.DataFrame,
    metadata: pl.DataFrame,
    group_column: str,
    pathways: Mapping[str, Sequence[str]],
    rank_method: str,
    nperm: int,
    seed: int,
    *,
    weight_exponent: float = 1.0,
    groups: Optional[Sequence[str]] = None,
    n_workers: int = 1,
    chunk_size: Optional[int] = None,
    cancel_event=None,
    progress: bool = False,
    sample_column: str = 'sample',
    feature_column: str = 'feature_id',
) -> Dict[str, np.ndarray]:
    """
    Build per-pathway null distributions by permuting group labels.

    Args:
        abundance: Feature x sample table
        metadata: Sample metadata
        group_column: Metadata column with exactly two groups
        pathways: Pathway id mapped to member feature ids
        rank_method: Rank metric name
        nperm: Number of permutation rounds (at least 1)
        seed: Seed of the permutation generator
        weight_exponent: Exponent applied to |score| for hits
        groups: Optional (test, reference) labels
        n_workers: Worker processes; 1 runs in-process
        chunk_size: Rounds per worker task
        cancel_event: Object with is_set(), e.g. threading.Event
        progress: Show a progress bar
        sample_column: Metadata column holding sample ids
        feature_column: Abundance column holding feature ids

    Returns:
        Pathway id mapped to an array of nperm null scores in permutation order
    """
    if nperm < 1:
        raise InsufficientPermutationsError(f"nperm must be at least 1, got {nperm}")

    prepared = prepare_inputs(
        abundance, metadata, group_column,
        groups=groups, sample_column=sample_column, feature_column=feature_column,
    )
    return null_from_prepared(
        prepared, pathways, rank_method, nperm, seed,
        weight_exponent=weight_exponent,
        n_workers=n_workers,
        chunk_size=chunk_size,
        cancel_event=cancel_event,
        progress=progress,
    )
