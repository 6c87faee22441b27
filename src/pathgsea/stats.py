"""
Statistical core of the enrichment analysis: rank metrics, running-sum
enrichment scores, normalisation and multiple-testing correction.
"""

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

import numba as nb
import numpy as np
import polars as pl
from statsmodels.stats.multitest import multipletests

from pathgsea.config import P_ADJUST_METHODS, RANK_METHODS
from pathgsea.data import membership_matrix, prepare_inputs
from pathgsea.errors import InsufficientPermutationsError

logger = logging.getLogger(__name__)

# Standard deviations are floored at this fraction of |mean| (or this value when the mean is 0)
_SD_FLOOR = 0.2

# Keeps log2 ratios finite for all-zero groups
_LOG_EPSILON = 1e-10


#  Core numba-optimised functions for inner loops

@nb.njit
def _running_sum(scores, hits, weight):
    """
    Weighted running sum over a ranked list.

    Args:
        scores: Ranked scores, highest first
        hits: Boolean array marking pathway members in ranked order
        weight: Exponent applied to |score| for hits

    Returns:
        Array with the running sum after each position
    """
    n = len(scores)
    curve = np.zeros(n)

    n_hits = 0
    norm = 0.0
    for i in range(n):
        if hits[i]:
            n_hits += 1
            norm += abs(scores[i]) ** weight
    if n_hits == 0:
        return curve

    # All member scores zero: fall back to equal weights
    uniform = norm == 0.0
    if uniform:
        norm = float(n_hits)

    # Without any non-member every position counts as background
    full = n_hits == n
    if full:
        miss_step = 1.0 / n
    else:
        miss_step = 1.0 / (n - n_hits)

    total = 0.0
    for i in range(n):
        if hits[i]:
            if uniform:
                total += 1.0 / norm
            else:
                total += abs(scores[i]) ** weight / norm
        if full or not hits[i]:
            total -= miss_step
        curve[i] = total
    return curve


@nb.njit
def _peak(curve):
    """Signed maximum deviation of a running sum and its position."""
    max_i = 0
    min_i = 0
    for i in range(len(curve)):
        if curve[i] > curve[max_i]:
            max_i = i
        if curve[i] < curve[min_i]:
            min_i = i
    if curve[max_i] >= -curve[min_i]:
        return curve[max_i], max_i
    return curve[min_i], min_i


@nb.njit
def _enrichment_batch(sorted_scores, order, membership, weight):
    """
    Enrichment scores of every pathway against one ranking.

    Args:
        sorted_scores: Scores sorted descending
        order: Base feature index at each ranked position
        membership: Boolean (n_pathways, n_features) matrix in base feature order
        weight: Exponent applied to |score| for hits

    Returns:
        Tuple of (enrichment scores, peak positions)
    """
    n_pathways = membership.shape[0]
    n = len(order)
    es = np.zeros(n_pathways)
    peaks = np.zeros(n_pathways, dtype=np.int64)
    hits = np.zeros(n, dtype=np.bool_)

    for p in range(n_pathways):
        for i in range(n):
            hits[i] = membership[p, order[i]]
        curve = _running_sum(sorted_scores, hits, weight)
        value, position = _peak(curve)
        es[p] = value
        peaks[p] = position
    return es, peaks


@nb.njit
def _count_at_least(observed, null_scores):
    """Count how many null scores are greater than or equal to the observed score."""
    count = 0
    for i in range(len(null_scores)):
        if null_scores[i] >= observed:
            count += 1
    return count


@dataclass(frozen=True)
class RankedList:
    """Features ordered by descending score, ties broken by feature id."""

    feature_ids: Tuple[str, ...]
    scores: np.ndarray

    def __len__(self) -> int:
        return len(self.feature_ids)

    def to_frame(self) -> pl.DataFrame:
        """Return the ranking as a table with 1-based ranks."""
        return pl.DataFrame({
            'feature_id': list(self.feature_ids),
            'score': self.scores,
            'rank': np.arange(1, len(self.feature_ids) + 1),
        })


@dataclass(frozen=True)
class EnrichmentScore:
    """Observed enrichment of one pathway before normalisation."""

    pathway_id: str
    es: float
    size: int
    leading_edge: Tuple[str, ...]


@dataclass(frozen=True)
class GSEAResult:
    """Final enrichment statistics of one tested pathway."""

    pathway_id: str
    es: float
    nes: float
    p_value: float
    p_adjust: float
    size: int
    leading_edge: Tuple[str, ...]


def compute_rank_scores(matrix: np.ndarray, is_test: np.ndarray, method: str) -> np.ndarray:
    """
    Score every feature by the contrast between two groups of samples.

    Args:
        matrix: Feature x sample abundance values
        is_test: Boolean mask of samples in the test group
        method: One of signal2noise, t_test, diff_abundance, log2_ratio

    Returns:
        One score per feature; positive means higher in the test group
    """
    if method not in RANK_METHODS:
        raise ValueError(f"Unknown rank method: {method}")

    mean_a, sd_a, n_a = _group_stats(matrix[:, is_test])
    mean_b, sd_b, n_b = _group_stats(matrix[:, ~is_test])
    diff = mean_a - mean_b

    if method == 'signal2noise':
        scores = diff / (sd_a + sd_b)
    elif method == 't_test':
        scores = diff / np.sqrt(sd_a ** 2 / n_a + sd_b ** 2 / n_b)
    elif method == 'diff_abundance':
        scores = diff
    else:
        scores = np.log2((mean_a + _LOG_EPSILON) / (mean_b + _LOG_EPSILON))

    # Equal means are no contrast, whatever the spread
    return np.where(diff == 0, 0.0, scores)


def _group_stats(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray, int]:
    """Per-feature mean and floored standard deviation of one group."""
    n = values.shape[1]
    mean = values.mean(axis=1)
    if n > 1:
        sd = values.std(axis=1, ddof=1)
    else:
        sd = np.zeros(values.shape[0])
    sd = np.maximum(sd, _SD_FLOOR * np.abs(mean))
    sd = np.where(sd == 0, _SD_FLOOR, sd)
    return mean, sd, n


def rank_order(scores: np.ndarray) -> np.ndarray:
    """Indices sorting scores descending; stable, so ties keep feature order."""
    return np.argsort(-scores, kind='stable')


def ranked_list_from_scores(feature_ids: Sequence[str], scores: np.ndarray) -> RankedList:
    """
    Build a RankedList from per-feature scores.

    Args:
        feature_ids: Feature identifiers, sorted ascending
        scores: Score of each feature

    Returns:
        RankedList sorted by descending score
    """
    order = rank_order(scores)
    return RankedList(
        feature_ids=tuple(feature_ids[i] for i in order),
        scores=scores[order],
    )


def rank(
    abundance: pl.DataFrame,
    metadata: pl.DataFrame,
    group_column: str,
    method: str = 'signal2noise',
    *,
    groups: Optional[Sequence[str]] = None,
    sample_column: str = 'sample',
    feature_column: str = 'feature_id',
) -> RankedList:
    """
    Rank features by a two-group contrast metric.

    Args:
        abundance: Feature x sample table
        metadata: Sample metadata
        group_column: Metadata column with exactly two groups
        method: Rank metric name
        groups: Optional (test, reference) labels
        sample_column: Metadata column holding sample ids
        feature_column: Abundance column holding feature ids

    Returns:
        RankedList for the observed group labels
    """
    if method not in RANK_METHODS:
        raise ValueError(f"Unknown rank method: {method}")

    prepared = prepare_inputs(
        abundance, metadata, group_column,
        groups=groups, sample_column=sample_column, feature_column=feature_column,
    )
    scores = compute_rank_scores(prepared.matrix, prepared.is_test, method)
    return ranked_list_from_scores(prepared.feature_ids, scores)


def _hit_mask(ranked_list: RankedList, pathway_members: Iterable[str]) -> np.ndarray:
    members = set(pathway_members)
    return np.fromiter(
        (f in members for f in ranked_list.feature_ids),
        dtype=np.bool_,
        count=len(ranked_list),
    )


def _leading_edge(feature_ids: Sequence[str], hits: np.ndarray, es: float, peak: int) -> Tuple[str, ...]:
    """Members before the peak for positive scores, after the trough for negative ones."""
    if es > 0:
        positions = range(0, peak + 1)
    elif es < 0:
        positions = range(peak, len(feature_ids))
    else:
        return ()
    return tuple(feature_ids[i] for i in positions if hits[i])


def running_sum(
    ranked_list: RankedList,
    pathway_members: Iterable[str],
    weight_exponent: float = 1.0,
) -> np.ndarray:
    """
    Running-sum curve of a pathway along a ranked list.

    Args:
        ranked_list: Ranked features
        pathway_members: Member feature ids; ids not in the list are ignored
        weight_exponent: Exponent applied to |score| for hits

    Returns:
        Array with the running sum after each ranked position
    """
    hits = _hit_mask(ranked_list, pathway_members)
    return _running_sum(np.asarray(ranked_list.scores, dtype=np.float64), hits, float(weight_exponent))


def enrichment_score(
    ranked_list: RankedList,
    pathway_members: Iterable[str],
    weight_exponent: float = 1.0,
) -> Tuple[float, Tuple[str, ...]]:
    """
    Compute the enrichment score of one pathway.

    Args:
        ranked_list: Ranked features
        pathway_members: Member feature ids
        weight_exponent: 1 for standard weighted GSEA, 0 for the unweighted statistic

    Returns:
        Tuple of (signed enrichment score, leading-edge members in ranked order)
    """
    hits = _hit_mask(ranked_list, pathway_members)
    if not hits.any():
        return 0.0, ()

    curve = _running_sum(np.asarray(ranked_list.scores, dtype=np.float64), hits, float(weight_exponent))
    es, peak = _peak(curve)
    return float(es), _leading_edge(ranked_list.feature_ids, hits, es, peak)


def score_pathways(
    ranked_list: RankedList,
    pathways: Mapping[str, Sequence[str]],
    weight_exponent: float = 1.0,
) -> List[EnrichmentScore]:
    """
    Compute observed enrichment scores for a set of testable pathways.

    Uses the same batch kernel as the permutation engine so observed and
    null scores are computed identically.

    Args:
        ranked_list: Ranked features
        pathways: Pathway id mapped to member feature ids
        weight_exponent: Exponent applied to |score| for hits

    Returns:
        One EnrichmentScore per pathway, in the mapping's order
    """
    membership = membership_matrix(pathways, ranked_list.feature_ids)
    order = np.arange(len(ranked_list), dtype=np.int64)
    es, peaks = _enrichment_batch(
        np.asarray(ranked_list.scores, dtype=np.float64), order, membership, float(weight_exponent)
    )

    results = []
    for row, pathway_id in enumerate(pathways):
        hits = membership[row]
        results.append(EnrichmentScore(
            pathway_id=pathway_id,
            es=float(es[row]),
            size=int(hits.sum()),
            leading_edge=_leading_edge(ranked_list.feature_ids, hits, es[row], peaks[row]),
        ))
    return results


def _normalize(es: float, null: np.ndarray, nperm: int) -> Tuple[float, float]:
    """Return (NES, empirical p-value) of one observed score against its null."""
    if es == 0:
        return 0.0, 1.0

    if es > 0:
        same_sign = null[null > 0]
        extreme = _count_at_least(es, same_sign)
    else:
        same_sign = null[null < 0]
        extreme = _count_at_least(-es, -same_sign)

    # Direction is indeterminate without a same-signed null
    if len(same_sign) == 0:
        return es, 1.0

    nes = es / np.mean(np.abs(same_sign))
    p_value = (extreme + 1) / (nperm + 1)
    return float(nes), float(p_value)


def adjust_pvalues(p_values: Sequence[float], method: str = 'BH') -> np.ndarray:
    """
    Correct p-values for multiple testing.

    Args:
        p_values: Raw p-values
        method: One of BH, BY, Bonferroni, none

    Returns:
        Adjusted p-values in the input order, capped at 1
    """
    if method not in P_ADJUST_METHODS:
        raise ValueError(f"Unknown p-value adjustment method: {method}")

    p_values = np.asarray(p_values, dtype=np.float64)
    if len(p_values) == 0:
        raise ValueError("Input p-values array cannot be empty")

    statsmodels_method = P_ADJUST_METHODS[method]
    if statsmodels_method is None:
        return p_values.copy()

    _, pvals_corrected, _, _ = multipletests(p_values, method=statsmodels_method)
    return np.minimum(pvals_corrected, 1.0)


def normalize_and_test(
    real_results: Sequence[EnrichmentScore],
    null_distributions: Mapping[str, Sequence[float]],
    p_adjust_method: str = 'BH',
) -> List[GSEAResult]:
    """
    Normalise enrichment scores and assess their significance.

    Args:
        real_results: Observed enrichment scores
        null_distributions: Pathway id mapped to its permutation null scores
        p_adjust_method: Multiple-testing correction (BH, BY, Bonferroni, none)

    Returns:
        GSEAResult list sorted by adjusted p-value, |NES| descending, then id
    """
    if not real_results:
        raise ValueError("No enrichment scores to test")

    missing = [r.pathway_id for r in real_results if r.pathway_id not in null_distributions]
    if missing:
        raise ValueError(f"No null distribution for pathway(s): {', '.join(missing[:5])}")

    lengths = {len(null_distributions[r.pathway_id]) for r in real_results}
    if len(lengths) != 1:
        raise ValueError("Null distributions differ in length")
    nperm = lengths.pop()
    if nperm < 1:
        raise InsufficientPermutationsError("Null distributions are empty")

    normalised = [
        _normalize(r.es, np.asarray(null_distributions[r.pathway_id], dtype=np.float64), nperm)
        for r in real_results
    ]
    p_adjust = adjust_pvalues([p for _, p in normalised], p_adjust_method)

    results = [
        GSEAResult(
            pathway_id=r.pathway_id,
            es=r.es,
            nes=nes,
            p_value=p_value,
            p_adjust=float(p_adj),
            size=r.size,
            leading_edge=r.leading_edge,
        )
        for r, (nes, p_value), p_adj in zip(real_results, normalised, p_adjust)
    ]
    results.sort(key=lambda r: (r.p_adjust, -abs(r.nes), r.pathway_id))

    logger.info(f"Tested {len(results)} pathways with {nperm} permutations")
    return results


def results_to_frame(results: Sequence[GSEAResult]) -> pl.DataFrame:
    """
    Convert enrichment results to a table with a stable column contract.

    Args:
        results: GSEAResult sequence

    Returns:
        DataFrame with pathway_id, es, nes, p_value, p_adjust, size, leading_edge
    """
    schema = {
        'pathway_id': pl.Utf8,
        'es': pl.Float64,
        'nes': pl.Float64,
        'p_value': pl.Float64,
        'p_adjust': pl.Float64,
        'size': pl.Int64,
        'leading_edge': pl.List(pl.Utf8),
    }
    rows = [
        {
            'pathway_id': r.pathway_id,
            'es': r.es,
            'nes': r.nes,
            'p_value': r.p_value,
            'p_adjust': r.p_adjust,
            'size': r.size,
            'leading_edge': list(r.leading_edge),
        }
        for r in results
    ]
    return pl.DataFrame(rows, schema=schema)
