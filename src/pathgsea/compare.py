"""
Reconciliation of GSEA results with differential abundance results.
"""

from dataclasses import dataclass
import numbers
from typing import Any, Dict, FrozenSet, List, Optional, Union
import logging

import polars as pl

from pathgsea.config import COMPARISON_MODES

logger = logging.getLogger(__name__)

BUCKETS = ('both', 'gsea_only', 'daa_only', 'neither')

_UP_TOKENS = {'up', 'increased', 'increase', 'positive', 'enriched', '+'}
_DOWN_TOKENS = {'down', 'decreased', 'decrease', 'negative', 'depleted', '-'}


@dataclass(frozen=True)
class DAAResult:
    """One row of an externally computed differential abundance analysis."""

    pathway_id: str
    p_value: Optional[float]
    p_adjust: float
    effect_direction: Union[str, float, None] = None


@dataclass(frozen=True)
class ComparisonResult:
    """Agreement between GSEA and DAA significance calls.

    Attributes:
        classification: Pathway id mapped to its bucket
        counts: Number of pathways in each of the four buckets
        records: Joined table, one row per pathway id in either input
        mode: venn or upset
        sets: For venn, the significant ids of each analysis; for upset,
            membership combinations of the four sets with their counts
    """

    classification: Dict[str, str]
    counts: Dict[str, int]
    records: pl.DataFrame
    mode: str
    sets: Union[Dict[str, FrozenSet[str]], pl.DataFrame]


def _direction_sign(value: Any) -> Optional[int]:
    """Map a numeric or textual effect direction to +1, -1 or None."""
    if value is None:
        return None
    if isinstance(value, numbers.Real):
        if value > 0:
            return 1
        if value < 0:
            return -1
        return None
    token = str(value).strip().lower()
    if token in _UP_TOKENS:
        return 1
    if token in _DOWN_TOKENS:
        return -1
    return None


def daa_results_from_frame(frame: pl.DataFrame, id_column: str = 'pathway_id') -> List[DAAResult]:
    """
    Convert a DAA table into DAAResult records.

    Args:
        frame: Table with an identifier column, p_adjust and optionally
            p_value and effect_direction
        id_column: Column holding the pathway/feature identifier (e.g. feature)

    Returns:
        DAAResult list in table order
    """
    missing = [c for c in (id_column, 'p_adjust') if c not in frame.columns]
    if missing:
        raise ValueError(f"DAA table is missing columns: {', '.join(missing)}")

    results = []
    for row in frame.iter_rows(named=True):
        results.append(DAAResult(
            pathway_id=str(row[id_column]),
            p_value=row.get('p_value'),
            p_adjust=row['p_adjust'],
            effect_direction=row.get('effect_direction'),
        ))
    return results


def _gsea_frame(gsea_results) -> pl.DataFrame:
    if isinstance(gsea_results, pl.DataFrame):
        rows = gsea_results.to_dicts()
    else:
        rows = [
            {'pathway_id': r.pathway_id, 'nes': getattr(r, 'nes', None),
             'p_value': getattr(r, 'p_value', None), 'p_adjust': r.p_adjust}
            for r in gsea_results
        ]
    if rows and ('pathway_id' not in rows[0] or 'p_adjust' not in rows[0]):
        raise ValueError("GSEA results need pathway_id and p_adjust")

    return pl.DataFrame(
        {
            'pathway_id': [str(r['pathway_id']) for r in rows],
            'gsea_nes': [r.get('nes') for r in rows],
            'gsea_p_value': [r.get('p_value') for r in rows],
            'gsea_p_adjust': [r['p_adjust'] for r in rows],
            'gsea_tested': [True] * len(rows),
        },
        schema={
            'pathway_id': pl.Utf8,
            'gsea_nes': pl.Float64,
            'gsea_p_value': pl.Float64,
            'gsea_p_adjust': pl.Float64,
            'gsea_tested': pl.Boolean,
        },
    )


def _daa_frame(daa_results) -> pl.DataFrame:
    if isinstance(daa_results, pl.DataFrame):
        daa_results = daa_results_from_frame(daa_results)

    return pl.DataFrame(
        {
            'pathway_id': [r.pathway_id for r in daa_results],
            'daa_p_value': [r.p_value for r in daa_results],
            'daa_p_adjust': [r.p_adjust for r in daa_results],
            'daa_effect_direction': [
                None if r.effect_direction is None else str(r.effect_direction) for r in daa_results
            ],
            'daa_direction': [_direction_sign(r.effect_direction) for r in daa_results],
            'daa_tested': [True] * len(daa_results),
        },
        schema={
            'pathway_id': pl.Utf8,
            'daa_p_value': pl.Float64,
            'daa_p_adjust': pl.Float64,
            'daa_effect_direction': pl.Utf8,
            'daa_direction': pl.Int8,
            'daa_tested': pl.Boolean,
        },
    )


def _check_unique(frame: pl.DataFrame, source: str) -> None:
    duplicated = frame.filter(pl.col('pathway_id').is_duplicated())['pathway_id'].unique().sort().to_list()
    if duplicated:
        raise ValueError(f"Duplicate pathway ids in {source} results: {', '.join(duplicated[:5])}")


def compare(
    gsea_results,
    daa_results,
    p_threshold: float = 0.05,
    mode: str = 'venn',
) -> ComparisonResult:
    """
    Classify pathways by significance in GSEA and in DAA.

    The tables are joined on pathway_id with an explicit full outer join.
    A pathway is significant in a table when its p_adjust is at most
    p_threshold; a pathway absent from a table is not significant there.

    Args:
        gsea_results: GSEAResult/AnnotatedResult sequence or DataFrame
        daa_results: DAAResult sequence or DataFrame with pathway_id
        p_threshold: Adjusted p-value cutoff applied to both tables
        mode: venn (pairwise sets) or upset (multi-set summary)

    Returns:
        ComparisonResult with classification, bucket counts and records
    """
    if not 0 < p_threshold <= 1:
        raise ValueError("p_threshold must be in (0, 1]")
    if mode not in COMPARISON_MODES:
        raise ValueError(f"Unknown comparison mode: {mode}. Expected one of: {', '.join(COMPARISON_MODES)}")

    gsea = _gsea_frame(gsea_results)
    daa = _daa_frame(daa_results)
    _check_unique(gsea, 'GSEA')
    _check_unique(daa, 'DAA')

    records = (
        gsea.join(daa, on='pathway_id', how='full', coalesce=True)
        .with_columns(
            pl.col('gsea_tested').fill_null(False),
            pl.col('daa_tested').fill_null(False),
            (pl.col('gsea_p_adjust') <= p_threshold).fill_null(False).alias('gsea_significant'),
            (pl.col('daa_p_adjust') <= p_threshold).fill_null(False).alias('daa_significant'),
        )
        .with_columns(
            pl.when(pl.col('gsea_significant') & pl.col('daa_significant')).then(pl.lit('both'))
            .when(pl.col('gsea_significant')).then(pl.lit('gsea_only'))
            .when(pl.col('daa_significant')).then(pl.lit('daa_only'))
            .otherwise(pl.lit('neither'))
            .alias('classification'),
            pl.when(
                pl.col('gsea_nes').is_not_null()
                & (pl.col('gsea_nes') != 0)
                & pl.col('daa_direction').is_not_null()
            )
            .then(pl.col('gsea_nes').sign().cast(pl.Int8) == pl.col('daa_direction'))
            .otherwise(None)
            .alias('direction_agreement'),
        )
        .sort('pathway_id')
    )

    overlap = records.filter(pl.col('gsea_tested') & pl.col('daa_tested')).height
    if overlap == 0 and gsea.height > 0 and daa.height > 0:
        logger.warning(
            "GSEA and DAA results share no pathway ids; check that both use the same "
            "identifier scheme (e.g. KEGG pathway ids on both sides)"
        )

    classification = dict(zip(records['pathway_id'].to_list(), records['classification'].to_list()))
    counts = {bucket: 0 for bucket in BUCKETS}
    for bucket in classification.values():
        counts[bucket] += 1

    if mode == 'venn':
        sets = {
            'GSEA': frozenset(records.filter(pl.col('gsea_significant'))['pathway_id'].to_list()),
            'DAA': frozenset(records.filter(pl.col('daa_significant'))['pathway_id'].to_list()),
        }
    else:
        set_columns = ['gsea_tested', 'daa_tested', 'gsea_significant', 'daa_significant']
        sets = (
            records.group_by(set_columns)
            .agg(pl.len().alias('count'))
            .sort(set_columns, descending=True)
        )

    logger.info(
        f"Compared {len(classification)} pathways at p_adjust <= {p_threshold}: "
        + ", ".join(f"{bucket}={counts[bucket]}" for bucket in BUCKETS)
    )

    return ComparisonResult(
        classification=classification,
        counts=counts,
        records=records,
        mode=mode,
        sets=sets,
    )
