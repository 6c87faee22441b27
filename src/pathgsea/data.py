"""
Input validation, alignment and loading for the enrichment pipeline.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np
import polars as pl

from pathgsea.errors import EmptyPathwaySetError, InvalidGroupError, MissingSampleError

logger = logging.getLogger(__name__)

DAA_REQUIRED_COLUMNS = ('pathway_id', 'p_value', 'p_adjust', 'effect_direction')


@dataclass(frozen=True)
class PreparedData:
    """Abundance matrix aligned with its group labels.

    Rows are sorted by feature id and columns by sample id, so everything
    computed from this value is independent of the caller's row and column
    order.
    """

    feature_ids: np.ndarray
    sample_ids: Tuple[str, ...]
    matrix: np.ndarray
    labels: np.ndarray
    groups: Tuple[str, str]

    @property
    def is_test(self) -> np.ndarray:
        """Boolean mask of samples belonging to the test group."""
        return self.labels == self.groups[0]


def prepare_inputs(
    abundance: pl.DataFrame,
    metadata: pl.DataFrame,
    group_column: str,
    groups: Optional[Sequence[str]] = None,
    sample_column: str = 'sample',
    feature_column: str = 'feature_id',
) -> PreparedData:
    """
    Validate the abundance matrix and metadata and align them by sample.

    Args:
        abundance: Feature x sample table with one identifier column
        metadata: Sample table with identifier and grouping columns
        group_column: Metadata column holding the group labels
        groups: Optional (test, reference) labels; other samples are dropped
        sample_column: Metadata column holding sample identifiers
        feature_column: Abundance column holding feature identifiers

    Returns:
        PreparedData with canonical row and column order
    """
    if feature_column not in abundance.columns:
        raise ValueError(f"Abundance table has no '{feature_column}' column")

    sample_ids = sorted(c for c in abundance.columns if c != feature_column)
    if not sample_ids:
        raise ValueError("Abundance table has no sample columns")

    non_numeric = [c for c in sample_ids if not abundance.schema[c].is_numeric()]
    if non_numeric:
        raise ValueError(f"Non-numeric sample columns in abundance table: {', '.join(non_numeric[:5])}")

    if abundance.height == 0:
        raise ValueError("Abundance table has no features")

    features = abundance[feature_column].cast(pl.Utf8)
    if features.null_count() > 0:
        raise ValueError("Abundance table has missing feature identifiers")
    if features.is_duplicated().any():
        duplicated = features.filter(features.is_duplicated()).unique().sort().to_list()
        raise ValueError(f"Duplicate feature identifiers: {', '.join(duplicated[:5])}")

    ordered = abundance.with_columns(features.alias(feature_column)).sort(feature_column)
    if ordered.select(sample_ids).null_count().sum_horizontal().item() > 0:
        raise ValueError("Abundance table contains missing values")

    matrix = ordered.select(sample_ids).to_numpy().astype(np.float64)
    if not np.isfinite(matrix).all():
        raise ValueError("Abundance table contains non-finite values")
    if (matrix < 0).any():
        raise ValueError("Abundance table contains negative values")

    labels = _sample_labels(metadata, sample_ids, group_column, sample_column)

    observed = sorted(set(labels))
    if groups is None:
        if len(observed) != 2:
            raise InvalidGroupError(
                f"Column '{group_column}' must define exactly 2 groups for a two-group "
                f"rank metric, found {len(observed)}: {', '.join(observed)}"
            )
        groups = (observed[0], observed[1])
    else:
        groups = tuple(str(g) for g in groups)
        absent = [g for g in groups if g not in observed]
        if absent:
            raise InvalidGroupError(
                f"Group(s) {', '.join(absent)} not present in column '{group_column}'. "
                f"Available groups: {', '.join(observed)}"
            )
        keep = np.isin(labels, groups)
        if not keep.all():
            logger.info(f"Dropping {int((~keep).sum())} samples outside groups {groups[0]} and {groups[1]}")
            matrix = matrix[:, keep]
            sample_ids = [s for s, k in zip(sample_ids, keep) if k]
            labels = labels[keep]

    feature_ids = np.array(ordered[feature_column].to_list(), dtype=object)
    logger.debug(
        f"Prepared {len(feature_ids)} features x {len(sample_ids)} samples "
        f"({groups[0]}: {int((labels == groups[0]).sum())}, {groups[1]}: {int((labels == groups[1]).sum())})"
    )

    return PreparedData(
        feature_ids=feature_ids,
        sample_ids=tuple(sample_ids),
        matrix=matrix,
        labels=labels,
        groups=(groups[0], groups[1]),
    )


def _sample_labels(
    metadata: pl.DataFrame,
    sample_ids: List[str],
    group_column: str,
    sample_column: str,
) -> np.ndarray:
    """Look up the group label of every abundance sample."""
    if sample_column not in metadata.columns:
        raise MissingSampleError(f"Metadata has no '{sample_column}' column")
    if group_column not in metadata.columns:
        raise InvalidGroupError(
            f"Grouping column '{group_column}' not found in metadata. "
            f"Available columns: {', '.join(metadata.columns)}"
        )

    meta = metadata.select(
        pl.col(sample_column).cast(pl.Utf8),
        pl.col(group_column),
    )
    if meta[sample_column].is_duplicated().any():
        raise ValueError("Metadata contains duplicate sample identifiers")

    lookup = dict(zip(meta[sample_column].to_list(), meta[group_column].to_list()))
    missing = [s for s in sample_ids if s not in lookup]
    if missing:
        raise MissingSampleError(
            f"Metadata lacks {len(missing)} sample(s) present in the abundance table: "
            f"{', '.join(missing[:5])}"
        )

    labels = [lookup[s] for s in sample_ids]
    unlabelled = [s for s, label in zip(sample_ids, labels) if label is None]
    if unlabelled:
        raise InvalidGroupError(
            f"Samples without a '{group_column}' label: {', '.join(unlabelled[:5])}"
        )

    return np.array([str(label) for label in labels], dtype=object)


def filter_pathways(
    pathways: Mapping[str, Iterable[str]],
    feature_ids: Iterable[str],
    min_size: int,
    max_size: int,
) -> Dict[str, Tuple[str, ...]]:
    """
    Restrict pathways to measured features and keep the testable ones.

    Args:
        pathways: Pathway id mapped to member feature ids
        feature_ids: Features present in the abundance matrix
        min_size: Smallest accepted number of measured members
        max_size: Largest accepted number of measured members

    Returns:
        Testable pathways (sorted by id) mapped to their sorted measured members
    """
    measured = set(feature_ids)
    testable = {}
    dropped = 0

    for pathway_id in sorted(pathways):
        members = tuple(sorted(set(pathways[pathway_id]) & measured))
        if min_size <= len(members) <= max_size:
            testable[pathway_id] = members
        else:
            dropped += 1
            logger.debug(f"Skipping pathway {pathway_id}: {len(members)} measured members")

    if not testable:
        raise EmptyPathwaySetError(
            f"None of the {len(pathways)} pathways has between {min_size} and {max_size} "
            "members in the abundance table"
        )

    if dropped:
        logger.info(f"Testing {len(testable)} pathways; {dropped} fell outside size bounds [{min_size}, {max_size}]")

    return testable


def membership_matrix(
    pathways: Mapping[str, Sequence[str]],
    feature_ids: Sequence[str],
) -> np.ndarray:
    """
    Build a boolean pathway x feature membership matrix.

    Args:
        pathways: Pathway id mapped to member feature ids (iteration order kept)
        feature_ids: Column order of the matrix

    Returns:
        Array of shape (n_pathways, n_features)
    """
    index = {feature: i for i, feature in enumerate(feature_ids)}
    membership = np.zeros((len(pathways), len(feature_ids)), dtype=np.bool_)
    for row, members in enumerate(pathways.values()):
        columns = [index[m] for m in members if m in index]
        membership[row, columns] = True
    return membership


def _header(file_path: Path) -> List[str]:
    """Column names from the first line of a tab-delimited file."""
    with open(file_path) as f:
        return f.readline().rstrip('\r\n').split('\t')


def _read_table(file_path: Path, text_columns: Iterable[str], **kwargs) -> pl.DataFrame:
    """Read a tab-delimited table, keeping the given columns as text.

    Identifier columns skip type inference so ids such as 001 or 00010
    keep their leading zeros.
    """
    header = _header(file_path)
    overrides = {c: pl.Utf8 for c in text_columns if c in header}
    return pl.read_csv(file_path, separator='\t', has_header=True, schema_overrides=overrides, **kwargs)


def load_abundance(file_path: Path, feature_column: str = 'feature_id') -> pl.DataFrame:
    """
    Load a tab-delimited abundance table.

    Args:
        file_path: Path to the table; the first column holds feature ids
        feature_column: Name given to the identifier column

    Returns:
        DataFrame with the identifier column and one column per sample
    """
    first = _header(file_path)[0]
    df = _read_table(file_path, [first], infer_schema_length=10000)
    if first != feature_column:
        df = df.rename({first: feature_column})
    return df


def load_metadata(file_path: Path, sample_column: str = 'sample') -> pl.DataFrame:
    """
    Load a tab-delimited sample metadata table.

    Args:
        file_path: Path to the table
        sample_column: Column holding sample ids; the first column is used if absent

    Returns:
        DataFrame with string sample identifiers
    """
    header = _header(file_path)
    id_column = sample_column if sample_column in header else header[0]
    df = _read_table(file_path, [id_column], infer_schema_length=10000)
    if id_column != sample_column:
        df = df.rename({id_column: sample_column})
    return df


def load_pathways(file_path: Path) -> Dict[str, frozenset]:
    """
    Load pathway membership from a GMT file or a two-column table.

    A file ending in .gmt holds one pathway per line
    (id, description, members...). Anything else is read as a
    tab-delimited table with pathway_id and feature_id columns.

    Args:
        file_path: Path to the membership file

    Returns:
        Pathway id mapped to a frozenset of member feature ids
    """
    file_path = Path(file_path)
    if file_path.suffix.lower() == '.gmt':
        pathways = {}
        with open(file_path) as f:
            for line in f:
                fields = line.rstrip('\n').split('\t')
                if len(fields) < 3:
                    continue
                members = frozenset(m for m in fields[2:] if m)
                pathways[fields[0]] = pathways.get(fields[0], frozenset()) | members
        return pathways

    df = _read_table(file_path, ['pathway_id', 'feature_id'])
    missing = [c for c in ('pathway_id', 'feature_id') if c not in df.columns]
    if missing:
        raise ValueError(f"Pathway table is missing columns: {', '.join(missing)}")

    grouped = (
        df.select('pathway_id', 'feature_id')
        .drop_nulls()
        .group_by('pathway_id')
        .agg(pl.col('feature_id'))
    )
    return {row['pathway_id']: frozenset(row['feature_id']) for row in grouped.iter_rows(named=True)}


def load_annotations(file_path: Path) -> pl.DataFrame:
    """
    Load a pathway id to name/description lookup table.

    Args:
        file_path: Tab-delimited file with pathway_id and pathway_name columns

    Returns:
        DataFrame with pathway_id, pathway_name and, if present, description
    """
    df = _read_table(file_path, ['pathway_id', 'pathway_name', 'description'])
    missing = [c for c in ('pathway_id', 'pathway_name') if c not in df.columns]
    if missing:
        raise ValueError(f"Annotation table is missing columns: {', '.join(missing)}")
    columns = ['pathway_id', 'pathway_name'] + (['description'] if 'description' in df.columns else [])
    return df.select(columns)


def load_daa_results(file_path: Path, id_column: str = 'pathway_id') -> pl.DataFrame:
    """
    Load a differential abundance result table.

    Args:
        file_path: Tab-delimited DAA output
        id_column: Column holding the pathway/feature identifier

    Returns:
        DataFrame with pathway_id, p_value, p_adjust and effect_direction
    """
    df = _read_table(file_path, [id_column], infer_schema_length=10000)
    if id_column != 'pathway_id':
        if id_column not in df.columns:
            raise ValueError(f"DAA table has no '{id_column}' column")
        df = df.drop([c for c in ['pathway_id'] if c in df.columns]).rename({id_column: 'pathway_id'})

    missing = [c for c in DAA_REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"DAA table is missing columns: {', '.join(missing)}")
    return df
