"""Attach pathway names and descriptions to enrichment results."""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import polars as pl

from pathgsea.stats import GSEAResult, results_to_frame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnotatedResult(GSEAResult):
    """GSEAResult with an optional display name and description."""

    pathway_name: Optional[str] = None
    description: Optional[str] = None

    @property
    def label(self) -> str:
        """Text to display for this pathway: its name, or its id when unnamed."""
        return self.pathway_name if self.pathway_name else self.pathway_id


def _lookup_table(
    id_to_name_lookup: Union[Mapping[str, str], pl.DataFrame],
) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
    """Normalise a lookup into pathway id -> (name, description)."""
    if isinstance(id_to_name_lookup, pl.DataFrame):
        missing = [c for c in ('pathway_id', 'pathway_name') if c not in id_to_name_lookup.columns]
        if missing:
            raise ValueError(f"Annotation table is missing columns: {', '.join(missing)}")

        has_description = 'description' in id_to_name_lookup.columns
        table = id_to_name_lookup.unique(subset='pathway_id', keep='first', maintain_order=True)
        return {
            str(row['pathway_id']): (row['pathway_name'], row['description'] if has_description else None)
            for row in table.iter_rows(named=True)
        }

    return {str(k): (v, None) for k, v in id_to_name_lookup.items()}


def annotate(
    results: Sequence[GSEAResult],
    id_to_name_lookup: Union[Mapping[str, str], pl.DataFrame],
) -> List[AnnotatedResult]:
    """
    Left-join enrichment results against a pathway name lookup.

    Every input row is kept and the order is preserved. Pathways missing
    from the lookup get pathway_name None; display code should fall back
    to the id (see AnnotatedResult.label).

    Args:
        results: Enrichment results
        id_to_name_lookup: Mapping id -> name, or a DataFrame with
            pathway_id, pathway_name and optionally description

    Returns:
        AnnotatedResult list in the order of the input
    """
    lookup = _lookup_table(id_to_name_lookup)

    annotated = []
    unresolved = 0
    for result in results:
        name, description = lookup.get(result.pathway_id, (None, None))
        if not name:
            name = None
            unresolved += 1
        fields = {f.name: getattr(result, f.name) for f in dataclasses.fields(GSEAResult)}
        annotated.append(AnnotatedResult(**fields, pathway_name=name, description=description or None))

    if unresolved:
        logger.info(f"{unresolved} of {len(annotated)} pathways have no name in the lookup; ids will be shown")
    return annotated


def annotations_to_frame(results: Sequence[AnnotatedResult]) -> pl.DataFrame:
    """
    Convert annotated results to a table for display.

    Args:
        results: AnnotatedResult sequence

    Returns:
        The results_to_frame columns plus pathway_name, description and label
    """
    return results_to_frame(results).with_columns(
        pl.Series('pathway_name', [r.pathway_name for r in results], dtype=pl.Utf8),
        pl.Series('description', [r.description for r in results], dtype=pl.Utf8),
        pl.Series('label', [r.label for r in results], dtype=pl.Utf8),
    )
