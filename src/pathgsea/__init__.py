"""
Pathway Set Enrichment Analysis
===============================

Permutation-based GSEA on feature abundance tables, with annotation and
reconciliation against differential abundance results.
"""

from .config import GSEAConfig, PipelineConfig
from .errors import (
    GSEAError,
    InvalidGroupError,
    EmptyPathwaySetError,
    InsufficientPermutationsError,
    MissingSampleError,
    PermutationCancelledError,
)
from .stats import (
    RankedList,
    EnrichmentScore,
    GSEAResult,
    rank,
    enrichment_score,
    running_sum,
    score_pathways,
    normalize_and_test,
    adjust_pvalues,
    results_to_frame,
)
from .permutation import build_null
from .annotate import AnnotatedResult, annotate, annotations_to_frame
from .compare import DAAResult, ComparisonResult, compare, daa_results_from_frame
from .data import (
    filter_pathways,
    load_abundance,
    load_metadata,
    load_pathways,
    load_annotations,
    load_daa_results,
)
from .pipeline import GSEAPipeline, GSEARun, run_gsea, save_results
from .utils import setup_logging, ensure_dir

__version__ = "0.1.0"

__all__ = [
    "GSEAConfig",
    "PipelineConfig",
    "GSEAError",
    "InvalidGroupError",
    "EmptyPathwaySetError",
    "InsufficientPermutationsError",
    "MissingSampleError",
    "PermutationCancelledError",
    "RankedList",
    "EnrichmentScore",
    "GSEAResult",
    "rank",
    "enrichment_score",
    "running_sum",
    "score_pathways",
    "normalize_and_test",
    "adjust_pvalues",
    "results_to_frame",
    "build_null",
    "AnnotatedResult",
    "annotate",
    "annotations_to_frame",
    "DAAResult",
    "ComparisonResult",
    "compare",
    "daa_results_from_frame",
    "filter_pathways",
    "load_abundance",
    "load_metadata",
    "load_pathways",
    "load_annotations",
    "load_daa_results",
    "GSEAPipeline",
    "GSEARun",
    "run_gsea",
    "save_results",
    "setup_logging",
    "ensure_dir",
]
