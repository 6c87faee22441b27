"""Main pipeline implementation for pathway set enrichment analysis."""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import polars as pl
import tomli_w

from pathgsea.annotate import AnnotatedResult, annotate, annotations_to_frame
from pathgsea.compare import ComparisonResult, compare
from pathgsea.config import GSEAConfig, PipelineConfig
from pathgsea.data import (
    filter_pathways,
    load_abundance,
    load_annotations,
    load_daa_results,
    load_metadata,
    load_pathways,
    prepare_inputs,
)
from pathgsea.permutation import null_from_prepared
from pathgsea.stats import (
    GSEAResult,
    RankedList,
    compute_rank_scores,
    normalize_and_test,
    ranked_list_from_scores,
    results_to_frame,
    score_pathways,
)
from pathgsea.utils import ensure_dir

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GSEARun:
    """Everything produced by one enrichment analysis."""

    config: GSEAConfig
    groups: Tuple[str, str]
    ranked_list: RankedList
    results: List[GSEAResult]
    null_distributions: Dict[str, np.ndarray]

    def to_frame(self) -> pl.DataFrame:
        return results_to_frame(self.results)


@dataclass(frozen=True)
class PipelineOutput:
    """Values returned by GSEAPipeline.run."""

    run: GSEARun
    annotated: Optional[List[AnnotatedResult]] = None
    comparison: Optional[ComparisonResult] = None


def run_gsea(
    abundance: pl.DataFrame,
    metadata: pl.DataFrame,
    pathways: Mapping[str, Iterable[str]],
    config: Optional[GSEAConfig] = None,
    cancel_event=None,
) -> GSEARun:
    """
    Run a complete enrichment analysis.

    All inputs are validated before any score is computed, so a call either
    raises on the first invalid input or returns a fully populated result.

    Args:
        abundance: Feature x sample table
        metadata: Sample metadata with the grouping column
        pathways: Pathway id mapped to member feature ids
        config: Analysis options; defaults to GSEAConfig()
        cancel_event: Object with is_set() to stop the permutation loop

    Returns:
        GSEARun holding the ranking, the null distributions and the results
    """
    config = config or GSEAConfig()
    start_time = time.time()

    prepared = prepare_inputs(
        abundance, metadata, config.group_column,
        groups=config.groups,
        sample_column=config.sample_column,
        feature_column=config.feature_column,
    )
    testable = filter_pathways(pathways, prepared.feature_ids, config.min_size, config.max_size)

    logger.info(
        f"Ranking {len(prepared.feature_ids)} features by {config.rank_method} "
        f"({prepared.groups[0]} vs {prepared.groups[1]})"
    )
    scores = compute_rank_scores(prepared.matrix, prepared.is_test, config.rank_method)
    ranked_list = ranked_list_from_scores(prepared.feature_ids, scores)
    observed = score_pathways(ranked_list, testable, config.weight_exponent)

    null = null_from_prepared(
        prepared, testable, config.rank_method, config.nperm, config.seed,
        weight_exponent=config.weight_exponent,
        n_workers=config.n_workers,
        chunk_size=config.chunk_size,
        cancel_event=cancel_event,
        progress=config.progress,
    )
    results = normalize_and_test(observed, null, config.p_adjust_method)

    n_significant = sum(r.p_adjust <= config.p_threshold for r in results)
    logger.info(f"{n_significant} of {len(results)} pathways with p_adjust <= {config.p_threshold}")
    logger.info(f"Enrichment analysis completed in {time.time() - start_time:.2f} seconds")
    return GSEARun(
        config=config,
        groups=prepared.groups,
        ranked_list=ranked_list,
        results=results,
        null_distributions=null,
    )


def save_results(
    run: GSEARun,
    output_dir: Union[str, Path],
    annotated: Optional[List[AnnotatedResult]] = None,
    comparison: Optional[ComparisonResult] = None,
) -> Dict[str, Path]:
    """Save analysis results.

    Args:
        run: Result of run_gsea
        output_dir: Directory to write into
        annotated: Optional annotated version of run.results
        comparison: Optional comparison against DAA results

    Returns:
        Mapping of output name to the file written
    """
    output_path = ensure_dir(Path(output_dir))
    data_path = ensure_dir(output_path / 'data')
    written = {}

    table = annotations_to_frame(annotated) if annotated is not None else run.to_frame()
    results_file = data_path / 'gsea_results.tsv'
    table.with_columns(pl.col('leading_edge').list.join(';')).write_csv(results_file, separator='\t')
    written['results'] = results_file
    logger.info(f"Saved {table.height} pathway results to {results_file}")

    if comparison is not None:
        comparison_file = data_path / 'comparison.tsv'
        comparison.records.write_csv(comparison_file, separator='\t')
        written['comparison'] = comparison_file
        logger.info(f"Saved comparison records to {comparison_file}")

    summary = {
        'groups': list(run.groups),
        'rank_method': run.config.rank_method,
        'nperm': run.config.nperm,
        'seed': run.config.seed,
        'pathways_tested': len(run.results),
        'pathways_significant': sum(r.p_adjust <= run.config.p_threshold for r in run.results),
        'p_threshold': run.config.p_threshold,
    }
    if comparison is not None:
        summary['comparison'] = dict(comparison.counts)
    summary_file = output_path / 'summary.json'
    with open(summary_file, 'w') as f:
        json.dump(summary, f, indent=2)
    written['summary'] = summary_file

    config_file = output_path / 'config.toml'
    with open(config_file, 'wb') as f:
        tomli_w.dump({'analysis': run.config.to_dict()}, f)
    written['config'] = config_file

    return written


class GSEAPipeline:
    """Runs the analysis described by a TOML configuration file."""

    def __init__(self, config: Union[str, Path, PipelineConfig], analysis: Optional[GSEAConfig] = None):
        """Initialise the pipeline with a configuration.

        Args:
            config: Path to the TOML configuration file, or an already loaded PipelineConfig
            analysis: Optional options replacing the file's analysis section
        """
        self.config = config if isinstance(config, PipelineConfig) else PipelineConfig(config)
        self.analysis = analysis or self.config.analysis
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if file_key.endswith('_file') and not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        inputs = self.config.input_files
        self.abundance = load_abundance(inputs['abundance_file'], feature_column=self.analysis.feature_column)
        self.metadata = load_metadata(inputs['metadata_file'], sample_column=self.analysis.sample_column)
        self.pathways = load_pathways(inputs['pathway_file'])

        self.annotations = load_annotations(inputs['annotation_file']) if 'annotation_file' in inputs else None
        if 'daa_file' in inputs:
            self.daa_results = load_daa_results(inputs['daa_file'], id_column=inputs.get('daa_id_column', 'pathway_id'))
        else:
            self.daa_results = None

        logger.info(f"Loaded {self.abundance.height} features x {len(self.abundance.columns) - 1} samples")
        logger.info(f"Loaded {self.metadata.height} metadata rows and {len(self.pathways)} pathways")
        if self.daa_results is not None:
            logger.info(f"Loaded {self.daa_results.height} DAA results")

    def run(self, cancel_event=None, save: bool = True) -> PipelineOutput:
        """Run the enrichment analysis and the optional annotation and comparison steps.

        Args:
            cancel_event: Object with is_set() to stop the permutation loop
            save: Write results to the configured output directory

        Returns:
            PipelineOutput with the run and any annotation or comparison
        """
        logger.info("Starting pathway enrichment analysis pipeline")
        run = run_gsea(self.abundance, self.metadata, self.pathways, self.analysis, cancel_event=cancel_event)

        annotated = None
        if self.annotations is not None:
            annotated = annotate(run.results, self.annotations)

        comparison = None
        if self.daa_results is not None:
            comparison = compare(
                annotated if annotated is not None else run.results,
                self.daa_results,
                p_threshold=self.analysis.p_threshold,
                mode=self.analysis.comparison_mode,
            )

        if save:
            save_results(run, self.config.get_output_path(), annotated=annotated, comparison=comparison)
        return PipelineOutput(run=run, annotated=annotated, comparison=comparison)
