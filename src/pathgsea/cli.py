#!/usr/bin/env python3
"""
Command line interface for the pathway enrichment pipeline.
"""

import argparse
import logging
import sys

from pathgsea.config import P_ADJUST_METHODS, RANK_METHODS, PipelineConfig
from pathgsea.errors import GSEAError
from pathgsea.pipeline import GSEAPipeline, save_results
from pathgsea.utils import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run pathway set enrichment analysis and compare it with DAA results"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--log-dir",
        type=str,
        help="Directory for pipeline.log"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--rank-method",
        choices=RANK_METHODS,
        help="Override rank metric"
    )
    analysis_group.add_argument(
        "--p-adjust-method",
        choices=list(P_ADJUST_METHODS),
        help="Override multiple-testing correction"
    )
    analysis_group.add_argument(
        "--nperm",
        type=int,
        help="Override number of permutations"
    )
    analysis_group.add_argument(
        "--seed",
        type=int,
        help="Override permutation seed"
    )
    analysis_group.add_argument(
        "--num-workers",
        type=int,
        help="Override number of worker processes for permutations"
    )
    analysis_group.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress bar during permutations"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point for the command line interface."""
    args = parse_args(argv)
    setup_logging(args.log_dir, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = PipelineConfig(args.config_file)
        analysis = config.analysis
        overrides = {
            'rank_method': args.rank_method,
            'p_adjust_method': args.p_adjust_method,
            'nperm': args.nperm,
            'seed': args.seed,
            'n_workers': args.num_workers,
            'progress': True if args.progress else None,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            analysis = analysis.replace(**overrides)

        pipeline = GSEAPipeline(config, analysis=analysis)
        output = pipeline.run(save=False)
        output_dir = args.output_dir or pipeline.config.get_output_path()
        save_results(output.run, output_dir, annotated=output.annotated, comparison=output.comparison)
    except (GSEAError, ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1

    logger.info(f"Results written to {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
