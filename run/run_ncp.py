#!/usr/bin/env python3
"""
Nonnegative CP decomposition of per-condition TOM matrices.

Reads one similarity matrix per condition, stacks them into a
genes x genes x conditions tensor, runs NCP-HALS (optionally with
several restarts) and writes factor_A/B/C, convergence.json and
restarts.csv to the output directory.

Either pass a YAML/JSON config with --config, or list the conditions
with repeated --condition LABEL=PATH. Command-line options override
the config file.
"""

import sys
import argparse
from dataclasses import replace
from pathlib import Path

# Add project root to path to allow importing tom_ncp
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tom_ncp.config import (
    INIT_METHODS,
    NCPConfig,
    PipelineConfig,
    load_pipeline_config,
)
from tom_ncp.pipeline import run_pipeline
from tom_ncp.utils import (
    get_logger,
    parse_condition,
    setup_logging,
    str2bool,
)

logger = get_logger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(
        description="Nonnegative CP (HALS) decomposition of TOM tensors"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML or JSON pipeline config",
    )
    parser.add_argument(
        "--condition",
        type=parse_condition,
        action="append",
        default=None,
        help="Condition matrix as LABEL=PATH (repeatable, order is kept)",
    )
    parser.add_argument(
        "--output_dir",
        type=Path,
        default=None,
        help="Directory for factor files and run records",
    )
    parser.add_argument("--rank", type=int, default=None, help="Number of components")
    parser.add_argument(
        "--max_iter",
        type=int,
        default=None,
        help="Maximum number of full sweeps",
    )
    parser.add_argument(
        "--tol",
        type=float,
        default=None,
        help="Tolerance on the relative error decrease",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument(
        "--n_restarts",
        type=int,
        default=None,
        help="Number of restarts (seeds seed, seed+1, ...)",
    )
    parser.add_argument(
        "--patience",
        type=int,
        default=None,
        help="Consecutive sweeps below tol before stopping",
    )
    parser.add_argument(
        "--init",
        type=str,
        default=None,
        choices=list(INIT_METHODS),
        help="Factor initialization",
    )
    parser.add_argument(
        "--n_jobs",
        type=int,
        default=None,
        help="Worker processes for restarts (-1 = all cores)",
    )
    parser.add_argument(
        "--header",
        type=str2bool,
        default=None,
        help="Write a header row in the factor files",
    )
    parser.add_argument(
        "--sep",
        type=str,
        default=None,
        help="Separator of the factor files",
    )
    parser.add_argument(
        "--input_sep",
        type=str,
        default=None,
        help="Separator of the input matrices (default: from the suffix)",
    )
    parser.add_argument(
        "--prefix",
        type=str,
        default=None,
        help="File name prefix of the factor files",
    )
    parser.add_argument(
        "--log_fn",
        type=str,
        default="",
        help="Path to save the log file",
    )
    parser.add_argument(
        "--log_level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )
    return parser.parse_args()


def build_config(args) -> PipelineConfig:
    """Config file (if any) with every command-line option applied on top."""
    overrides = dict(
        rank=args.rank,
        max_iter=args.max_iter,
        tol=args.tol,
        seed=args.seed,
        n_restarts=args.n_restarts,
        patience=args.patience,
        init=args.init,
        n_jobs=args.n_jobs,
    )
    if args.config is not None:
        config = load_pipeline_config(args.config)
        config = replace(
            config,
            decomposition=config.decomposition.with_overrides(**overrides),
        )
    else:
        if args.rank is None:
            raise ValueError("--rank is required without --config")
        config = PipelineConfig(
            conditions=[],
            output_dir=Path("output").resolve(),
            decomposition=NCPConfig.from_dict(
                {k: v for k, v in overrides.items() if v is not None}
            ),
        )

    if args.condition:
        config.conditions = [(label, path.resolve()) for label, path in args.condition]
    if args.output_dir is not None:
        config.output_dir = args.output_dir.resolve()
    if args.header is not None:
        config.header = args.header
    if args.sep is not None:
        config.delimiter = args.sep
    if args.input_sep is not None:
        config.input_sep = args.input_sep
    if args.prefix is not None:
        config.prefix = args.prefix
    return config


def main():
    args = parse_args()
    log_fn = Path(args.log_fn).resolve() if args.log_fn else None

    # Set up logging
    setup_logging(log_fn, args.log_level)
    try:
        config = build_config(args)
        logger.info("Starting NCP decomposition with configuration:")
        logger.info(f"  Conditions: {[label for label, _ in config.conditions]}")
        logger.info(f"  Output dir: {config.output_dir}")
        logger.info(f"  Decomposition: {config.decomposition.to_dict()}")
        logger.info(f"  Header: {config.header}")
        logger.info(f"  Separator: {config.delimiter!r}")
        logger.info(f"  Prefix: {config.prefix}")
        logger.info(f"  Log level: {args.log_level}")

        result = run_pipeline(config)
        logger.info(f"Restarts:\n{result.restarts.summary}")
        logger.info("NCP decomposition completed successfully")
    except Exception as e:
        logger.error(f"Error running NCP decomposition: {e}")
        raise


if __name__ == "__main__":
    main()
