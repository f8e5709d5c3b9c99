#!/usr/bin/env python3
"""
Rank sweep for the nonnegative CP decomposition of TOM tensors.

Fits every rank of --rank_list and writes a table of PVE, RMSE,
relative error, convergence and factor utilization per rank. The
table is a report; the rank is chosen by the reader.
"""

import sys
import argparse
from pathlib import Path

# Add project root to path to allow importing tom_ncp
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tom_ncp.config import INIT_METHODS, NCPConfig, load_pipeline_config
from tom_ncp.tensor_assembly import load_condition_tensor
from tom_ncp.tensor_models import sweep_ranks
from tom_ncp.utils import (
    get_logger,
    parse_condition,
    parse_range,
    setup_logging,
)

logger = get_logger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(
        description="Rank sweep for nonnegative CP decomposition of TOM tensors"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML or JSON pipeline config providing the conditions",
    )
    parser.add_argument(
        "--condition",
        type=parse_condition,
        action="append",
        default=None,
        help="Condition matrix as LABEL=PATH (repeatable, order is kept)",
    )
    parser.add_argument(
        "--rank_list",
        type=parse_range,
        required=True,
        help="Ranks to test: START:END or a,b,c",
    )
    parser.add_argument(
        "--output_csv_path",
        type=Path,
        default=None,
        help="Path to save the results table",
    )
    parser.add_argument(
        "--max_iter",
        type=int,
        default=500,
        help="Maximum number of full sweeps",
    )
    parser.add_argument(
        "--tol",
        type=float,
        default=1e-6,
        help="Tolerance on the relative error decrease",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument(
        "--n_restarts",
        type=int,
        default=1,
        help="Restarts per rank",
    )
    parser.add_argument(
        "--init",
        type=str,
        default="random",
        choices=list(INIT_METHODS),
        help="Factor initialization",
    )
    parser.add_argument(
        "--n_jobs",
        type=int,
        default=1,
        help="Worker processes for restarts (-1 = all cores)",
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


def main():
    args = parse_args()
    log_fn = Path(args.log_fn).resolve() if args.log_fn else None

    # Set up logging
    setup_logging(log_fn, args.log_level)
    try:
        logger.info("Starting rank sweep with configuration:")
        logger.info(f"  Rank list: {args.rank_list}")
        logger.info(f"  Output CSV path: {args.output_csv_path}")
        logger.info(f"  Max iter: {args.max_iter}")
        logger.info(f"  Tolerance: {args.tol}")
        logger.info(f"  Seed: {args.seed}")
        logger.info(f"  Restarts: {args.n_restarts}")
        logger.info(f"  Log level: {args.log_level}")

        if args.condition:
            conditions = [(label, path.resolve()) for label, path in args.condition]
            input_sep, dtype = None, "float64"
        elif args.config is not None:
            pipeline_config = load_pipeline_config(args.config)
            conditions = pipeline_config.conditions
            input_sep, dtype = pipeline_config.input_sep, pipeline_config.dtype
        else:
            raise ValueError("Give --config or at least one --condition")
        if not args.rank_list:
            raise ValueError("--rank_list is empty")

        tensor = load_condition_tensor(conditions, sep=input_sep, dtype=dtype)
        config = NCPConfig(
            rank=args.rank_list[0],
            max_iter=args.max_iter,
            tol=args.tol,
            seed=args.seed,
            n_restarts=args.n_restarts,
            init=args.init,
            n_jobs=args.n_jobs,
        )
        output_csv_path = (
            args.output_csv_path.resolve() if args.output_csv_path else None
        )
        results_df = sweep_ranks(
            tensor.data, args.rank_list, config, output_csv_path
        )
        logger.info(f"Results:\n{results_df}")
        logger.info("Rank sweep completed successfully")
    except Exception as e:
        logger.error(f"Error running rank sweep: {e}")
        raise


if __name__ == "__main__":
    main()
