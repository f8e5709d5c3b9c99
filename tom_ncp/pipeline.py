from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import numpy as np

from tom_ncp.config import PipelineConfig
from tom_ncp.errors import EmptyInput
from tom_ncp.factor_export import (
    factors_to_frames,
    write_convergence,
    write_factors,
)
from tom_ncp.restarts import RestartResult, fit_restarts
from tom_ncp.tensor_assembly import LabeledTensor, load_condition_tensor
from tom_ncp.tensor_models import summarize_fit
from tom_ncp.utils import get_logger, save_csv_or_parquet

logger = get_logger(__name__)

CONVERGENCE_FN = "convergence.json"
RESTARTS_FN = "restarts.csv"


@dataclass
class PipelineResult:
    tensor: LabeledTensor
    restarts: RestartResult
    stats: Dict[str, float]
    paths: Dict[str, Path]

    @property
    def best(self):
        return self.restarts.best


def run_pipeline(config: PipelineConfig, *, progress: bool = True) -> PipelineResult:
    """
    Load the condition matrices, decompose them and write the outputs.

    Steps:
      1. read every (label, path) condition in the configured order and
         stack them into a genes x genes x conditions tensor
      2. run the configured number of NCP-HALS restarts, keep the best
      3. log fit diagnostics
      4. write factor_A/B/C, convergence.json and restarts.csv
    """
    if not config.conditions:
        raise EmptyInput("Pipeline config lists no conditions")

    logger.info(
        f"Pipeline: {len(config.conditions)} conditions -> {config.output_dir}"
    )
    for label, path in config.conditions:
        logger.info(f"  condition '{label}': {path}")

    tensor = load_condition_tensor(
        config.conditions, sep=config.input_sep, dtype=np.dtype(config.dtype)
    )

    restarts = fit_restarts(tensor.data, config.decomposition, progress=progress)
    best = restarts.best
    stats = summarize_fit(tensor.data, best)

    output_dir = Path(config.output_dir)
    frames = factors_to_frames(
        best, tensor, label_conditions=config.label_conditions
    )
    paths = write_factors(
        frames,
        output_dir,
        header=config.header,
        sep=config.delimiter,
        prefix=config.prefix,
    )
    paths["convergence"] = write_convergence(
        best.convergence,
        output_dir / CONVERGENCE_FN,
        extra={
            "rank": best.rank,
            "shape": list(tensor.shape),
            "conditions": tensor.condition_labels,
            "config": config.decomposition.to_dict(),
        },
    )
    paths["restarts"] = output_dir / RESTARTS_FN
    save_csv_or_parquet(restarts.summary, paths["restarts"])

    logger.info(
        f"Pipeline done: rank={best.rank}, error={best.convergence.final_error:.6e}, "
        f"PVE={stats['pve']:.2f}%"
    )
    return PipelineResult(
        tensor=tensor, restarts=restarts, stats=stats, paths=paths
    )
