import json
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from tom_ncp.errors import ShapeMismatch
from tom_ncp.hals import ConvergenceRecord, NCPResult
from tom_ncp.tensor_assembly import LabeledTensor
from tom_ncp.utils import get_logger

logger = get_logger(__name__)

FACTOR_NAMES = ("A", "B", "C")


def component_columns(rank: int) -> list[str]:
    return [f"component_{r + 1}" for r in range(rank)]


def _frame(
    F: np.ndarray, labels: Optional[Sequence[str]], name: str
) -> pd.DataFrame:
    if labels is not None and len(labels) != F.shape[0]:
        raise ShapeMismatch(
            f"Factor {name} has {F.shape[0]} rows but {len(labels)} labels"
        )
    index = pd.Index(list(labels), name="label") if labels is not None else None
    return pd.DataFrame(
        np.asarray(F), index=index, columns=component_columns(F.shape[1])
    )


def factors_to_frames(
    result: NCPResult,
    tensor: LabeledTensor,
    *,
    label_conditions: bool = True,
) -> Dict[str, pd.DataFrame]:
    """
    Attach labels to the factors: A by row labels, B by column labels,
    C by condition labels (or unlabeled). Row order is the assembly order.
    """
    A, B, C = result.factors
    return {
        "A": _frame(A, tensor.row_labels, "A"),
        "B": _frame(B, tensor.col_labels, "B"),
        "C": _frame(
            C, tensor.condition_labels if label_conditions else None, "C"
        ),
    }


def write_factors(
    frames: Dict[str, pd.DataFrame],
    output_dir: Path,
    *,
    header: bool = False,
    sep: str = ",",
    prefix: str = "factor_",
    suffix: Optional[str] = None,
) -> Dict[str, Path]:
    """
    Write factor_A / factor_B / factor_C as delimited files.

    Labeled frames are written with their labels as the first column;
    unlabeled frames carry only the scores. Header row is optional.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if suffix is None:
        suffix = ".tsv" if sep == "\t" else ".csv"

    paths = {}
    for name in FACTOR_NAMES:
        df = frames[name]
        fn = output_dir / f"{prefix}{name}{suffix}"
        labeled = df.index.name is not None
        df.to_csv(fn, sep=sep, header=header, index=labeled)
        logger.info(f"Saved factor {name} {df.shape} to {fn}")
        paths[name] = fn
    return paths


def write_convergence(
    record: ConvergenceRecord, fn: Path, extra: Optional[Dict] = None
) -> Path:
    """Store the convergence record (plus optional run metadata) as JSON."""
    fn = Path(fn)
    fn.parent.mkdir(parents=True, exist_ok=True)
    payload = record.to_dict()
    if extra:
        payload.update(extra)
    with fn.open("w") as f:
        json.dump(payload, f, indent=2)
    logger.info(f"Saved convergence record to {fn}")
    return fn


def read_factor(
    fn: Path, *, header: bool = False, sep: str = ",", labeled: bool = True
) -> pd.DataFrame:
    """Read back a factor file written by `write_factors`."""
    return pd.read_csv(
        fn,
        sep=sep,
        header=0 if header else None,
        index_col=0 if labeled else None,
    )
