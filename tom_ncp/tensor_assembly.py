from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from tom_ncp.errors import EmptyInput, LabelMismatch, ShapeMismatch
from tom_ncp.utils import get_logger, read_csv_or_parquet

logger = get_logger(__name__)

MatrixLike = Union[np.ndarray, pd.DataFrame]


@dataclass(frozen=True)
class LabeledTensor:
    """
    A (genes x genes x conditions) tensor with its labels kept beside the data.

    data             : (I, J, K) array, condition along the last axis
    row_labels       : I gene identifiers (mode 1)
    col_labels       : J gene identifiers (mode 2)
    condition_labels : K condition names, in stacking order
    """

    data: np.ndarray
    row_labels: List[str]
    col_labels: List[str]
    condition_labels: List[str]

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.data.shape

    def condition(self, label: str) -> pd.DataFrame:
        """Return one slice as a labeled DataFrame."""
        k = self.condition_labels.index(label)
        return pd.DataFrame(
            self.data[:, :, k], index=self.row_labels, columns=self.col_labels
        )


def _labels_of(
    matrix: MatrixLike,
) -> Tuple[Optional[List[str]], Optional[List[str]]]:
    if isinstance(matrix, pd.DataFrame):
        return [str(x) for x in matrix.index], [str(x) for x in matrix.columns]
    return None, None


def assemble_tensor(
    matrices: Sequence[Tuple[str, MatrixLike]],
    *,
    row_labels: Optional[Sequence[str]] = None,
    col_labels: Optional[Sequence[str]] = None,
    dtype=np.float64,
) -> LabeledTensor:
    """
    Stack per-condition similarity matrices into an (I, J, K) tensor.

    Args:
        matrices: ordered (condition_label, matrix) pairs. The stacking order
            is exactly this order.
        row_labels, col_labels: labels for unlabeled (ndarray) inputs. If the
            inputs are DataFrames their index/columns are used and must agree
            across conditions.
        dtype: float64 or float32.

    Returns:
        LabeledTensor with condition as the third mode.
    """
    matrices = list(matrices)
    if not matrices:
        raise EmptyInput("No condition matrices supplied")

    condition_labels = [str(label) for label, _ in matrices]
    if len(set(condition_labels)) != len(condition_labels):
        dupes = sorted(
            {c for c in condition_labels if condition_labels.count(c) > 1}
        )
        raise LabelMismatch(f"Duplicate condition labels: {dupes}")

    first_label, first = matrices[0]
    first_shape = np.shape(first)
    if len(first_shape) != 2:
        raise ShapeMismatch(
            f"Condition '{first_label}' is not a 2-D matrix: shape {first_shape}"
        )
    ref_rows, ref_cols = _labels_of(first)

    slices = []
    for label, matrix in matrices:
        shape = np.shape(matrix)
        if shape != first_shape:
            raise ShapeMismatch(
                f"Condition '{label}' has shape {shape}, "
                f"expected {first_shape} (from '{first_label}')"
            )
        rows, cols = _labels_of(matrix)
        if ref_rows is not None and rows is not None:
            if rows != ref_rows or cols != ref_cols:
                raise LabelMismatch(
                    f"Condition '{label}' gene ordering differs from '{first_label}'"
                )
        elif (ref_rows is None) != (rows is None):
            logger.warning(
                f"Mixing labeled and unlabeled matrices; '{label}' is trusted "
                f"to follow the gene ordering of '{first_label}'"
            )
            if ref_rows is None:
                ref_rows, ref_cols = rows, cols
        values = (
            matrix.to_numpy(dtype=dtype)
            if isinstance(matrix, pd.DataFrame)
            else np.asarray(matrix, dtype=dtype)
        )
        slices.append(values)

    I, J = first_shape
    row_labels = _pick_labels(row_labels, ref_rows, I, "row")
    col_labels = _pick_labels(col_labels, ref_cols, J, "col")

    data = np.stack(slices, axis=2)
    # Read-only: the tensor is fixed for the whole run
    data.setflags(write=False)
    logger.info(
        f"Assembled tensor {data.shape} ({np.dtype(dtype).name}) "
        f"from conditions {condition_labels}"
    )
    return LabeledTensor(
        data=data,
        row_labels=row_labels,
        col_labels=col_labels,
        condition_labels=condition_labels,
    )


def _pick_labels(
    given: Optional[Sequence[str]],
    from_frames: Optional[List[str]],
    n: int,
    what: str,
) -> List[str]:
    if given is not None:
        given = [str(x) for x in given]
        if len(given) != n:
            raise ShapeMismatch(
                f"Got {len(given)} {what} labels for {n} {what}s"
            )
        if from_frames is not None and given != from_frames:
            raise LabelMismatch(
                f"Explicit {what} labels disagree with the matrix labels"
            )
        return given
    if from_frames is not None:
        return from_frames
    return [f"gene_{i}" for i in range(n)]


def read_similarity_matrix(
    path: Union[str, Path], sep: Optional[str] = None
) -> pd.DataFrame:
    """
    Read one TOM / similarity matrix: header row of gene names and gene
    names in the first column. Separator is taken from `sep` or the suffix.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Similarity matrix not found: {path}")
    if path.suffix == ".parquet":
        df = read_csv_or_parquet(path)
    else:
        df = read_csv_or_parquet(path, sep=sep, index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    logger.info(f"Read {path.name}: {df.shape[0]} x {df.shape[1]}")
    return df


def load_condition_tensor(
    conditions: Sequence[Tuple[str, Union[str, Path]]],
    *,
    sep: Optional[str] = None,
    dtype=np.float64,
) -> LabeledTensor:
    """Read (condition_label, path) pairs in order and assemble them."""
    conditions = list(conditions)
    if not conditions:
        raise EmptyInput("No condition files supplied")
    matrices = [
        (label, read_similarity_matrix(path, sep=sep))
        for label, path in conditions
    ]
    return assemble_tensor(matrices, dtype=dtype)
