import warnings
from typing import List, Sequence, Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.spatial.distance import cdist

METRICS = ("correlation", "cosine")


def column_similarity(
    reference: np.ndarray, estimate: np.ndarray, metric: str = "correlation"
) -> np.ndarray:
    """
    (R_ref x R_est) similarity between columns.

    'correlation' is Pearson correlation, 'cosine' is Tucker's congruence.
    Columns with zero variance / zero norm score 0 against everything.
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown metric '{metric}'. Choose from {METRICS}")
    reference = np.asarray(reference, dtype=np.float64)
    estimate = np.asarray(estimate, dtype=np.float64)
    if reference.shape[0] != estimate.shape[0]:
        raise ValueError(
            f"Row count differs: {reference.shape[0]} vs {estimate.shape[0]}"
        )
    with warnings.catch_warnings():
        # cdist divides by zero for constant columns; those become NaN -> 0
        warnings.simplefilter("ignore", RuntimeWarning)
        sim = 1.0 - cdist(reference.T, estimate.T, metric=metric)
    return np.nan_to_num(sim, nan=0.0)


def best_permutation(
    reference: Sequence[np.ndarray],
    estimate: Sequence[np.ndarray],
    metric: str = "correlation",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Match estimated components to reference components (Hungarian algorithm).

    Both arguments are lists of factor matrices for the same modes; the
    matching score of a pair is the mean similarity over those modes.

    Returns:
        perm: perm[i] is the estimate column matched to reference column i
        scores: (len(modes), R_ref) similarity of each matched pair per mode
    """
    if len(reference) != len(estimate) or not reference:
        raise ValueError("Need the same, non-zero number of factor matrices")
    if reference[0].shape[1] > estimate[0].shape[1]:
        raise ValueError(
            f"Cannot match {reference[0].shape[1]} reference components "
            f"to {estimate[0].shape[1]} estimated ones"
        )
    sims = [
        column_similarity(ref, est, metric)
        for ref, est in zip(reference, estimate)
    ]
    mean_sim = np.mean(sims, axis=0)
    ref_idx, est_idx = linear_sum_assignment(mean_sim, maximize=True)
    perm = np.empty(len(ref_idx), dtype=int)
    perm[ref_idx] = est_idx
    scores = np.stack([s[ref_idx, est_idx] for s in sims])
    return perm, scores


def align_factors(
    reference: Sequence[np.ndarray],
    estimate: Sequence[np.ndarray],
    metric: str = "correlation",
) -> List[np.ndarray]:
    """Reorder the columns of `estimate` to line up with `reference`."""
    perm, _ = best_permutation(reference, estimate, metric)
    return [np.asarray(F)[:, perm] for F in estimate]


def factor_match_score(
    reference: Sequence[np.ndarray],
    estimate: Sequence[np.ndarray],
    metric: str = "correlation",
) -> float:
    """Mean matched similarity over all modes and components."""
    _, scores = best_permutation(reference, estimate, metric)
    return float(np.mean(scores))
