from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import tensorly as tl

from tom_ncp.config import NCPConfig
from tom_ncp.hals import MODE_NAMES, NCPResult, validate_tensor
from tom_ncp.restarts import fit_restarts
from tom_ncp.utils import get_logger, save_csv_or_parquet

logger = get_logger(__name__)

EMPTY_COMPONENT_NORM = 1e-8


def compute_factor_stats(
    factors: Sequence[np.ndarray], factor_names: List[str] = None
) -> dict:
    """
    Computes utilization statistics for each factor matrix and returns
    them as a flat dictionary.

    Args:
        factors: List of factor matrices [A, B, C]
        factor_names: List of names for each factor

    Returns:
        A flat dictionary with prefixed keys (e.g., "A_empty_components").
    """
    stats_dict = {}
    if not factors:
        return stats_dict

    if factor_names is None:
        factor_names = list(MODE_NAMES[: len(factors)])

    for name, F in zip(factor_names, factors):
        key_total = f"{name}_total_components"
        key_empty = f"{name}_empty_components"
        key_mean = f"{name}_mean_strength"
        key_q25 = f"{name}_q25_strength"
        key_q75 = f"{name}_q75_strength"

        total_components = 0 if F is None else F.shape[1]
        stats_dict[key_total] = total_components
        if total_components == 0:
            stats_dict[key_empty] = 0
            stats_dict[key_mean] = np.nan
            stats_dict[key_q25] = np.nan
            stats_dict[key_q75] = np.nan
            continue

        # L2 norm (strength) of each component column
        strengths = np.linalg.norm(F, axis=0)
        stats_dict[key_empty] = int(np.sum(strengths < EMPTY_COMPONENT_NORM))
        stats_dict[key_mean] = float(np.mean(strengths))
        stats_dict[key_q25] = float(np.quantile(strengths, 0.25))
        stats_dict[key_q75] = float(np.quantile(strengths, 0.75))

    return stats_dict


def compute_item_membership_stats(
    factors: Sequence[np.ndarray], factor_names: List[str] = None
) -> dict:
    """
    Summary of per-item membership strengths.

    For each factor matrix the mean loading of every row (gene or
    condition) is taken across components; the mean, Q1 and Q3 of those
    per-row values describe how spread out memberships are.
    """
    stats_dict = {}
    if not factors:
        return stats_dict

    if factor_names is None:
        factor_names = list(MODE_NAMES[: len(factors)])

    for name, F in zip(factor_names, factors):
        key_avg = f"{name}_item_mean_loading_avg"
        key_q25 = f"{name}_item_mean_loading_q25"
        key_q75 = f"{name}_item_mean_loading_q75"

        if F is None or F.shape[0] == 0 or F.shape[1] == 0:
            stats_dict[key_avg] = np.nan
            stats_dict[key_q25] = np.nan
            stats_dict[key_q75] = np.nan
            continue

        per_item = np.mean(np.abs(F), axis=1)
        stats_dict[key_avg] = float(np.mean(per_item))
        stats_dict[key_q25] = float(np.quantile(per_item, 0.25))
        stats_dict[key_q75] = float(np.quantile(per_item, 0.75))

    return stats_dict


def log_factor_utilization(stats_dict: dict, factor_names: List[str]):
    """Logs the output of compute_factor_stats."""
    logger.info("--- Factor Utilization Check ---")
    for name in factor_names:
        total = stats_dict.get(f"{name}_total_components", 0)
        empty = stats_dict.get(f"{name}_empty_components", np.nan)
        mean_s = stats_dict.get(f"{name}_mean_strength", np.nan)
        q25_s = stats_dict.get(f"{name}_q25_strength", np.nan)
        q75_s = stats_dict.get(f"{name}_q75_strength", np.nan)

        logger.info(
            f"Factor '{name}': {empty}/{total} empty components. "
            f"Strength (Mean={mean_s:.4f}, Q1(25%)={q25_s:.4f}, Q3(75%)={q75_s:.4f})"
        )
    logger.info("--------------------------------")


def log_item_membership_stats(stats_dict: dict, factor_names: List[str]):
    logger.info("--- Item Membership 'Softness' Check ---")
    for name in factor_names:
        avg = stats_dict.get(f"{name}_item_mean_loading_avg", np.nan)
        q25 = stats_dict.get(f"{name}_item_mean_loading_q25", np.nan)
        q75 = stats_dict.get(f"{name}_item_mean_loading_q75", np.nan)

        logger.info(
            f"Factor '{name}' Item Mean Loading: "
            f"Avg={avg:.4f}, Q1(25%)={q25:.4f}, Q3(75%)={q75:.4f}"
        )
    logger.info("----------------------------------------")


def errors(X: np.ndarray, factors: Sequence[np.ndarray]) -> Tuple[float, float]:
    """PVE (percent, against the grand mean) and RMSE of the CP model."""
    X = np.asarray(X, dtype=np.float64)
    X_hat = tl.cp_to_tensor((None, list(factors)))
    resid = X - X_hat
    sse = float(np.sum(resid * resid))
    rmse = float(np.sqrt(sse / X.size))

    tss = float(np.sum((X - X.mean()) ** 2))
    if tss == 0:
        pve_percent = 100.0 if sse == 0 else np.nan
    else:
        pve_percent = (1.0 - sse / tss) * 100.0
    return pve_percent, rmse


def summarize_fit(
    X: np.ndarray,
    result: NCPResult,
    factor_names: List[str] = None,
) -> Dict[str, float]:
    """
    Fit diagnostics for one decomposition: PVE, RMSE, relative error plus
    the component utilization and membership statistics. Everything is
    also logged.
    """
    if factor_names is None:
        factor_names = list(MODE_NAMES)
    factors = list(result.factors)

    comp_stats = compute_factor_stats(factors, factor_names=factor_names)
    log_factor_utilization(comp_stats, factor_names=factor_names)
    item_stats = compute_item_membership_stats(factors, factor_names=factor_names)
    log_item_membership_stats(item_stats, factor_names=factor_names)

    pve, rmse = errors(X, factors)
    logger.info(
        f"R:{result.rank} PVE: {pve:.2f}%, RMSE: {rmse:.4g}, "
        f"rel_error: {result.convergence.final_error:.6e}"
    )
    return {
        "pve": pve,
        "rmse": rmse,
        "rel_error": result.convergence.final_error,
        **comp_stats,
        **item_stats,
    }


def sweep_ranks(
    X,
    rank_list: List[int],
    config: NCPConfig,
    output_path: Optional[Path] = None,
    *,
    progress: bool = True,
) -> pd.DataFrame:
    """
    Fits every rank in rank_list (with the restarts of `config`) and
    collects PVE / RMSE / relative error and factor statistics.

    The table is a report only; choosing R is left to the caller.

    Args:
        X: (I, J, K) nonnegative tensor
        rank_list: ranks to test, e.g. [2, 3, 4, 5]
        config: decomposition settings; its rank is replaced per run
        output_path: optional CSV/parquet destination for the table
    """
    if not rank_list:
        raise ValueError("rank_list must contain at least one rank")
    X = validate_tensor(X)

    results = []
    total_runs = len(rank_list)
    logger.info(f"--- Starting NCP rank sweep. Testing {total_runs} ranks. ---")

    for i, rank in enumerate(rank_list):
        logger.info(f"*** Testing rank {i+1}/{total_runs}: {rank} ***")
        try:
            run_config = config.with_overrides(rank=rank)
            restart = fit_restarts(X, run_config, progress=progress)
            best = restart.best
            stats_dict = summarize_fit(X, best)
            results.append(
                {
                    "rank": rank,
                    **stats_dict,
                    "n_iter": best.convergence.n_iter,
                    "converged": best.convergence.converged,
                    "degenerate_events": best.convergence.degenerate_events,
                    "best_seed": restart.best_seed,
                    "restart_stability": float(
                        restart.summary["match_to_best"].mean()
                    ),
                }
            )
        except ValueError as e:
            logger.error(f"Failed on rank {rank}: {e}", exc_info=True)
            results.append(
                {"rank": rank, "pve": np.nan, "rmse": np.nan, "rel_error": np.nan}
            )

    results_df = pd.DataFrame(results)

    if results_df[["pve", "rmse"]].isna().all().all():
        logger.error("All rank sweep runs failed.")
    else:
        best_pve = results_df.sort_values(by="pve", ascending=False)
        logger.info(f"Best results by PVE:\n{best_pve.head()}")

    if output_path is not None:
        save_csv_or_parquet(results_df, Path(output_path))
        logger.info(f"Saved rank sweep to {output_path}")

    return results_df
