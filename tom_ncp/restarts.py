from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from tom_ncp.config import NCPConfig
from tom_ncp.factor_match import factor_match_score
from tom_ncp.hals import NCPResult, ncp_hals, validate_tensor
from tom_ncp.utils import get_logger, get_n_jobs

logger = get_logger(__name__)


@dataclass
class RestartResult:
    best: NCPResult
    results: List[NCPResult]
    summary: pd.DataFrame

    @property
    def best_seed(self) -> Optional[int]:
        return self.best.convergence.seed


def restart_seeds(seed: Optional[int], n_restarts: int) -> List[int]:
    """
    Seeds seed, seed + 1, ... . Without a seed a base is drawn from OS
    entropy and logged so that the run can be repeated.
    """
    if seed is None:
        seed = int(np.random.SeedSequence().generate_state(1)[0])
        logger.info(f"No seed given; drew base seed {seed}")
    return [int(seed) + i for i in range(n_restarts)]


def _fit_one(args: Tuple[np.ndarray, NCPConfig, int]) -> NCPResult:
    """Single restart; module level so it pickles for worker processes."""
    X, config, seed = args
    return ncp_hals(
        X,
        config.rank,
        max_iter=config.max_iter,
        tol=config.tol,
        patience=config.patience,
        seed=seed,
        init=config.init,
        eps=config.eps,
    )


def fit_restarts(
    X,
    config: NCPConfig,
    *,
    n_jobs: Optional[int] = None,
    progress: bool = True,
) -> RestartResult:
    """
    Run `config.n_restarts` independent fits and keep the lowest error.

    Restarts run serially for n_jobs == 1, otherwise in a process pool
    (n_jobs=-1 uses every core). Each worker gets its own copy of the
    tensor, so serial and parallel runs return identical factors.
    Ties on the final error go to the earliest seed.
    """
    # Fail fast, before any worker starts
    X = validate_tensor(X)
    seeds = restart_seeds(config.seed, config.n_restarts)
    n_jobs = get_n_jobs(config.n_jobs if n_jobs is None else n_jobs)
    n_jobs = min(n_jobs, len(seeds))
    args = [(X, config, s) for s in seeds]

    logger.info(
        f"Starting {len(seeds)} NCP restart(s) with rank={config.rank} "
        f"on {n_jobs} process(es); seeds={seeds}"
    )

    if n_jobs == 1:
        results = [
            _fit_one(a)
            for a in tqdm(
                args, desc="NCP restarts", disable=not progress or len(args) == 1
            )
        ]
    else:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            results = list(
                tqdm(
                    executor.map(_fit_one, args),
                    total=len(args),
                    desc="NCP restarts",
                    disable=not progress,
                )
            )

    errors = [r.convergence.final_error for r in results]
    best_idx = int(np.argmin(errors))  # argmin keeps the first minimum
    best = results[best_idx]

    rows = []
    for i, res in enumerate(results):
        conv = res.convergence
        rows.append(
            {
                "restart": i,
                "seed": conv.seed,
                "final_error": conv.final_error,
                "n_iter": conv.n_iter,
                "converged": conv.converged,
                "degenerate_events": conv.degenerate_events,
                "match_to_best": factor_match_score(
                    list(best.factors), list(res.factors), metric="cosine"
                ),
                "is_best": i == best_idx,
            }
        )
    summary = pd.DataFrame(rows)

    logger.info(f"Restart summary:\n{summary.to_string(index=False)}")
    logger.info(
        f"Best restart: #{best_idx} (seed={best.convergence.seed}) "
        f"error={best.convergence.final_error:.6e}, "
        f"converged={best.convergence.converged}"
    )
    if not best.convergence.converged:
        logger.warning(
            "Best restart did not converge; consider a larger max_iter"
        )
    return RestartResult(best=best, results=results, summary=summary)
