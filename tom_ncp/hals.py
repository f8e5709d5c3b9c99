"""
Nonnegative CP (PARAFAC) decomposition fitted with HALS.

    min 0.5 * || T - [[A, B, C]] ||_F^2   s.t.  A, B, C >= 0

T is an (I, J, K) nonnegative tensor (genes x genes x conditions) and
[[A, B, C]] = sum_r A[:, r] o B[:, r] o C[:, r].

Each outer iteration sweeps the three modes. For mode n the MTTKRP
M = T_(n) (Khatri-Rao of the other factors) and the Gram product
G = Hadamard product of the other factors' Gram matrices are formed once,
then every column is updated in closed form and clipped at zero:

    F[:, r] <- max(0, F[:, r] + (M[:, r] - F @ G[:, r]) / (G[r, r] + eps))
"""

import time
import warnings
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import tensorly as tl
from sklearn.base import BaseEstimator
from sklearn.utils.extmath import randomized_svd
from sklearn.utils.validation import check_array

from tom_ncp.config import NCPConfig, check_rank
from tom_ncp.errors import InvalidInput, NumericDegeneracy
from tom_ncp.utils import get_logger

# Set NumPy as the backend for consistency
tl.set_backend("numpy")

logger = get_logger(__name__)

N_MODES = 3
MODE_NAMES = ("A", "B", "C")
CANCELLATION_GUARD = 1e4


@dataclass
class ConvergenceRecord:
    """
    Outcome of one decomposition run.

    final_error       : relative Frobenius error ||T - That|| / ||T||
    n_iter            : completed full (A, B, C) sweeps
    converged         : False when max_iter was hit first
    error_history     : initial error followed by one entry per sweep
    degenerate_events : epsilon-guarded column updates
    seed              : initialization seed
    """

    final_error: float
    n_iter: int
    converged: bool
    error_history: List[float] = field(default_factory=list)
    degenerate_events: int = 0
    seed: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class NCPResult:
    factors: Tuple[np.ndarray, np.ndarray, np.ndarray]
    convergence: ConvergenceRecord

    @property
    def rank(self) -> int:
        return self.factors[0].shape[1]

    @property
    def A(self) -> np.ndarray:
        return self.factors[0]

    @property
    def B(self) -> np.ndarray:
        return self.factors[1]

    @property
    def C(self) -> np.ndarray:
        return self.factors[2]

    def reconstruct(self) -> np.ndarray:
        return tl.cp_to_tensor((None, list(self.factors)))


# ----------------------------
# Validation
# ----------------------------
def validate_tensor(X) -> np.ndarray:
    """
    Return X as a float64/float32 3-D array, or raise InvalidInput if it is
    not 3-D, is empty, holds negative / NaN / Inf entries, or is all zero.
    """
    X = np.asarray(X)
    if X.ndim != N_MODES:
        raise InvalidInput(
            f"Input must be a 3D tensor with shape (I, J, K), got ndim={X.ndim}"
        )
    if X.dtype.kind not in "biuf":
        raise InvalidInput(f"Input tensor must be numeric, got {X.dtype}")
    if 0 in X.shape:
        raise InvalidInput(f"Input tensor has an empty mode: {X.shape}")
    if not np.all(np.isfinite(X)):
        n_bad = int(np.size(X) - np.count_nonzero(np.isfinite(X)))
        raise InvalidInput(f"Input tensor has {n_bad} NaN/Inf entries")
    if np.any(X < 0):
        raise InvalidInput(
            f"Input tensor must be non-negative (min={X.min():.3g})"
        )
    if not np.any(X > 0):
        raise InvalidInput("Input tensor is all zero; nothing to decompose")
    return check_array(
        X, dtype=[np.float64, np.float32], ensure_2d=False, allow_nd=True
    )


# ----------------------------
# Tensor algebra
# ----------------------------
def mttkrp(X: np.ndarray, factors: List[np.ndarray], mode: int) -> np.ndarray:
    """Unfolded tensor times the Khatri-Rao product of the other factors."""
    return tl.dot(
        tl.unfold(X, mode), tl.tenalg.khatri_rao(factors, skip_matrix=mode)
    )


def gram_except(factors: List[np.ndarray], mode: int) -> np.ndarray:
    """Hadamard product of F.T @ F over every factor but `mode`."""
    rank = factors[0].shape[1]
    G = np.ones((rank, rank), dtype=factors[0].dtype)
    for n, F in enumerate(factors):
        if n != mode:
            G = G * (F.T @ F)
    return G


def dense_relative_error(
    X: np.ndarray, factors: List[np.ndarray], norm_sq: Optional[float] = None
) -> float:
    """||T - That|| / ||T|| from the materialized reconstruction, in float64."""
    X = np.asarray(X, dtype=np.float64)
    if norm_sq is None:
        norm_sq = float(np.sum(X**2))
    X_hat = tl.cp_to_tensor(
        (None, [np.asarray(F, dtype=np.float64) for F in factors])
    )
    return float(np.sqrt(np.sum((X - X_hat) ** 2) / norm_sq))


def _error_from_parts(
    X: np.ndarray,
    norm_sq: float,
    M: np.ndarray,
    factors: List[np.ndarray],
    G: np.ndarray,
    mode: int = N_MODES - 1,
) -> float:
    """
    ||T - That||^2 = ||T||^2 - 2 <T, That> + ||That||^2 with
    <T, That> = sum(M * F) and ||That||^2 = sum(G * F.T F), where F is
    factors[mode] and M, G were built from the other two factors.

    Accumulated in float64. Once the residual is within CANCELLATION_GUARD
    machine epsilons of ||T||^2 the expansion has no digits left, and the
    error is recomputed from the dense reconstruction.
    """
    F = np.asarray(factors[mode], dtype=np.float64)
    inner = float(np.sum(np.asarray(M, dtype=np.float64) * F))
    model_sq = float(np.sum(np.asarray(G, dtype=np.float64) * (F.T @ F)))
    resid_sq = norm_sq - 2.0 * inner + model_sq
    if resid_sq < CANCELLATION_GUARD * np.finfo(np.float64).eps * norm_sq:
        return dense_relative_error(X, factors, norm_sq)
    return float(np.sqrt(resid_sq / norm_sq))


def relative_error(
    X: np.ndarray, factors: List[np.ndarray], norm_sq: Optional[float] = None
) -> float:
    """Relative Frobenius error of the CP model, computed in float64."""
    X = np.asarray(X, dtype=np.float64)
    if norm_sq is None:
        norm_sq = float(np.sum(X**2))
    factors = [np.asarray(F, dtype=np.float64) for F in factors]
    mode = N_MODES - 1
    return _error_from_parts(
        X,
        norm_sq,
        mttkrp(X, factors, mode),
        factors,
        gram_except(factors, mode),
        mode,
    )


def hals_update(
    F: np.ndarray, M: np.ndarray, G: np.ndarray, eps: float
) -> List[int]:
    """
    In-place HALS sweep over the columns of F.

    Returns the columns that hit the epsilon guard: either their Gram
    diagonal was below eps or they were clipped to all zeros.
    """
    degenerate = []
    for r in range(F.shape[1]):
        g_rr = G[r, r]
        col = F[:, r] + (M[:, r] - F @ G[:, r]) / (g_rr + eps)
        np.maximum(col, 0.0, out=col)
        F[:, r] = col
        if g_rr < eps or not np.any(col > 0):
            degenerate.append(r)
    return degenerate


def balance_factors(factors: List[np.ndarray]) -> None:
    """
    Rescale each component so its three columns share the same norm.
    The reconstruction is unchanged; this only stops scale drift.
    """
    norms = np.stack([np.linalg.norm(F, axis=0) for F in factors])  # (3, R)
    alive = np.all(norms > 0, axis=0)
    if not np.any(alive):
        return
    target = np.prod(norms[:, alive], axis=0) ** (1.0 / N_MODES)
    for n, F in enumerate(factors):
        F[:, alive] *= (target / norms[n, alive]).astype(F.dtype)


# ----------------------------
# Initialization
# ----------------------------
def initialize_factors(
    X: np.ndarray, rank: int, init: str, rng: np.random.Generator
) -> List[np.ndarray]:
    """
    'random': uniform [0, 1) draws.
    'svd'   : |leading left singular vectors| of each unfolding, padded with
              random columns when an unfolding has fewer than `rank`.
    Both are rescaled so that ||That|| == ||T|| and balanced across modes.
    """
    dtype = X.dtype
    factors = []
    if init == "random":
        for dim in X.shape:
            factors.append(rng.random((dim, rank)).astype(dtype))
    elif init == "svd":
        for mode, dim in enumerate(X.shape):
            unfolded = tl.unfold(X, mode)
            k = min(rank, *unfolded.shape)
            U, _, _ = randomized_svd(
                unfolded,
                n_components=k,
                random_state=int(rng.integers(np.iinfo(np.int32).max)),
            )
            F = np.abs(U[:, :k])
            if k < rank:
                F = np.hstack([F, rng.random((dim, rank - k))])
            factors.append(F.astype(dtype))
    else:
        raise ValueError(f"Unknown init '{init}'. Use 'random' or 'svd'")

    norm_sq = float(np.sum(X.astype(np.float64) ** 2))
    model_sq = float(
        np.sum(gram_except(factors, N_MODES - 1) * (factors[-1].T @ factors[-1]))
    )
    scale = (np.sqrt(norm_sq) / np.sqrt(model_sq)) ** (1.0 / N_MODES)
    for F in factors:
        F *= dtype.type(scale)
    balance_factors(factors)
    return factors


# ----------------------------
# Driver
# ----------------------------
def ncp_hals(
    X,
    rank: int,
    *,
    max_iter: int = 500,
    tol: float = 1e-6,
    patience: int = 3,
    seed: Optional[int] = None,
    init: str = "random",
    eps: float = 1e-12,
    log_every: int = 50,
) -> NCPResult:
    """
    Nonnegative CP decomposition of a 3-D tensor by HALS.

    Args:
        X: (I, J, K) tensor, finite and >= 0.
        rank: number of components R.
        max_iter: cap on full sweeps.
        tol: stop once the relative decrease of the relative error stays
            below tol for `patience` consecutive sweeps.
        patience: consecutive sweeps below tol required to stop.
        seed: initialization seed. Same seed and inputs give identical output.
        init: 'random' or 'svd'.
        eps: denominator guard for the column updates.
        log_every: INFO progress line period (sweeps).

    Returns:
        NCPResult with A (I x R), B (J x R), C (K x R) and a ConvergenceRecord.
        Reaching max_iter is reported as converged=False, not raised.
    """
    X = validate_tensor(X)
    rank = check_rank(rank)
    I, J, K = X.shape
    if rank > min(I, J, K):
        logger.warning(
            f"rank={rank} exceeds min(I, J, K)={min(I, J, K)} for tensor {X.shape}; "
            "expect redundant or collapsing components"
        )

    rng = np.random.default_rng(seed)
    factors = initialize_factors(X, rank, init, rng)

    X64 = np.asarray(X, dtype=np.float64)
    norm_sq = float(np.sum(X64**2))
    err = relative_error(X64, factors, norm_sq)
    history = [err]

    logger.info(
        f"NCP-HALS I={I},J={J},K={K},R={rank},init={init},seed={seed}\n"
        f"max_iter={max_iter},tol={tol},patience={patience},eps={eps},"
        f"initial_error={err:.6e}"
    )

    t0 = time.perf_counter()
    degenerate_events = 0
    flagged = set()  # (mode, r) pairs currently guarded
    stall = 0
    converged = False
    n_iter = 0
    prev = err

    for it in range(1, max_iter + 1):
        for mode in range(N_MODES):
            M = mttkrp(X, factors, mode)
            G = gram_except(factors, mode)
            guarded = hals_update(factors[mode], M, G, eps)
            degenerate_events += len(guarded)
            now = {(mode, r) for r in guarded}
            for mode_r in sorted(now - flagged):
                logger.warning(
                    f"it:{it} NumericDegeneracy: component {mode_r[1]} of factor "
                    f"{MODE_NAMES[mode_r[0]]} collapsed; epsilon guard applied"
                )
            flagged = (flagged - {(mode, r) for r in range(rank)}) | now

        if X.dtype == np.float64:
            # M and G are still those of the last mode and stay valid after its update
            err = _error_from_parts(X, norm_sq, M, factors, G)
        else:
            # float32 parts are too coarse for the expansion
            err = relative_error(X64, factors, norm_sq)
        balance_factors(factors)
        history.append(err)
        n_iter = it

        rel = (prev - err) / max(prev, eps)
        logger.debug(f"it:{it:03d},R:{rank},error={err:.6e},rel_decrease={rel:.3e}")
        if log_every and it % log_every == 0:
            logger.info(
                f"it:{it:03d},R:{rank},error={err:.6e},rel_decrease={rel:.3e},"
                f"elapsed={time.perf_counter() - t0:.2f}s"
            )

        if err <= eps:
            converged = True
            logger.info(f"it:{it},R:{rank} Exact fit (error={err:.3e})")
            break
        stall = stall + 1 if rel < tol else 0
        if stall >= patience:
            converged = True
            logger.info(
                f"it:{it},R:{rank} Converged (rel_decrease={rel:.3e} < tol={tol} "
                f"for {stall} sweeps), error={err:.6e}"
            )
            break
        prev = err

    if not converged:
        logger.warning(
            f"R:{rank} Reached max_iter={max_iter} without meeting tol={tol}; "
            f"error={err:.6e}"
        )
    if degenerate_events:
        warnings.warn(
            f"{degenerate_events} epsilon-guarded column updates "
            f"(rank={rank}, seed={seed})",
            NumericDegeneracy,
            stacklevel=2,
        )

    record = ConvergenceRecord(
        final_error=float(err),
        n_iter=n_iter,
        converged=converged,
        error_history=[float(e) for e in history],
        degenerate_events=degenerate_events,
        seed=seed,
    )
    return NCPResult(factors=tuple(factors), convergence=record)


class NonnegativeCP(BaseEstimator):
    """
    scikit-learn style wrapper around `ncp_hals`.

    Parameters
    ----------
    rank : int
        Number of components (R)
    max_iter : int, default=500
        Maximum number of full sweeps
    tol : float, default=1e-6
        Threshold on the relative decrease of the relative error
    patience : int, default=3
        Consecutive sweeps below tol before stopping
    random_state : int or None, default=None
        Initialization seed
    init : str, default='random'
        'random' or 'svd'
    eps : float, default=1e-12
        Denominator guard for the HALS column update
    """

    def __init__(
        self,
        rank: int,
        max_iter: int = 500,
        tol: float = 1e-6,
        patience: int = 3,
        random_state: Optional[int] = None,
        init: str = "random",
        eps: float = 1e-12,
    ):
        self.rank = rank
        self.max_iter = max_iter
        self.tol = tol
        self.patience = patience
        self.random_state = random_state
        self.init = init
        self.eps = eps

    @classmethod
    def from_config(
        cls, config: NCPConfig, seed: Optional[int] = None
    ) -> "NonnegativeCP":
        return cls(
            rank=config.rank,
            max_iter=config.max_iter,
            tol=config.tol,
            patience=config.patience,
            random_state=config.seed if seed is None else seed,
            init=config.init,
            eps=config.eps,
        )

    def fit(self, X: np.ndarray, y: np.ndarray = None):
        _ = y
        result = ncp_hals(
            X,
            self.rank,
            max_iter=self.max_iter,
            tol=self.tol,
            patience=self.patience,
            seed=self.random_state,
            init=self.init,
            eps=self.eps,
        )
        self.result_ = result
        self.factors_ = result.factors
        self.convergence_ = result.convergence
        self.error_history_ = result.convergence.error_history
        self.n_iter_ = result.convergence.n_iter
        return self

    def check_fitted(self):
        if getattr(self, "result_", None) is None:
            raise ValueError("Model has not been fitted yet.")

    def factors(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (A, B, C) after fit()."""
        self.check_fitted()
        return self.factors_

    def reconstruct(self) -> np.ndarray:
        """Return the dense reconstruction [[A, B, C]] after fit()."""
        self.check_fitted()
        return self.result_.reconstruct()

    def score(self, X: np.ndarray) -> Dict[str, float]:
        """
        Fit diagnostics on X: relative error, RMSE and PVE
        (PVE against the grand-mean baseline, in percent).
        """
        self.check_fitted()
        X = validate_tensor(X)
        Xhat = self.reconstruct()
        rss = float(np.sum((X - Xhat) ** 2))
        tss = float(np.sum((X - X.mean()) ** 2))
        return {
            "rel_error": relative_error(X, list(self.factors_)),
            "rmse": float(np.sqrt(rss / X.size)),
            "pve": 100.0 * (1.0 - rss / tss) if tss > 0 else np.nan,
        }
