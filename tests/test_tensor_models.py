import pytest

np = pytest.importorskip("numpy")
pd = pytest.importorskip("pandas")

from tom_ncp.config import NCPConfig
from tom_ncp.hals import ncp_hals
from tom_ncp.tensor_models import (
    compute_factor_stats,
    compute_item_membership_stats,
    errors,
    summarize_fit,
    sweep_ranks,
)


def create_test_tensor(rank=2, seed=0):
    rng = np.random.default_rng(seed)
    factors = [rng.random((d, rank)) for d in (8, 8, 4)]
    return np.einsum("ir,jr,kr->ijk", *factors), factors


def test_errors_perfect_fit():
    X, factors = create_test_tensor()
    pve, rmse = errors(X, factors)
    assert pve == pytest.approx(100.0)
    assert rmse == pytest.approx(0.0, abs=1e-12)


def test_errors_zero_model():
    X, factors = create_test_tensor()
    zero = [np.zeros_like(F) for F in factors]
    pve, rmse = errors(X, zero)
    assert pve < 0.0
    assert rmse == pytest.approx(np.sqrt(np.mean(X**2)))


def test_factor_stats_count_empty_components():
    A = np.array([[1.0, 0.0], [1.0, 0.0]])
    stats = compute_factor_stats([A], factor_names=["A"])
    assert stats["A_total_components"] == 2
    assert stats["A_empty_components"] == 1
    assert stats["A_mean_strength"] == pytest.approx(np.sqrt(2) / 2)


def test_item_membership_stats():
    A = np.array([[1.0, 3.0], [0.0, 0.0], [2.0, 2.0]])
    stats = compute_item_membership_stats([A], factor_names=["A"])
    assert stats["A_item_mean_loading_avg"] == pytest.approx(4.0 / 3.0)
    assert stats["A_item_mean_loading_q25"] == pytest.approx(1.0)
    assert stats["A_item_mean_loading_q75"] == pytest.approx(2.0)


def test_summarize_fit_reports_pve_and_stats():
    X, _ = create_test_tensor()
    result = ncp_hals(X, 2, max_iter=200, seed=0)
    stats = summarize_fit(X, result)
    assert stats["rel_error"] == result.convergence.final_error
    assert stats["pve"] > 90.0
    assert stats["A_total_components"] == 2
    assert "C_item_mean_loading_avg" in stats


def test_sweep_ranks_reports_every_rank(tmp_path):
    """One row per rank; a larger rank never fits much worse."""
    X, _ = create_test_tensor(rank=3, seed=1)
    output_path = tmp_path / "sweep" / "ranks.csv"
    config = NCPConfig(rank=1, max_iter=200, seed=0, n_restarts=2)

    results = sweep_ranks(X, [1, 2, 3], config, output_path, progress=False)
    assert list(results["rank"]) == [1, 2, 3]
    assert {"pve", "rmse", "rel_error", "converged", "restart_stability"} <= set(
        results.columns
    )
    assert results["rel_error"].iloc[2] <= results["rel_error"].iloc[0] + 1e-9
    assert output_path.exists()
    saved = pd.read_csv(output_path)
    assert list(saved["rank"]) == [1, 2, 3]


def test_sweep_ranks_needs_ranks():
    X, _ = create_test_tensor()
    with pytest.raises(ValueError):
        sweep_ranks(X, [], NCPConfig(rank=1))
