import json

import pytest

pd = pytest.importorskip("pandas")
np = pytest.importorskip("numpy")
yaml = pytest.importorskip("yaml")

from tom_ncp.config import NCPConfig, PipelineConfig, load_pipeline_config
from tom_ncp.errors import EmptyInput, ShapeMismatch
from tom_ncp.factor_export import read_factor
from tom_ncp.pipeline import run_pipeline

GENES = [f"G{i:02d}" for i in range(12)][::-1]
CONDITIONS = ["CD_inflamed", "UC_inflamed", "control"]


def write_condition_files(directory, seed=0):
    """Three planted rank-2 TOM-like matrices written as labeled CSVs."""
    rng = np.random.default_rng(seed)
    A = rng.random((len(GENES), 2))
    C = rng.random((len(CONDITIONS), 2)) + 0.1
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for k, label in enumerate(CONDITIONS):
        M = (A * C[k]) @ A.T
        fn = directory / f"{label}.csv"
        pd.DataFrame(M, index=GENES, columns=GENES).to_csv(fn)
        paths.append((label, fn))
    return paths


def test_run_pipeline_writes_all_outputs(tmp_path):
    conditions = write_condition_files(tmp_path / "tom")
    config = PipelineConfig(
        conditions=conditions,
        output_dir=tmp_path / "out",
        decomposition=NCPConfig(rank=2, max_iter=300, seed=42, n_restarts=2),
    )
    result = run_pipeline(config, progress=False)

    out = tmp_path / "out"
    for name in ("factor_A.csv", "factor_B.csv", "factor_C.csv"):
        assert (out / name).exists()
    assert result.paths["A"] == out / "factor_A.csv"

    A = read_factor(out / "factor_A.csv")
    assert list(A.index) == GENES
    assert A.shape == (len(GENES), 2)
    assert np.all(A.to_numpy() >= 0)
    C = read_factor(out / "factor_C.csv")
    assert list(C.index) == CONDITIONS

    record = json.loads((out / "convergence.json").read_text())
    assert record["rank"] == 2
    assert record["conditions"] == CONDITIONS
    assert record["shape"] == [len(GENES), len(GENES), len(CONDITIONS)]
    assert record["final_error"] < 0.05

    restarts = pd.read_csv(out / "restarts.csv")
    assert list(restarts["seed"]) == [42, 43]
    assert restarts["is_best"].sum() == 1
    assert result.stats["pve"] > 90.0


def test_pipeline_from_yaml_with_header(tmp_path):
    write_condition_files(tmp_path / "tom", seed=1)
    raw = {
        "conditions": [
            {"label": label, "path": f"tom/{label}.csv"} for label in CONDITIONS
        ],
        "output_dir": "results",
        "header": True,
        "prefix": "ibd_",
        "decomposition": {"rank": 2, "max_iter": 100, "seed": 0},
    }
    fn = tmp_path / "run.yaml"
    fn.write_text(yaml.safe_dump(raw, sort_keys=False))

    result = run_pipeline(load_pipeline_config(fn), progress=False)
    B = read_factor(tmp_path / "results" / "ibd_B.csv", header=True)
    assert list(B.columns) == ["component_1", "component_2"]
    assert list(B.index) == GENES
    assert result.tensor.condition_labels == CONDITIONS


def test_pipeline_without_conditions():
    config = PipelineConfig(
        conditions=[], output_dir="out", decomposition=NCPConfig(rank=2)
    )
    with pytest.raises(EmptyInput):
        run_pipeline(config, progress=False)


def test_pipeline_shape_mismatch_raises_before_fitting(tmp_path):
    conditions = write_condition_files(tmp_path / "tom")
    small = tmp_path / "tom" / "small.csv"
    pd.DataFrame(np.ones((3, 3)), index=GENES[:3], columns=GENES[:3]).to_csv(small)
    config = PipelineConfig(
        conditions=conditions + [("small", small)],
        output_dir=tmp_path / "out",
        decomposition=NCPConfig(rank=2),
    )
    with pytest.raises(ShapeMismatch):
        run_pipeline(config, progress=False)
    assert not (tmp_path / "out").exists()
