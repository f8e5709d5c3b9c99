import pytest

pd = pytest.importorskip("pandas")
np = pytest.importorskip("numpy")

from tom_ncp.errors import EmptyInput, LabelMismatch, ShapeMismatch
from tom_ncp.tensor_assembly import (
    assemble_tensor,
    load_condition_tensor,
    read_similarity_matrix,
)


def create_tom(genes, seed):
    """Symmetric TOM-like matrix in [0, 1] with gene labels."""
    rng = np.random.default_rng(seed)
    M = rng.random((len(genes), len(genes)))
    M = (M + M.T) / 2
    np.fill_diagonal(M, 1.0)
    return pd.DataFrame(M, index=genes, columns=genes)


def test_stacking_follows_the_given_order():
    """Slice k is exactly the k-th matrix in the list."""
    mats = [np.full((3, 3), float(k)) for k in range(4)]
    pairs = [(f"cond_{k}", m) for k, m in zip([2, 0, 3, 1], mats)]
    tensor = assemble_tensor(pairs)
    assert tensor.shape == (3, 3, 4)
    assert tensor.condition_labels == ["cond_2", "cond_0", "cond_3", "cond_1"]
    for k in range(4):
        assert np.all(tensor.data[:, :, k] == k)


def test_no_matrices_raises_empty_input():
    with pytest.raises(EmptyInput):
        assemble_tensor([])


def test_shape_mismatch():
    with pytest.raises(ShapeMismatch, match="'b'"):
        assemble_tensor([("a", np.ones((3, 3))), ("b", np.ones((3, 4)))])


def test_non_2d_matrix_raises_shape_mismatch():
    with pytest.raises(ShapeMismatch):
        assemble_tensor([("a", np.ones((3, 3, 1)))])


def test_labels_taken_from_dataframes():
    genes = ["TNF", "IL6", "CXCL8", "S100A8"]
    tensor = assemble_tensor(
        [("CD", create_tom(genes, 0)), ("UC", create_tom(genes, 1))]
    )
    assert tensor.row_labels == genes
    assert tensor.col_labels == genes
    assert tensor.condition("UC").loc["IL6", "TNF"] == pytest.approx(
        create_tom(genes, 1).loc["IL6", "TNF"]
    )


def test_gene_order_mismatch_raises():
    genes = ["TNF", "IL6", "CXCL8"]
    first = create_tom(genes, 0)
    second = create_tom(genes, 1).loc[genes[::-1], genes[::-1]]
    with pytest.raises(LabelMismatch):
        assemble_tensor([("CD", first), ("UC", second)])


def test_duplicate_condition_labels_raise():
    with pytest.raises(LabelMismatch, match="Duplicate"):
        assemble_tensor([("CD", np.ones((2, 2))), ("CD", np.ones((2, 2)))])


def test_default_and_explicit_labels_for_arrays():
    tensor = assemble_tensor([("a", np.ones((2, 3)))])
    assert tensor.row_labels == ["gene_0", "gene_1"]
    assert tensor.col_labels == ["gene_0", "gene_1", "gene_2"]

    tensor = assemble_tensor(
        [("a", np.ones((2, 2)))], row_labels=["x", "y"], col_labels=["x", "y"]
    )
    assert tensor.row_labels == ["x", "y"]

    with pytest.raises(ShapeMismatch):
        assemble_tensor([("a", np.ones((2, 2)))], row_labels=["x"])


def test_tensor_is_read_only_and_dtype_configurable():
    tensor = assemble_tensor([("a", np.ones((2, 2)))], dtype=np.float32)
    assert tensor.data.dtype == np.float32
    with pytest.raises(ValueError):
        tensor.data[0, 0, 0] = 5.0


def test_read_similarity_matrix_csv_and_tsv(tmp_path):
    genes = ["g1", "g2", "g3"]
    df = create_tom(genes, 2)
    df.to_csv(tmp_path / "cd.csv")
    df.to_csv(tmp_path / "uc.tsv", sep="\t")

    csv = read_similarity_matrix(tmp_path / "cd.csv")
    tsv = read_similarity_matrix(tmp_path / "uc.tsv")
    assert list(csv.index) == genes
    assert list(tsv.columns) == genes
    assert np.allclose(csv.to_numpy(), df.to_numpy())
    assert np.allclose(tsv.to_numpy(), df.to_numpy())


def test_read_similarity_matrix_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_similarity_matrix(tmp_path / "nope.csv")


def test_load_condition_tensor_keeps_listed_order(tmp_path):
    genes = ["g1", "g2", "g3", "g4"]
    # written in a different order than they are listed
    for label, seed in [("z_last", 0), ("a_first", 1), ("m_mid", 2)]:
        create_tom(genes, seed).to_csv(tmp_path / f"{label}.csv")

    conditions = [
        ("m_mid", tmp_path / "m_mid.csv"),
        ("z_last", tmp_path / "z_last.csv"),
        ("a_first", tmp_path / "a_first.csv"),
    ]
    tensor = load_condition_tensor(conditions)
    assert tensor.condition_labels == ["m_mid", "z_last", "a_first"]
    assert np.allclose(tensor.data[:, :, 1], create_tom(genes, 0).to_numpy())
    assert tensor.row_labels == genes


def test_load_condition_tensor_empty():
    with pytest.raises(EmptyInput):
        load_condition_tensor([])


def test_read_similarity_matrix_parquet(tmp_path):
    pytest.importorskip("pyarrow")
    genes = ["g1", "g2", "g3"]
    df = create_tom(genes, 3)
    df.to_parquet(tmp_path / "cd.parquet")

    back = read_similarity_matrix(tmp_path / "cd.parquet")
    assert list(back.index) == genes
    assert np.allclose(back.to_numpy(), df.to_numpy())
