import argparse
from pathlib import Path

import pytest

pd = pytest.importorskip("pandas")

from tom_ncp.utils import (
    delimiter_for,
    get_logger,
    parse_condition,
    parse_range,
    read_csv_or_parquet,
    save_csv_or_parquet,
    str2bool,
)


def test_parse_range_forms():
    assert parse_range("2:5") == [2, 3, 4]
    assert parse_range("2, 4,8") == [2, 4, 8]
    assert parse_range("6") == [6]
    assert parse_range("") is None


def test_parse_range_invalid():
    with pytest.raises(argparse.ArgumentTypeError):
        parse_range("a:b")


def test_parse_condition():
    assert parse_condition("CD=tom/cd.csv") == ("CD", Path("tom/cd.csv"))
    with pytest.raises(argparse.ArgumentTypeError):
        parse_condition("tom/cd.csv")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_condition("CD=")


def test_str2bool():
    assert str2bool("yes") is True
    assert str2bool("False") is False
    assert str2bool(True) is True
    with pytest.raises(argparse.ArgumentTypeError):
        str2bool("maybe")


def test_delimiter_for():
    assert delimiter_for(Path("x.tsv")) == "\t"
    assert delimiter_for(Path("x.txt")) == "\t"
    assert delimiter_for(Path("x.csv")) == ","
    assert delimiter_for(Path("x.csv"), ";") == ";"


def test_csv_round_trip_creates_parent(tmp_path):
    df = pd.DataFrame({"rank": [1, 2], "pve": [80.0, 95.5]})
    fn = tmp_path / "a" / "b" / "table.tsv"
    save_csv_or_parquet(df, fn)
    assert "\t" in fn.read_text().splitlines()[0]
    pd.testing.assert_frame_equal(read_csv_or_parquet(fn), df)


def test_get_logger_is_child_of_base():
    assert get_logger("tom_ncp.pipeline").name == "tom_ncp.pipeline"
    assert get_logger("scripts").name == "tom_ncp.scripts"
    assert get_logger().name == "tom_ncp"
