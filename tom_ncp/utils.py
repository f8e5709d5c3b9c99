import sys
import argparse
import logging
import multiprocessing
from pathlib import Path

import pandas as pd


# ---- One base for everything ----
BASE_LOGGER = "tom_ncp"
_BASE = logging.getLogger(BASE_LOGGER)  # the only logger we configure here


def setup_logging(
    log_path: str | Path | None, level: str = "INFO"
) -> logging.Logger:
    """Configure the base logger once (file + console)."""
    if getattr(_BASE, "_configured", False):
        return _BASE

    _BASE.handlers.clear()
    _BASE.setLevel(getattr(logging, level.upper(), logging.INFO))
    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - pid=%(process)d - %(filename)s:%(lineno)d - %(funcName)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Optional file handler
    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_path), encoding="utf-8")
        fh.setFormatter(fmt)
        _BASE.addHandler(fh)

    # Console handler
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    _BASE.addHandler(sh)

    # Do not bubble to the *root* logger
    _BASE.propagate = False
    _BASE._configured = True
    return _BASE


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a child logger that inherits the base handlers."""
    if not name or name == BASE_LOGGER:
        return _BASE
    if name.startswith(f"{BASE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{BASE_LOGGER}.{name}")


logger = get_logger(__name__)


def str2bool(v):
    if isinstance(v, bool):
        return v
    if v.lower() in ("yes", "true", "t", "1"):
        return True
    elif v.lower() in ("no", "false", "f", "0"):
        return False
    else:
        raise argparse.ArgumentTypeError(
            "Expected a boolean value (true/false)"
        )


def delimiter_for(fn: Path, sep: str | None = None) -> str:
    """Column separator for a delimited file: explicit, else from the suffix."""
    if sep:
        return sep
    if fn.suffix.lower() in (".tsv", ".txt", ".tab"):
        return "\t"
    return ","


def save_csv_or_parquet(df: pd.DataFrame, fn: Path | None) -> None:
    if fn is None:
        logger.warning("No output file specified. Not saving.")
        return
    fn = Path(fn)
    fn.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Saving df to {fn}")
    if fn.suffix == ".parquet":
        df.to_parquet(fn)
    else:
        df.to_csv(fn, index=False, sep=delimiter_for(fn))


def read_csv_or_parquet(
    fn: Path, sep: str | None = None, index_col: int | None = None
) -> pd.DataFrame:
    fn = Path(fn)
    logger.info(f"Loading df from {fn}")
    if fn.suffix == ".parquet":
        return pd.read_parquet(fn)
    else:
        return pd.read_csv(fn, sep=delimiter_for(fn, sep), index_col=index_col)


def get_n_jobs(n_jobs: int) -> int:
    # Determine number of processes
    if n_jobs == -1:
        n_jobs = multiprocessing.cpu_count()
    elif n_jobs <= 1:
        n_jobs = 1
    return n_jobs


def parse_range(arg: str) -> list[int] | None:
    """
    Parse a CLI rank argument that can be either:
      - a colon-separated range 'START:END' (inclusive of START, exclusive of END),
      - or a comma-separated list 'a,b,c',
      - or a single integer.
    Returns a list of ints, or None for an empty argument.
    """
    # Handle empty string
    if not arg or arg.strip() == "":
        return None

    try:
        if ":" in arg:
            start, end = arg.split(":")
            return list(range(int(start), int(end)))
        return [int(x.strip()) for x in arg.split(",") if x.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            f"Invalid rank list: {arg}. Use START:END or a,b,c"
        ) from e


def parse_condition(arg: str) -> tuple[str, Path]:
    """Parse a CLI condition 'LABEL=PATH' into (label, path)."""
    label, sep, path = arg.partition("=")
    if not sep or not label.strip() or not path.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid condition: {arg}. Use LABEL=PATH"
        )
    return label.strip(), Path(path.strip())
