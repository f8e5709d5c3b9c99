import json
import numbers
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from tom_ncp.errors import InvalidRank
from tom_ncp.utils import get_logger

logger = get_logger(__name__)

INIT_METHODS = ("random", "svd")
DTYPES = ("float64", "float32")


@dataclass(frozen=True)
class NCPConfig:
    """
    Options for one nonnegative CP-HALS run.

    rank       : number of latent components (R)
    max_iter   : cap on full (A, B, C) sweeps
    tol        : threshold on the relative decrease of the relative error
    seed       : RNG seed for initialization (None = fresh entropy)
    n_restarts : independent fits with seeds seed, seed + 1, ...
    patience   : consecutive sweeps below tol before stopping
    init       : 'random' or 'svd'
    n_jobs     : worker processes for restarts (-1 = all cores)
    eps        : guard added to HALS denominators
    """

    rank: int
    max_iter: int = 500
    tol: float = 1e-6
    seed: Optional[int] = None
    n_restarts: int = 1
    patience: int = 3
    init: str = "random"
    n_jobs: int = 1
    eps: float = 1e-12

    def __post_init__(self):
        object.__setattr__(self, "rank", check_rank(self.rank))
        # YAML reads exponent floats such as 1e-6 as strings
        for name in ("max_iter", "n_restarts", "patience", "n_jobs"):
            object.__setattr__(self, name, int(getattr(self, name)))
        for name in ("tol", "eps"):
            object.__setattr__(self, name, float(getattr(self, name)))
        if self.seed is not None:
            object.__setattr__(self, "seed", int(self.seed))
        if int(self.max_iter) < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        if float(self.tol) < 0:
            raise ValueError(f"tol must be >= 0, got {self.tol}")
        if int(self.n_restarts) < 1:
            raise ValueError(
                f"n_restarts must be >= 1, got {self.n_restarts}"
            )
        if int(self.patience) < 1:
            raise ValueError(f"patience must be >= 1, got {self.patience}")
        if self.init not in INIT_METHODS:
            raise ValueError(
                f"Unknown init '{self.init}'. Choose from {INIT_METHODS}"
            )
        if float(self.eps) <= 0:
            raise ValueError(f"eps must be > 0, got {self.eps}")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "NCPConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(
                f"Unknown decomposition option(s): {unknown}. "
                f"Valid options: {sorted(known)}"
            )
        return cls(**raw)

    def with_overrides(self, **overrides) -> "NCPConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def check_rank(rank) -> int:
    if isinstance(rank, bool) or not isinstance(rank, numbers.Integral):
        raise InvalidRank(f"rank must be a positive integer, got {rank!r}")
    if rank <= 0:
        raise InvalidRank(f"rank must be a positive integer, got {rank}")
    return int(rank)


@dataclass
class PipelineConfig:
    """Inputs, outputs and decomposition options for one pipeline run."""

    conditions: List[Tuple[str, Path]]
    output_dir: Path
    decomposition: NCPConfig
    header: bool = False
    delimiter: str = ","
    prefix: str = "factor_"
    label_conditions: bool = True
    dtype: str = "float64"
    input_sep: Optional[str] = None

    def __post_init__(self):
        if self.dtype not in DTYPES:
            raise ValueError(
                f"Unsupported dtype '{self.dtype}'. Choose from {DTYPES}"
            )


def read_config_file(config_path: Path) -> Dict[str, Any]:
    """
    Read a JSON or YAML file into a plain dict.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    if suffix == ".json":
        with config_path.open("r") as f:
            raw = json.load(f)
    elif suffix in (".yml", ".yaml"):
        with config_path.open("r") as f:
            raw = yaml.safe_load(f)
    else:
        raise ValueError(
            f"Unsupported config file extension '{suffix}'. "
            "Use .json, .yaml or .yml."
        )
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must hold a mapping")
    return raw


def _resolve(path: str | Path, base_dir: Path) -> Path:
    p = Path(path).expanduser()
    return p if p.is_absolute() else (base_dir / p).resolve()


def parse_conditions(
    raw_conditions: Any, base_dir: Path
) -> List[Tuple[str, Path]]:
    """
    Accepts either a list of {label, path} mappings or a list of
    [label, path] pairs. Order is kept exactly as written.
    """
    if not raw_conditions:
        return []
    pairs = []
    for i, item in enumerate(raw_conditions):
        if isinstance(item, dict):
            try:
                label, path = item["label"], item["path"]
            except KeyError as e:
                raise ValueError(
                    f"Condition #{i} needs 'label' and 'path' keys, got {item}"
                ) from e
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            label, path = item
        else:
            raise ValueError(
                f"Condition #{i} must be a mapping or a [label, path] pair, got {item!r}"
            )
        pairs.append((str(label), _resolve(path, base_dir)))
    return pairs


def pipeline_config_from_dict(
    raw: Dict[str, Any], base_dir: Path | None = None
) -> PipelineConfig:
    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
    raw = dict(raw)

    decomposition = raw.pop("decomposition", None)
    if not isinstance(decomposition, dict):
        raise ValueError("Config needs a 'decomposition' mapping with 'rank'")
    ncp_config = NCPConfig.from_dict(decomposition)

    conditions = parse_conditions(raw.pop("conditions", []), base_dir)
    output_dir = _resolve(raw.pop("output_dir", "output"), base_dir)

    known = {
        "header",
        "delimiter",
        "prefix",
        "label_conditions",
        "dtype",
        "input_sep",
    }
    options = {k: raw.pop(k) for k in list(raw) if k in known}
    if raw:
        logger.warning(f"Ignoring unknown config keys: {sorted(raw)}")

    return PipelineConfig(
        conditions=conditions,
        output_dir=output_dir,
        decomposition=ncp_config,
        **options,
    )


def load_pipeline_config(config_path: Path) -> PipelineConfig:
    """
    Load a pipeline config from JSON or YAML.

    YAML example:

        conditions:
          - {label: CD_inflamed, path: tom/CD_inflamed.csv}
          - {label: UC_inflamed, path: tom/UC_inflamed.csv}
        output_dir: results/ncp
        header: false
        decomposition:
          rank: 10
          max_iter: 500
          tol: 1.0e-6
          seed: 42
          n_restarts: 4

    Relative paths are resolved against the config file's directory.
    """
    config_path = Path(config_path).resolve()
    raw = read_config_file(config_path)
    config = pipeline_config_from_dict(raw, base_dir=config_path.parent)
    logger.info(
        f"Loaded config {config_path}: {len(config.conditions)} conditions, "
        f"decomposition={config.decomposition.to_dict()}"
    )
    return config
