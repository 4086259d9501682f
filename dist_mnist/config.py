### dist_mnist/config.py
## YAML config loading, environment overlay, and validated training config.

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping
import datetime as dt
import os
import uuid

import yaml


class ConfigError(ValueError):
    """Raised when a required setting is missing, malformed, or inconsistent."""


BACKEND_ALIASES = {
    "gloo": "gloo",
    "socket": "gloo",
    "socket-transport": "gloo",
    "nccl": "nccl",
    "gpu-direct": "nccl",
    "gpu-direct-transport": "nccl",
}

DEVICE_ALIASES = {
    "cpu": "cpu",
    "cuda": "cuda",
    "gpu": "cuda",
}

DATASETS = ("mnist", "synthetic")
SYNC_ERROR_POLICIES = ("log", "raise")
TIMING_MODES = ("sync", "none", "cuda_events")

# Environment variable -> dotted config key. WORLD_SIZE wins over SIZE.
ENV_KEYS = (
    ("MASTER_ADDR", "distributed.master_addr"),
    ("MASTER_PORT", "distributed.master_port"),
    ("SIZE", "distributed.world_size"),
    ("WORLD_SIZE", "distributed.world_size"),
    ("RANK", "distributed.rank"),
    ("BACKEND", "distributed.backend"),
    ("DEVICE", "distributed.device"),
    ("GLOO_SOCKET_IFNAME", "distributed.network_interfaces"),
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dictionary.

    Args:
        path: Path to the YAML file to load

    Returns:
        Dictionary containing the YAML file contents

    Raises:
        ConfigError: If the file is missing or the YAML root is not a mapping
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return data


def deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries.

    Later values (from override) take precedence over earlier ones (from base).
    Nested dictionaries are merged recursively.

    Args:
        base: Base dictionary
        override: Dictionary with override values

    Returns:
        New merged dictionary (does not modify inputs)
    """
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_yaml_files(paths: Iterable[Path]) -> dict[str, Any]:
    """Load and merge multiple YAML files in order, later files winning."""
    merged: dict[str, Any] = {}
    for path in paths:
        merged = deep_merge(merged, load_yaml_file(path))
    return merged


def set_dotted(cfg: dict[str, Any], key: str, value: Any) -> dict[str, Any]:
    """Return a copy of cfg with ``a.b.c`` set to value."""
    parts = [p for p in key.split(".") if p]
    if not parts:
        raise ConfigError(f"Invalid config key: {key!r}")
    override: dict[str, Any] = {parts[-1]: value}
    for part in reversed(parts[:-1]):
        override = {part: override}
    return deep_merge(cfg, override)


def parse_override(text: str) -> tuple[str, Any]:
    """Parse a ``key=value`` command-line override; the value is read as YAML."""
    if "=" not in text:
        raise ConfigError(f"Override must look like key=value: {text!r}")
    key, raw = text.split("=", 1)
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse override {text!r}: {exc}") from exc
    return key.strip(), value


def apply_env_overrides(
    cfg: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Overlay the launcher environment variables on top of cfg."""
    environ = os.environ if environ is None else environ
    merged = dict(cfg)
    for name, key in ENV_KEYS:
        value = environ.get(name)
        if value is None or value == "":
            continue
        merged = set_dotted(merged, key, value)
    return merged


def generate_run_id() -> str:
    """Generate a unique run identifier.

    Format: YYYYMMDD_HHMMSS_<8-char-hex>
    Example: 20260124_143022_a1b2c3d4
    """
    stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%d_%H%M%S")
    suffix = uuid.uuid4().hex[:8]
    return f"{stamp}_{suffix}"


def resolve_config(
    paths: Iterable[Path],
    overrides: Iterable[str] = (),
    environ: Mapping[str, str] | None = None,
    run_id: str | None = None,
) -> dict[str, Any]:
    """Resolve the raw configuration mapping.

    Layers, lowest precedence first: YAML files in order, launcher
    environment variables, ``key=value`` overrides. A run id is added if
    none is given.
    """
    paths = list(paths)
    merged = merge_yaml_files(paths)
    merged = apply_env_overrides(merged, environ)
    for text in overrides:
        key, value = parse_override(text)
        merged = set_dotted(merged, key, value)
    merged["run_id"] = run_id or merged.get("run_id") or generate_run_id()
    merged["config_paths"] = [str(p) for p in paths]
    return merged


def _cfg_value(cfg: Mapping[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path.split("."):
        if not isinstance(cur, Mapping) or key not in cur:
            return default
        cur = cur[key]
    return cur


_MISSING = object()


def _require(cfg: Mapping[str, Any], path: str, default: Any = _MISSING) -> Any:
    value = _cfg_value(cfg, path, _MISSING)
    if value is _MISSING or value is None or value == "":
        if default is _MISSING:
            raise ConfigError(f"Missing required setting: {path}")
        return default
    return value


def _as_int(cfg: Mapping[str, Any], path: str, default: Any = _MISSING) -> int:
    value = _require(cfg, path, default)
    if isinstance(value, bool):
        raise ConfigError(f"{path} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path} must be an integer, got {value!r}") from exc


def _as_float(cfg: Mapping[str, Any], path: str, default: Any = _MISSING) -> float:
    value = _require(cfg, path, default)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path} must be a number, got {value!r}") from exc


def _as_bool(cfg: Mapping[str, Any], path: str, default: bool) -> bool:
    value = _require(cfg, path, default)
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{path} must be a boolean, got {value!r}")


def _as_choice(cfg: Mapping[str, Any], path: str, choices: Mapping[str, str] | Iterable[str], default: str) -> str:
    value = str(_require(cfg, path, default)).strip().lower()
    if isinstance(choices, Mapping):
        if value not in choices:
            raise ConfigError(f"Unsupported {path}: {value!r} (expected one of {sorted(choices)})")
        return choices[value]
    choices = tuple(choices)
    if value not in choices:
        raise ConfigError(f"Unsupported {path}: {value!r} (expected one of {list(choices)})")
    return value


def _as_interfaces(cfg: Mapping[str, Any]) -> tuple[str, ...]:
    value = _cfg_value(cfg, "distributed.network_interfaces")
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ConfigError(f"distributed.network_interfaces must be a string or list, got {value!r}")
    return tuple(item.strip() for item in items if item.strip())


@dataclass(frozen=True)
class TrainingConfig:
    master_addr: str
    master_port: int
    world_size: int
    rank: int
    backend: str = "gloo"
    device: str = "cpu"
    network_interfaces: tuple[str, ...] = ()
    timeout_s: float = 100.0
    learning_rate: float = 1e-2
    total_batch_size: int = 64
    epochs: int = 10
    seed: int = 0
    shuffle: bool = False
    on_sync_error: str = "log"
    dataset: str = "mnist"
    data_root: str = "data/mnist"
    download: bool = False
    synthetic_train_size: int = 256
    synthetic_test_size: int = 64
    out_dir: str | None = None
    timing_mode: str = "sync"
    run_id: str = ""

    def __post_init__(self) -> None:
        if not 0 < self.master_port < 65536:
            raise ConfigError(f"master_port out of range: {self.master_port}")
        if self.world_size < 1:
            raise ConfigError(f"world_size must be positive, got {self.world_size}")
        if not 0 <= self.rank < self.world_size:
            raise ConfigError(f"rank must be in [0, {self.world_size}), got {self.rank}")
        if self.backend == "nccl" and self.device != "cuda":
            # GPU-direct transport only moves device memory.
            object.__setattr__(self, "device", "cuda")
        if self.total_batch_size < 1:
            raise ConfigError(f"total_batch_size must be positive, got {self.total_batch_size}")
        if self.total_batch_size % self.world_size != 0:
            raise ConfigError(
                f"total_batch_size {self.total_batch_size} is not divisible by world_size {self.world_size}"
            )
        if self.epochs < 0:
            raise ConfigError(f"epochs must be non-negative, got {self.epochs}")
        if self.learning_rate <= 0:
            raise ConfigError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.timeout_s <= 0:
            raise ConfigError(f"timeout_s must be positive, got {self.timeout_s}")

    @property
    def per_worker_batch_size(self) -> int:
        return self.total_batch_size // self.world_size

    @property
    def is_coordinator(self) -> bool:
        return self.rank == 0

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "TrainingConfig":
        """Validate a resolved config mapping into a TrainingConfig.

        Raises:
            ConfigError: On any missing, unparsable, or inconsistent value
        """
        out_dir = _cfg_value(cfg, "logging.out_dir")
        return cls(
            master_addr=str(_require(cfg, "distributed.master_addr")),
            master_port=_as_int(cfg, "distributed.master_port"),
            world_size=_as_int(cfg, "distributed.world_size"),
            rank=_as_int(cfg, "distributed.rank"),
            backend=_as_choice(cfg, "distributed.backend", BACKEND_ALIASES, "gloo"),
            device=_as_choice(cfg, "distributed.device", DEVICE_ALIASES, "cpu"),
            network_interfaces=_as_interfaces(cfg),
            timeout_s=_as_float(cfg, "distributed.timeout_s", 100.0),
            learning_rate=_as_float(cfg, "training.learning_rate", 1e-2),
            total_batch_size=_as_int(cfg, "training.total_batch_size", 64),
            epochs=_as_int(cfg, "training.epochs", 10),
            seed=_as_int(cfg, "training.seed", 0),
            shuffle=_as_bool(cfg, "training.shuffle", False),
            on_sync_error=_as_choice(cfg, "training.on_sync_error", SYNC_ERROR_POLICIES, "log"),
            dataset=_as_choice(cfg, "data.dataset", DATASETS, "mnist"),
            data_root=str(_require(cfg, "data.root", "data/mnist")),
            download=_as_bool(cfg, "data.download", False),
            synthetic_train_size=_as_int(cfg, "data.synthetic_train_size", 256),
            synthetic_test_size=_as_int(cfg, "data.synthetic_test_size", 64),
            out_dir=None if out_dir in (None, "") else str(out_dir),
            timing_mode=_as_choice(cfg, "logging.timing_mode", TIMING_MODES, "sync"),
            run_id=str(cfg.get("run_id") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["network_interfaces"] = list(self.network_interfaces)
        data["per_worker_batch_size"] = self.per_worker_batch_size
        return data


def config_to_yaml(config: Mapping[str, Any]) -> str:
    """Convert a configuration mapping to a YAML string."""
    return yaml.safe_dump(dict(config), sort_keys=False)


def write_config(config: Mapping[str, Any], run_dir: Path) -> Path:
    """Write configuration to ``config.yaml`` in the run directory.

    Creates the run directory if it doesn't exist.

    Returns:
        Path to the written config.yaml file
    """
    run_dir.mkdir(parents=True, exist_ok=True)
    out_path = run_dir / "config.yaml"
    out_path.write_text(config_to_yaml(config), encoding="utf-8")
    return out_path
