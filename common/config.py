from __future__ import annotations

import json
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Type, TypeVar

from common.errors import ConfigurationError
from common.geometry import Color, Format

E = TypeVar("E", bound=Enum)


class Detail(Enum):
    EXCLUDE = "exclude"  # histograms only
    INCLUDE = "include"  # histograms plus per-block average/variance


class VarianceMode(Enum):
    COUNT = "count"
    WEIGHTED = "weighted"


class ErrorLevel(Enum):
    SILENT = "silent"
    VERBOSE = "verbose"


class Backend(Enum):
    AUTO = "AUTO"
    GPU = "GPU"
    CPU = "CPU"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base without mutating inputs."""
    merged = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def load_config(
    default_path: Path | str = Path("configs/default.json"),
    local_path: Path | str = Path("configs/local.json"),
) -> Dict[str, Any]:
    """
    Load default config and optionally merge local overrides.
    """
    default_path = Path(default_path)
    local_path = Path(local_path)

    with default_path.open("r", encoding="utf-8") as f:
        base_cfg = json.load(f)

    if local_path.exists():
        with local_path.open("r", encoding="utf-8") as f:
            local_cfg = json.load(f)
        return _deep_merge(base_cfg, local_cfg)

    return base_cfg


def ensure_output_dirs(cfg: Dict[str, Any]) -> None:
    """
    Create output directories referenced by the config if they do not exist.
    """
    outputs = cfg.get("outputs", {})
    paths = [
        outputs.get("root"),
        outputs.get("debug_dir"),
        Path(outputs.get("metrics_csv", "")).parent if outputs.get("metrics_csv") else None,
        Path(outputs.get("report_txt", "")).parent if outputs.get("report_txt") else None,
    ]
    for p in paths:
        if not p:
            continue
        Path(p).mkdir(parents=True, exist_ok=True)


def parse_enum(enum_cls: Type[E], value: Any, key: str) -> E:
    """
    Accept an enum member, its value or its name (case-insensitive).
    """
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    for member in enum_cls:
        if text in (str(member.value).lower(), member.name.lower()):
            return member
    choices = ", ".join(str(m.value) for m in enum_cls)
    raise ConfigurationError(f"Unknown {key} {value!r}; expected one of: {choices}")


@dataclass(frozen=True)
class HistogramConfig:
    format: Format = Format.YUV
    color: Color = Color.CHROMATIC
    image_width: int = 1920
    image_height: int = 1080
    block_width: int = 8
    block_height: int = 8
    num_bins: int = 16
    variance_mode: VarianceMode = VarianceMode.WEIGHTED
    error_level: ErrorLevel = ErrorLevel.SILENT
    backend: Backend = Backend.AUTO
    allow_failover: bool = True
    threads_per_block: int = 128

    def __post_init__(self) -> None:
        validate_num_bins(self.num_bins)
        if self.threads_per_block <= 0:
            raise ConfigurationError(
                f"threads_per_block must be positive, got {self.threads_per_block}"
            )

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "HistogramConfig":
        """
        Build from the "histogram" section of a loaded config; missing keys keep defaults.
        """
        defaults = cls()
        return cls(
            format=parse_enum(Format, section.get("format", defaults.format), "format"),
            color=parse_enum(Color, section.get("color", defaults.color), "color"),
            image_width=int(section.get("image_width", defaults.image_width)),
            image_height=int(section.get("image_height", defaults.image_height)),
            block_width=int(section.get("block_width", defaults.block_width)),
            block_height=int(section.get("block_height", defaults.block_height)),
            num_bins=int(section.get("num_bins", defaults.num_bins)),
            variance_mode=parse_enum(
                VarianceMode, section.get("variance_mode", defaults.variance_mode), "variance_mode"
            ),
            error_level=parse_enum(
                ErrorLevel, section.get("error_level", defaults.error_level), "error_level"
            ),
            backend=parse_enum(Backend, section.get("backend", defaults.backend), "backend"),
            allow_failover=bool(section.get("allow_failover", defaults.allow_failover)),
            threads_per_block=int(section.get("threads_per_block", defaults.threads_per_block)),
        )

    def with_changes(self, **changes: Any) -> "HistogramConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {k: (v.value if isinstance(v, Enum) else v) for k, v in asdict(self).items()}


def validate_num_bins(num_bins: int) -> None:
    # 256 // num_bins must tile [0, 256) exactly, otherwise the top averages overflow the last bin
    if not isinstance(num_bins, int) or num_bins <= 0 or num_bins > 256 or 256 % num_bins:
        raise ConfigurationError(f"num_bins must be a divisor of 256, got {num_bins!r}")


def histogram_config_from(cfg: Dict[str, Any]) -> HistogramConfig:
    return HistogramConfig.from_dict(cfg.get("histogram", {}))
