"""Configuration management for TSRexPy."""

from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from TSRexPy.exceptions import ConfigurationError


@dataclass(frozen=True)
class ClusteringConfig:
    """Parameters of the TSS -> TSR clustering step."""

    # Maximum gap (bp) between consecutive TSSs merged into one TSR
    max_distance: int = 25
    # Minimum per-position score for a TSS to take part in clustering
    threshold: float = 1.0
    # Minimum number of samples passing the threshold at a position
    n_samples: int = 1
    # Pool all samples into one coordinate space before merging
    consensus: bool = False
    consensus_name: str = "consensus"
    score_column: str = "score"
    processes: int = 1

    def __post_init__(self):
        if self.max_distance < 1:
            raise ConfigurationError(f"max_distance must be >= 1, got {self.max_distance}")
        if self.threshold <= 0:
            raise ConfigurationError(f"threshold must be > 0, got {self.threshold}")
        if self.n_samples < 1:
            raise ConfigurationError(f"n_samples must be >= 1, got {self.n_samples}")
        if self.processes < 1:
            raise ConfigurationError(f"processes must be >= 1, got {self.processes}")
        if not self.consensus_name:
            raise ConfigurationError("consensus_name must not be empty")


@dataclass(frozen=True)
class MetricsConfig:
    """Parameters of the per-TSR metric computation."""

    lower_quantile: float = 0.25
    upper_quantile: float = 0.75
    # TSRs with an interquantile width at or below this are 'peaked'
    peaked_threshold: float = 10.0
    score_column: str = "score"
    processes: int = 1

    def __post_init__(self):
        if not 0 <= self.lower_quantile < self.upper_quantile <= 1:
            raise ConfigurationError(
                f"Quantiles must satisfy 0 <= lower < upper <= 1, "
                f"got lower={self.lower_quantile}, upper={self.upper_quantile}"
            )
        if self.peaked_threshold <= 0:
            raise ConfigurationError(f"peaked_threshold must be > 0, got {self.peaked_threshold}")
        if self.processes < 1:
            raise ConfigurationError(f"processes must be >= 1, got {self.processes}")


_SECTIONS = {
    'clustering': ClusteringConfig,
    'metrics': MetricsConfig,
}


def _build_section(name: str, values: Any):
    cls = _SECTIONS[name]
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown key(s) in config section '{name}': {unknown}")
    return cls(**values)


def load_config(path: Union[str, Path]) -> Tuple[ClusteringConfig, MetricsConfig]:
    """
    Load clustering and metrics settings from a YAML file.

    Both sections are optional; missing keys keep their defaults.

    Args:
        path: Path to the YAML config file

    Returns:
        Tuple of (ClusteringConfig, MetricsConfig)
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ConfigurationError(f"Unknown config section(s): {unknown}")

    return (
        _build_section('clustering', data.get('clustering')),
        _build_section('metrics', data.get('metrics')),
    )


def override(config, **changes):
    """Return a copy of a config with the non-None changes applied."""
    values = asdict(config)
    values.update({k: v for k, v in changes.items() if v is not None})
    return type(config)(**values)


def dump_config(clustering: Optional[ClusteringConfig] = None,
                metrics: Optional[MetricsConfig] = None) -> str:
    """Render configs (defaults when omitted) as a YAML document."""
    data: Dict[str, Any] = {
        'clustering': asdict(clustering or ClusteringConfig()),
        'metrics': asdict(metrics or MetricsConfig()),
    }
    return yaml.safe_dump(data, sort_keys=False)
