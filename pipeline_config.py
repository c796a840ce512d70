"""
Workflow configuration.

Settings are read from a YAML file (default: config/pipeline.yaml) into frozen
dataclasses, one per section. Unknown keys and out-of-range values raise
ConfigurationError when the file is loaded, before any data is read.
"""

from dataclasses import dataclass, field, fields, replace, asdict
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import yaml

from pipeline_errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InputConfig:
    count_table: Optional[str] = None  # tab-delimited genes × samples counts
    sample_metadata: Optional[str] = None
    annotation: Optional[str] = None  # biomaRt-style export, optional
    go_mapping: Optional[str] = None  # gene → GO category table, optional
    skip_rows: int = 0  # leading lines before the count table header
    sample_key: Optional[str] = None  # auto-detected when None
    group_column: Optional[str] = None  # auto-detected when None
    annotation_key: str = "symbol"
    remove_zero_genes: bool = True

    def __post_init__(self):
        if self.skip_rows < 0:
            raise ConfigurationError(f"input.skip_rows must be >= 0, got {self.skip_rows}")


@dataclass(frozen=True)
class NormalizationConfig:
    log_ratio_trim: float = 0.3
    sum_trim: float = 0.05
    ref_sample: Optional[str] = None  # upper-quartile rule when None

    def __post_init__(self):
        for name in ("log_ratio_trim", "sum_trim"):
            value = getattr(self, name)
            if not 0 <= value < 0.5:
                raise ConfigurationError(f"normalization.{name} must be in [0, 0.5), got {value}")


@dataclass(frozen=True)
class FilterConfig:
    cpm_cutoff: float = 1.0
    min_samples: Optional[int] = None  # smallest group size when None

    def __post_init__(self):
        if self.cpm_cutoff < 0:
            raise ConfigurationError(f"filter.cpm_cutoff must be >= 0, got {self.cpm_cutoff}")
        if self.min_samples is not None and self.min_samples < 1:
            raise ConfigurationError(f"filter.min_samples must be >= 1, got {self.min_samples}")


@dataclass(frozen=True)
class VoomConfig:
    span: float = 0.5  # lowess span

    def __post_init__(self):
        if not 0 < self.span <= 1:
            raise ConfigurationError(f"voom.span must be in (0, 1], got {self.span}")


@dataclass(frozen=True)
class ModelConfig:
    contrast: Optional[str] = None  # e.g. "COVID - healthy"
    reference_group: Optional[str] = None  # used when contrast is None
    lfc_threshold: float = 0.0  # TREAT threshold; 0 = ordinary moderated t-test
    n_jobs: int = 1
    shard_size: int = 2000

    def __post_init__(self):
        if self.lfc_threshold < 0:
            raise ConfigurationError(f"model.lfc_threshold must be >= 0, got {self.lfc_threshold}")
        if self.n_jobs < 1:
            raise ConfigurationError(f"model.n_jobs must be >= 1, got {self.n_jobs}")
        if self.shard_size < 1:
            raise ConfigurationError(f"model.shard_size must be >= 1, got {self.shard_size}")


@dataclass(frozen=True)
class SignificanceConfig:
    alpha: float = 0.05
    lfc_floor: float = 1.0

    def __post_init__(self):
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"significance.alpha must be in (0, 1), got {self.alpha}")
        if self.lfc_floor < 0:
            raise ConfigurationError(f"significance.lfc_floor must be >= 0, got {self.lfc_floor}")


@dataclass(frozen=True)
class EnrichmentConfig:
    enabled: bool = True
    ontology: str = "ALL"
    min_size: int = 10
    max_size: int = 500
    alpha: float = 0.05  # p_adjust cutoff for significant categories
    similarity_cutoff: float = 0.7
    similarity_measure: str = "jaccard"
    n_jobs: int = 1

    def __post_init__(self):
        if self.ontology not in ("ALL", "BP", "MF", "CC"):
            raise ConfigurationError(f"enrichment.ontology must be ALL, BP, MF or CC, got '{self.ontology}'")
        if self.min_size < 1 or self.max_size < self.min_size:
            raise ConfigurationError(
                f"enrichment sizes must satisfy 1 <= min_size <= max_size, got {self.min_size}/{self.max_size}"
            )
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"enrichment.alpha must be in (0, 1), got {self.alpha}")
        if not 0 < self.similarity_cutoff <= 1:
            raise ConfigurationError(
                f"enrichment.similarity_cutoff must be in (0, 1], got {self.similarity_cutoff}"
            )
        if self.similarity_measure not in ("jaccard", "overlap"):
            raise ConfigurationError(
                f"enrichment.similarity_measure must be 'jaccard' or 'overlap', got '{self.similarity_measure}'"
            )
        if self.n_jobs < 1:
            raise ConfigurationError(f"enrichment.n_jobs must be >= 1, got {self.n_jobs}")


@dataclass(frozen=True)
class QCConfig:
    mds_top: int = 500
    pca_components: int = 5
    pca_top_genes: int = 500
    outlier_sd: float = 3.0

    def __post_init__(self):
        for name in ("mds_top", "pca_components", "pca_top_genes"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"qc.{name} must be >= 1, got {getattr(self, name)}")
        if self.outlier_sd <= 0:
            raise ConfigurationError(f"qc.outlier_sd must be > 0, got {self.outlier_sd}")


@dataclass(frozen=True)
class OutputConfig:
    directory: str = "results"
    container_file: str = "container.pkl"
    write_html: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    input: InputConfig = field(default_factory=InputConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    voom: VoomConfig = field(default_factory=VoomConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    significance: SignificanceConfig = field(default_factory=SignificanceConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _build_section(cls, data: Any, section: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config section '{section}' must be a mapping, got {type(data).__name__}")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in config section '{section}': {unknown}. Allowed: {sorted(allowed)}",
            details={"section": section, "unknown": unknown},
        )
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid value in config section '{section}': {e}") from e


def config_from_dict(data: Optional[Dict[str, Any]]) -> PipelineConfig:
    """Build a validated PipelineConfig from a nested dict."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError("Top level of the configuration must be a mapping")
    sections = {f.name: f.default_factory for f in fields(PipelineConfig)}
    unknown = sorted(set(data) - set(sections))
    if unknown:
        raise ConfigurationError(
            f"Unknown config section(s): {unknown}. Allowed: {sorted(sections)}",
            details={"unknown": unknown},
        )
    return PipelineConfig(
        **{name: _build_section(factory, data.get(name), name) for name, factory in sections.items()}
    )


def load_config(config_path: Optional[str] = None) -> PipelineConfig:
    """
    Load the workflow configuration from YAML.

    Args:
        config_path: Path to YAML config file (None = built-in defaults)

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: missing file, unknown keys or invalid values
    """
    if config_path is None:
        return PipelineConfig()
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Pipeline config not found: {config_path}")

    with open(config_file, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse config {config_path}: {e}") from e

    config = config_from_dict(data)
    logger.info(f"Loaded pipeline config from {config_path}")
    return config


def apply_overrides(config: PipelineConfig, overrides: Dict[str, Any]) -> PipelineConfig:
    """
    Override single settings addressed as "section.key" (None values are skipped).

    Example:
        apply_overrides(config, {"significance.alpha": 0.01, "output.directory": "out"})
    """
    for dotted, value in overrides.items():
        if value is None:
            continue
        section, _, key = dotted.partition(".")
        current = getattr(config, section, None)
        if current is None or key not in {f.name for f in fields(current)}:
            raise ConfigurationError(f"Unknown config setting '{dotted}'")
        config = replace(config, **{section: replace(current, **{key: value})})
    return config
