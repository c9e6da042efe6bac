from dataclasses import dataclass, field, fields, asdict
from typing import Optional, Union
import yaml
from pathlib import Path

from core.exceptions import ConfigurationError

SIMILARITY_MODES = ("auto", "heuristic", "embedding")

TOP_LEVEL_OPTIONS = ("database_path", "trash_dir", "log_dir", "log_level")

# camelCase option names accepted in the `scan` block
SCAN_OPTION_ALIASES = {
    'lowQualityByteThreshold': 'low_quality_byte_threshold',
    'timeWindowMs': 'time_window_ms',
    'heuristicSizeSimMin': 'heuristic_size_sim_min',
    'heuristicDimSimMin': 'heuristic_dim_sim_min',
    'embeddingSimilarityThreshold': 'embedding_similarity_threshold',
    'maxAssetsPerScan': 'max_assets_per_scan',
    'perBucketPairCeiling': 'per_bucket_pair_ceiling',
}


@dataclass
class ScanConfig:
    """Classification thresholds and scan limits"""
    low_quality_byte_threshold: int = 100_000
    time_window_ms: int = 60_000
    heuristic_size_sim_min: float = 0.7
    heuristic_dim_sim_min: float = 0.7
    embedding_similarity_threshold: float = 0.85
    max_assets_per_scan: int = 1000
    per_bucket_pair_ceiling: int = 200
    # auto: embeddings, heuristic for records they could not judge
    # embedding: embedding groups only; heuristic: never extract features
    similarity_mode: str = "auto"
    # None: full pairwise embedding scan, holding every candidate vector at once
    embedding_time_window_ms: Optional[int] = None

    def validate(self):
        if self.low_quality_byte_threshold < 0:
            raise ConfigurationError("low_quality_byte_threshold must be >= 0")
        if self.time_window_ms < 0:
            raise ConfigurationError("time_window_ms must be >= 0")
        for name in ('heuristic_size_sim_min', 'heuristic_dim_sim_min',
                     'embedding_similarity_threshold'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")
        if self.max_assets_per_scan <= 0:
            raise ConfigurationError("max_assets_per_scan must be positive")
        if self.per_bucket_pair_ceiling < 2:
            raise ConfigurationError("per_bucket_pair_ceiling must be at least 2")
        if self.similarity_mode not in SIMILARITY_MODES:
            raise ConfigurationError(
                f"similarity_mode must be one of {SIMILARITY_MODES}, got {self.similarity_mode!r}"
            )
        if self.embedding_time_window_ms is not None and self.embedding_time_window_ms <= 0:
            raise ConfigurationError("embedding_time_window_ms must be positive or null")


@dataclass
class FeatureExtractionConfig:
    """Configuration for feature extraction"""
    model_name: str = "openai/clip-vit-base-patch32"
    use_gpu: bool = True
    batch_size: int = 32
    n_workers: int = 4
    extraction_timeout_s: float = 30.0
    cache_features: bool = True

    def validate(self):
        if self.batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")
        if self.n_workers <= 0:
            raise ConfigurationError("n_workers must be positive")
        if self.extraction_timeout_s <= 0:
            raise ConfigurationError("extraction_timeout_s must be positive")


@dataclass
class SystemConfig:
    """System-wide configuration"""
    database_path: str = "data/photo_history.db"
    trash_dir: str = "data/trash"
    log_dir: str = "logs"
    log_level: str = "INFO"

    scan: ScanConfig = field(default_factory=ScanConfig)

    feature_extraction: FeatureExtractionConfig = field(
        default_factory=FeatureExtractionConfig
    )

    def validate(self):
        self.scan.validate()
        self.feature_extraction.validate()
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown log_level: {self.log_level}")

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        with open(path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            try:
                config_dict = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Cannot parse {path}: {e}") from e

        return cls.from_dict(config_dict)

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'SystemConfig':
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a mapping")

        config = cls()

        for name in TOP_LEVEL_OPTIONS:
            if name in config_dict:
                value = config_dict[name]
                _check_type(cls, name, value)
                setattr(config, name, value)

        if 'scan' in config_dict:
            scan = config_dict['scan'] or {}
            if isinstance(scan, dict):
                scan = {SCAN_OPTION_ALIASES.get(k, k): v for k, v in scan.items()}
            config.scan = _build(ScanConfig, scan)

        if 'feature_extraction' in config_dict:
            config.feature_extraction = _build(
                FeatureExtractionConfig, config_dict['feature_extraction'] or {}
            )

        config.validate()
        return config


def _accepts(annotation, value) -> bool:
    """isinstance() for the annotations used in these dataclasses"""
    if getattr(annotation, '__origin__', None) is Union:
        return any(_accepts(arg, value) for arg in annotation.__args__)
    if annotation is type(None):
        return value is None
    # YAML booleans are ints to Python but never a valid number here
    if isinstance(value, bool):
        return annotation is bool
    if annotation is float:
        return isinstance(value, (int, float))
    return isinstance(value, annotation)


def _check_type(dataclass_type, name: str, value):
    annotation = next(f.type for f in fields(dataclass_type) if f.name == name)
    if not _accepts(annotation, value):
        raise ConfigurationError(
            f"{dataclass_type.__name__}.{name} has the wrong type: {value!r}"
        )


def _build(dataclass_type, values: dict):
    """Instantiate a config dataclass, rejecting unknown keys and wrong types"""
    if not isinstance(values, dict):
        raise ConfigurationError(f"{dataclass_type.__name__} options must be a mapping")

    known = {f.name for f in fields(dataclass_type)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {dataclass_type.__name__} options: {', '.join(sorted(unknown))}"
        )

    for name, value in values.items():
        _check_type(dataclass_type, name, value)

    return dataclass_type(**values)
