"""
Configuration Management for myte

This module provides the configuration system using frozen dataclasses for
clean parameter management. The configuration system supports:

1. Default parameter values matching the IQ-TREE / ASTRAL conventions
2. Loading configuration from YAML/JSON files
3. Environment variable overrides
4. Validation and type checking
5. Hierarchical configuration with component-specific settings

Configuration Structure:
- IqtreeConfig: IQ-TREE executable and command template parameters
- AstralConfig: ASTRAL executable and launcher settings
- SchedulerConfig: Worker pool sizing, cancellation and stage gating
- InputConfig: Alignment discovery settings
- PipelineConfig: Master configuration combining all components

Example Usage:
    >>> from myte.config import get_default_config, load_config_from_file
    >>>
    >>> config = get_default_config()
    >>> print(config.iqtree.executable)
    iqtree2
    >>>
    >>> config = load_config_from_file("my_run.yaml")
    >>>
    >>> custom_config = config.update(
    ...     scheduler__max_workers=4,
    ...     iqtree__params="-m MFP -B 1000",
    ... )
"""

from dataclasses import dataclass, field, fields, asdict, is_dataclass, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Union
import os
import json
import logging

import yaml

from .utils import physical_core_count

logger = logging.getLogger(__name__)

INPUT_FORMATS = ("fasta", "nexus", "phylip")


# ============================================================================
# IQ-TREE Configuration
# ============================================================================

@dataclass(frozen=True)
class IqtreeConfig:
    """
    Configuration for IQ-TREE invocations.

    Attributes
    ----------
    executable : str
        IQ-TREE executable name or path (default: "iqtree2")

    min_version : str
        Minimum compatible IQ-TREE version (default: "2.0.0").
        Concordance factors (--gcf/--scf) require IQ-TREE 2.

    params : Optional[str]
        User-supplied options string appended to every gene and species tree
        command. When set, the default bootstrap and thread flags are omitted.

    bootstrap : int
        Ultrafast bootstrap replicates used when no params are given
        (default: 1000)

    gene_threads : str
        Threads per gene tree job when no params are given (default: "1").
        One thread per job because the pool already runs one job per core.

    species_threads : str
        Threads for the single species tree job (default: "AUTO")

    scf_quartets : int
        Quartets sampled for site concordance factors (default: 100)
    """
    executable: str = "iqtree2"
    min_version: str = "2.0.0"
    params: Optional[str] = None
    bootstrap: int = 1000
    gene_threads: str = "1"
    species_threads: str = "AUTO"
    scf_quartets: int = 100

    def __post_init__(self):
        """Validate configuration parameters."""
        if not self.executable:
            raise ValueError("iqtree executable must not be empty")
        if self.bootstrap < 0:
            raise ValueError("bootstrap must be non-negative")
        if self.scf_quartets < 1:
            raise ValueError("scf_quartets must be at least 1")
        if self.params is not None and not self.params.strip():
            object.__setattr__(self, 'params', None)


# ============================================================================
# ASTRAL Configuration
# ============================================================================

@dataclass(frozen=True)
class AstralConfig:
    """
    Configuration for the ASTRAL multi-species coalescent step.

    Attributes
    ----------
    executable : str
        ASTRAL launcher name or path (default: "astral")

    min_version : Optional[str]
        Minimum compatible version; None accepts any parseable version

    enabled : bool
        Run the optional MSC stage in auto mode (default: True)

    launcher_dir : Optional[Path]
        Extra directory searched for the launcher generated by
        ``myte fix-astral`` (default: None)
    """
    executable: str = "astral"
    min_version: Optional[str] = None
    enabled: bool = True
    launcher_dir: Optional[Path] = None

    def __post_init__(self):
        """Validate configuration parameters."""
        if isinstance(self.launcher_dir, str):
            object.__setattr__(self, 'launcher_dir', Path(self.launcher_dir))
        if not self.executable:
            raise ValueError("astral executable must not be empty")


# ============================================================================
# Scheduler Configuration
# ============================================================================

@dataclass(frozen=True)
class SchedulerConfig:
    """
    Configuration for the worker pool and stage gating.

    Attributes
    ----------
    max_workers : Optional[int]
        Upper bound on concurrent jobs. None uses the physical core count.

    grace_period : float
        Seconds a terminated child gets to exit before it is killed
        (default: 10.0)

    min_successes : int
        Successful jobs a stage needs before dependent stages may start
        (default: 1)

    refresh_interval : float
        Seconds between terminal status refreshes (default: 0.15)

    version_timeout : float
        Timeout in seconds for each version query (default: 10.0)
    """
    max_workers: Optional[int] = None
    grace_period: float = 10.0
    min_successes: int = 1
    refresh_interval: float = 0.15
    version_timeout: float = 10.0

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.grace_period < 0:
            raise ValueError("grace_period must be non-negative")
        if self.min_successes < 1:
            raise ValueError("min_successes must be at least 1")
        if self.refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        if self.version_timeout <= 0:
            raise ValueError("version_timeout must be positive")


# ============================================================================
# Input Configuration
# ============================================================================

@dataclass(frozen=True)
class InputConfig:
    """
    Configuration for alignment discovery.

    Attributes
    ----------
    input_format : str
        Alignment format used to build the discovery pattern
        (default: "nexus"). Options: "fasta", "nexus", "phylip"
    """
    input_format: str = "nexus"

    def __post_init__(self):
        """Validate configuration parameters."""
        object.__setattr__(self, 'input_format', self.input_format.lower())
        if self.input_format not in INPUT_FORMATS:
            raise ValueError(f"Invalid input_format: {self.input_format}")


# ============================================================================
# Master Pipeline Configuration
# ============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Master configuration for a myte run.

    Attributes
    ----------
    iqtree : IqtreeConfig
        IQ-TREE configuration

    astral : AstralConfig
        ASTRAL configuration

    scheduler : SchedulerConfig
        Worker pool configuration

    input : InputConfig
        Alignment discovery configuration

    log_level : str
        Logging level (default: "INFO")

    output_dir : Path
        Base output directory (default: "myte-output")

    keep_workdirs : bool
        Keep the per-job working directories of succeeded jobs
        (default: False). Failed jobs' directories are always kept.

    show_progress : bool
        Render the live status line on interactive terminals (default: True)
    """
    iqtree: IqtreeConfig = field(default_factory=IqtreeConfig)
    astral: AstralConfig = field(default_factory=AstralConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    input: InputConfig = field(default_factory=InputConfig)
    log_level: str = "INFO"
    output_dir: Path = field(default_factory=lambda: Path("myte-output"))
    keep_workdirs: bool = False
    show_progress: bool = True

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.output_dir, str):
            object.__setattr__(self, 'output_dir', Path(self.output_dir))

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")

    @property
    def work_dir(self) -> Path:
        """Root of the per-job working directories."""
        return self.output_dir / ".myte-work"

    @property
    def event_log(self) -> Path:
        """Persistent event log path."""
        return self.output_dir / "myte-events.log"

    @classmethod
    def is_known_key(cls, key: str) -> bool:
        """
        Whether ``key`` names a field or a ``section__field`` pair.

        Examples
        --------
        >>> PipelineConfig.is_known_key("scheduler__max_workers")
        True
        >>> PipelineConfig.is_known_key("home")
        False
        """
        component, _, param = key.partition('__')
        top_level = {f.name for f in fields(cls)}
        if component not in top_level:
            return False
        if not param:
            return True

        section = getattr(cls(), component)
        return is_dataclass(section) and param in {f.name for f in fields(section)}

    def update(self, **kwargs) -> 'PipelineConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        config.update(scheduler__max_workers=4)

        Parameters
        ----------
        **kwargs
            Configuration parameters to update. Use double underscore
            for nested parameters (e.g., iqtree__params)

        Returns
        -------
        PipelineConfig
            New configuration object with updates

        Raises
        ------
        ValueError
            If a key does not name a configuration parameter
        """
        unknown = sorted(key for key in kwargs if not self.is_known_key(key))
        if unknown:
            raise ValueError(f"Unknown configuration parameter(s): {', '.join(unknown)}")

        top_level = {}
        nested = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                if component not in nested:
                    nested[component] = {}
                nested[component][param] = value
            else:
                top_level[key] = value

        if nested:
            for component, updates in nested.items():
                current = getattr(self, component)
                updated = replace(current, **updates)
                top_level[component] = updated

        return replace(self, **top_level)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns
        -------
        Dict[str, Any]
            Configuration as nested dictionary
        """
        return asdict(self)

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """
        Save configuration to YAML file.

        Parameters
        ----------
        output_path : Union[str, Path]
            Output file path
        """
        config_dict = _convert_paths_to_strings(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Parameters
        ----------
        output_path : Union[str, Path]
            Output file path
        """
        config_dict = _convert_paths_to_strings(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")


# ============================================================================
# Helper Functions
# ============================================================================

def get_default_config() -> PipelineConfig:
    """
    Get default pipeline configuration.

    Returns
    -------
    PipelineConfig
        Default configuration
    """
    return PipelineConfig()


def load_config_from_file(config_path: Union[str, Path]) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Automatically detects file format based on extension.

    Parameters
    ----------
    config_path : Union[str, Path]
        Path to configuration file (.yaml, .yml, or .json)

    Returns
    -------
    PipelineConfig
        Loaded configuration

    Raises
    ------
    FileNotFoundError
        If configuration file doesn't exist
    ValueError
        If file format is not supported
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        return _load_yaml_config(path)
    elif suffix == '.json':
        return _load_json_config(path)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}")


def _load_yaml_config(path: Path) -> PipelineConfig:
    """Load configuration from YAML file."""
    with open(path, 'r') as f:
        config_dict = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


def _load_json_config(path: Path) -> PipelineConfig:
    """Load configuration from JSON file."""
    with open(path, 'r') as f:
        config_dict = json.load(f)

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


def _dict_to_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """Convert dictionary to PipelineConfig object."""
    config_dict = _convert_strings_to_paths(dict(config_dict))

    nested_configs = {}

    try:
        if 'iqtree' in config_dict:
            nested_configs['iqtree'] = IqtreeConfig(**config_dict.pop('iqtree'))

        if 'astral' in config_dict:
            nested_configs['astral'] = AstralConfig(**config_dict.pop('astral'))

        if 'scheduler' in config_dict:
            nested_configs['scheduler'] = SchedulerConfig(**config_dict.pop('scheduler'))

        if 'input' in config_dict:
            nested_configs['input'] = InputConfig(**config_dict.pop('input'))

        return PipelineConfig(**nested_configs, **config_dict)
    except TypeError as e:
        # Unknown keys in the file
        raise ValueError(f"Invalid configuration: {e}") from e


def _convert_paths_to_strings(obj: Any) -> Any:
    """Recursively convert Path objects to strings for serialization."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _convert_paths_to_strings(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_convert_paths_to_strings(item) for item in obj]
    elif isinstance(obj, tuple):
        return tuple(_convert_paths_to_strings(item) for item in obj)
    else:
        return obj


def _convert_strings_to_paths(obj: Any) -> Any:
    """Recursively convert path strings back to Path objects."""
    if isinstance(obj, dict):
        path_fields = ['output_dir', 'launcher_dir']

        result = {}
        for k, v in obj.items():
            if k in path_fields and v is not None:
                result[k] = Path(v)
            else:
                result[k] = _convert_strings_to_paths(v)
        return result
    elif isinstance(obj, list):
        return [_convert_strings_to_paths(item) for item in obj]
    else:
        return obj


def load_config_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables are prefixed with MYTE_ and use double
    underscores for nesting:

    MYTE_SCHEDULER__MAX_WORKERS=4
    MYTE_LOG_LEVEL=DEBUG

    Variables that do not name a configuration parameter (e.g. MYTE_HOME)
    are ignored.

    Returns
    -------
    Dict[str, Any]
        Configuration overrides suitable for ``PipelineConfig.update``
    """
    prefix = "MYTE_"
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            if not PipelineConfig.is_known_key(config_key):
                logger.debug(f"Ignoring unrelated environment variable {key}")
                continue
            overrides[config_key] = _parse_env_value(value)

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def validate_config(config: PipelineConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Parameters
    ----------
    config : PipelineConfig
        Configuration to validate

    Returns
    -------
    List[str]
        List of warning messages (empty if no issues)
    """
    warnings = []

    cores = physical_core_count()
    if config.scheduler.max_workers and config.scheduler.max_workers > cores:
        warnings.append(
            f"max_workers ({config.scheduler.max_workers}) exceeds physical cores "
            f"({cores}); jobs will compete for CPU"
        )

    if config.iqtree.params and config.iqtree.gene_threads != "1":
        warnings.append(
            "iqtree.gene_threads is ignored when iqtree.params is set"
        )

    if config.astral.launcher_dir and not config.astral.launcher_dir.exists():
        warnings.append(
            f"ASTRAL launcher directory not found: {config.astral.launcher_dir}"
        )

    if config.scheduler.grace_period > 60:
        warnings.append(
            f"grace_period ({config.scheduler.grace_period}s) is long; "
            "interrupted runs may take a while to exit"
        )

    return warnings


# ============================================================================
# Configuration Templates
# ============================================================================

def create_config_template(output_path: Union[str, Path], format: str = "yaml") -> None:
    """
    Create a configuration template file.

    Parameters
    ----------
    output_path : Union[str, Path]
        Output file path
    format : str
        File format: "yaml" or "json" (default: "yaml")
    """
    config = get_default_config()

    if format.lower() == "yaml":
        config.to_yaml(output_path)
    elif format.lower() == "json":
        config.to_json(output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    logger.info(f"Created configuration template: {output_path}")
