"""
Configuration Management for Ecotyper

This module provides the configuration system used by the pipeline and the
command line, built from frozen dataclasses. The configuration system
supports:

1. Default parameter values matching the legacy Ecotype Simulation program
2. Loading configuration from YAML/JSON files
3. Environment variable overrides
4. Validation and type checking
5. Hierarchical configuration with component-specific settings

Configuration Structure:
- BinningConfig: Threshold ladder used for global binning
- OracleConfig: Location and invocation of the demarcation solver
- DemarcationConfig: Decision rule, labelling and solver request constants
- PipelineConfig: Master configuration combining all components

Example Usage:
    >>> from ecotyper.config import get_default_config, load_config_from_file
    >>>
    >>> # Use defaults
    >>> config = get_default_config()
    >>> print(config.demarcation.precision)
    fine
    >>>
    >>> # Load from file
    >>> config = load_config_from_file("my_analysis.yaml")
    >>>
    >>> # Update specific parameters
    >>> custom_config = config.update(
    ...     demarcation__precision="coarse",
    ...     oracle__timeout_seconds=600
    ... )
"""

from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple, Union
import os
import json
import logging

from .binning import DEFAULT_THRESHOLDS

logger = logging.getLogger(__name__)

# Try to import YAML support
try:
    import yaml
    YAML_AVAILABLE = True
except ImportError:
    YAML_AVAILABLE = False
    logger.debug("PyYAML not available; YAML config files not supported")


# ============================================================================
# Binning Configuration
# ============================================================================

@dataclass(frozen=True)
class BinningConfig:
    """
    Configuration for global binning.

    Attributes
    ----------
    thresholds : Tuple[float, ...]
        Sequence-identity thresholds, ascending (default: the 30-level
        ladder 0.60 ... 1.00 of the legacy tree-based binning)

    compact : bool
        Drop consecutive levels with a repeated cluster count from the
        written bin table (default: False)
    """
    thresholds: Tuple[float, ...] = DEFAULT_THRESHOLDS
    compact: bool = False

    def __post_init__(self):
        """Validate configuration parameters."""
        object.__setattr__(self, 'thresholds', tuple(float(t) for t in self.thresholds))

        if not self.thresholds:
            raise ValueError("thresholds must not be empty")

        for t in self.thresholds:
            if not 0 <= t <= 1:
                raise ValueError(f"thresholds must be between 0 and 1, got {t}")

        if list(self.thresholds) != sorted(self.thresholds):
            raise ValueError("thresholds must be in ascending order")


# ============================================================================
# Oracle Configuration
# ============================================================================

@dataclass(frozen=True)
class OracleConfig:
    """
    Configuration for the external demarcation solver.

    Attributes
    ----------
    binary_directory : Path, optional
        Directory holding the demarcation binary (default: None, search
        the ECOTYPER_BINARY_DIR directory and PATH)

    binary_path : Path, optional
        Explicit path to the binary, overrides binary_directory

    working_directory : Path, optional
        Where request/response files are written
        (default: None, a 'work' folder inside the output directory)

    timeout_seconds : float, optional
        Time allowed for one solver call (default: 3600). None waits
        indefinitely.

    n_threads : int
        Thread count passed to each solver invocation (default: 1)

    debug : bool
        Run the solver in debug mode and log its output (default: False)

    keep_files : bool
        Keep request/response files after successful calls (default: True)
    """
    binary_directory: Optional[Path] = None
    binary_path: Optional[Path] = None
    working_directory: Optional[Path] = None
    timeout_seconds: Optional[float] = 3600
    n_threads: int = 1
    debug: bool = False
    keep_files: bool = True

    def __post_init__(self):
        """Validate configuration parameters."""
        for name in ('binary_directory', 'binary_path', 'working_directory'):
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, Path(value))

        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive (or None)")

        if self.n_threads < 1:
            raise ValueError("n_threads must be at least 1")


# ============================================================================
# Demarcation Configuration
# ============================================================================

@dataclass(frozen=True)
class DemarcationConfig:
    """
    Configuration for recursive demarcation.

    Attributes
    ----------
    precision : str
        Decision rule (default: "fine").
        Options: "fine" (always adopt the most likely npop),
        "coarse" (accept npop = 1 whenever it has non-zero likelihood)

    ecotype_prefix : str
        Prefix of ecotype labels, followed by the ecotype number
        (default: "Ecotype")

    n_threads : int
        Number of sibling clades evaluated concurrently (default: 1)

    outgroup : str, optional
        Name of the outgroup sequence (default: None, the first sequence
        of the alignment, or the first leaf of the tree)

    compact_bins : bool
        Compact clade-local bin levels before sending them to the solver
        (default: False)

    step : int
        Solver step size (default: 1)

    replicates : int
        Simulation replicates per solver call (default: 1000)

    criterion : int
        Solver averaging criterion, 1..6 (default: 3)

    seed : int, optional
        Seed for the per-call solver seeds; None draws fresh seeds
        (default: None)
    """
    precision: str = "fine"
    ecotype_prefix: str = "Ecotype"
    n_threads: int = 1
    outgroup: Optional[str] = None
    compact_bins: bool = False
    step: int = 1
    replicates: int = 1000
    criterion: int = 3
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration parameters."""
        valid_precisions = ["fine", "coarse"]
        if self.precision.lower() not in valid_precisions:
            raise ValueError(f"precision must be one of {valid_precisions}")

        if not self.ecotype_prefix:
            raise ValueError("ecotype_prefix must not be empty")

        if self.n_threads < 1:
            raise ValueError("n_threads must be at least 1")

        if self.step < 1:
            raise ValueError("step must be at least 1")

        if self.replicates < 1:
            raise ValueError("replicates must be at least 1")

        if not 1 <= self.criterion <= 6:
            raise ValueError("criterion must be between 1 and 6")


# ============================================================================
# Master Pipeline Configuration
# ============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Master configuration for the complete Ecotyper pipeline.

    Combines all component-specific configurations and adds global settings.

    Attributes
    ----------
    binning : BinningConfig
        Global binning configuration

    oracle : OracleConfig
        Demarcation solver configuration

    demarcation : DemarcationConfig
        Demarcation configuration

    log_level : str
        Logging level (default: "INFO")

    output_dir : Path
        Base output directory (default: "results")

    make_plots : bool
        Draw the bin level plot and the demarcated tree (default: True)

    html_report : bool
        Write the HTML summary report (default: True)

    overwrite_existing : bool
        Overwrite existing output files (default: False)
    """
    binning: BinningConfig = field(default_factory=BinningConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    demarcation: DemarcationConfig = field(default_factory=DemarcationConfig)
    log_level: str = "INFO"
    output_dir: Path = field(default_factory=lambda: Path("results"))
    make_plots: bool = True
    html_report: bool = True
    overwrite_existing: bool = False

    def __post_init__(self):
        """Validate and normalize configuration."""
        # Convert string paths to Path objects
        if isinstance(self.output_dir, str):
            object.__setattr__(self, 'output_dir', Path(self.output_dir))

        # Validate log level
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")

    def update(self, **kwargs) -> 'PipelineConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        config.update(demarcation__precision="coarse")

        Parameters
        ----------
        **kwargs
            Configuration parameters to update. Use double underscore
            for nested parameters (e.g., oracle__timeout_seconds)

        Returns
        -------
        PipelineConfig
            New configuration object with updates
        """
        top_level = {}
        nested: Dict[str, Dict[str, Any]] = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                nested.setdefault(component, {})[param] = value
            else:
                top_level[key] = value

        for component, updates in nested.items():
            if not hasattr(self, component):
                raise ValueError(f"Unknown configuration section: {component}")
            top_level[component] = replace(getattr(self, component), **updates)

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

        Raises
        ------
        ImportError
            If PyYAML is not installed
        """
        if not YAML_AVAILABLE:
            raise ImportError("PyYAML is required to save YAML config files")

        config_dict = _to_serializable(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """Save configuration to JSON file."""
        config_dict = _to_serializable(self.to_dict())

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

    Examples
    --------
    >>> config = get_default_config()
    >>> config.oracle.timeout_seconds
    3600
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
        if not YAML_AVAILABLE:
            raise ImportError("PyYAML is required to load YAML config files")
        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}
    elif suffix == '.json':
        with open(path, 'r') as f:
            config_dict = json.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}")

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


def _dict_to_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """Convert a nested dictionary to a PipelineConfig object."""
    config_dict = dict(config_dict)
    sections = {
        'binning': BinningConfig,
        'oracle': OracleConfig,
        'demarcation': DemarcationConfig,
    }

    nested_configs = {}
    for name, config_class in sections.items():
        if name in config_dict:
            nested_configs[name] = config_class(**(config_dict.pop(name) or {}))

    return PipelineConfig(**nested_configs, **config_dict)


def _to_serializable(obj: Any) -> Any:
    """Recursively convert Paths to strings and tuples to lists."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _to_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_serializable(item) for item in obj]
    else:
        return obj


def load_config_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables should be prefixed with ECOTYPER_
    and use double underscores for nesting:

    ECOTYPER_DEMARCATION__PRECISION=coarse
    ECOTYPER_ORACLE__TIMEOUT_SECONDS=600

    ECOTYPER_BINARY_DIR is reserved for locating the solver binary and is
    not treated as an override.

    Returns
    -------
    Dict[str, Any]
        Configuration overrides from environment

    Examples
    --------
    >>> import os
    >>> os.environ['ECOTYPER_DEMARCATION__N_THREADS'] = '4'
    >>> env_config = load_config_from_env()
    >>> config = get_default_config().update(**env_config)
    """
    prefix = "ECOTYPER_"
    reserved = {"ECOTYPER_BINARY_DIR"}
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix) and key not in reserved:
            config_key = key[len(prefix):].lower()
            overrides[config_key] = _parse_env_value(value)

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    # Boolean
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False
    if value.lower() in ['none', 'null']:
        return None

    # Integer
    try:
        return int(value)
    except ValueError:
        pass

    # Float
    try:
        return float(value)
    except ValueError:
        pass

    # Comma separated floats (threshold lists)
    if ',' in value:
        try:
            return tuple(float(item) for item in value.split(','))
        except ValueError:
            pass

    # String
    return value


def validate_config(config: PipelineConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Checks for common issues like a missing solver binary or unusual
    parameter values.

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

    # Check the solver location
    if config.oracle.binary_path and not config.oracle.binary_path.exists():
        warnings.append(f"Demarcation binary not found: {config.oracle.binary_path}")
    if config.oracle.binary_directory and not config.oracle.binary_directory.is_dir():
        warnings.append(
            f"Binary directory not found: {config.oracle.binary_directory}"
        )

    # Check the threshold ladder
    thresholds = config.binning.thresholds
    if thresholds[-1] < 1.0:
        warnings.append(
            f"Highest threshold ({thresholds[-1]}) is below 1.0; "
            "identical sequences will never be split."
        )
    if len(set(thresholds)) != len(thresholds):
        warnings.append("Threshold ladder contains duplicate values")

    # Check thread counts
    total_threads = config.demarcation.n_threads * config.oracle.n_threads
    cpu_count = os.cpu_count() or 1
    if total_threads > cpu_count:
        warnings.append(
            f"Thread count ({total_threads}) exceeds available CPUs ({cpu_count})"
        )

    if config.oracle.timeout_seconds is None:
        warnings.append("No solver timeout set; a hung solver will block the run")

    if config.demarcation.replicates < 100:
        warnings.append(
            f"Replicates ({config.demarcation.replicates}) is low; "
            "solver likelihoods will be noisy."
        )

    return warnings


# ============================================================================
# Configuration Templates
# ============================================================================

def create_config_template(output_path: Union[str, Path], format: str = "yaml") -> None:
    """
    Create a configuration template file holding all defaults.

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
