"""
Configuration management for the drift recovery ensemble.

This module provides dataclass configurations for the engine, the data
stream, the prequential training loop, MLflow tracking and evaluation, plus
YAML loading with environment variable support and logging setup.
"""

import logging
import logging.config
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml

logger = logging.getLogger(__name__)


@dataclass
class ModelConfig:
    """Configuration of the drift recovery ensemble engine.

    ``base_learner``, ``descriptor_manager`` and ``drift_detector`` are
    ``{"name": ..., "params": {...}}`` mappings resolved by the model
    factories. ``clusterer_parameters`` is the raw ``"key=value ..."`` string
    handed to the batch clusterer.
    """

    random_seed: int = 1
    base_learner: Dict[str, Any] = None
    ensemble_size: int = 10
    repository_multiplier: int = 10
    time_steps_interval: int = 500
    fading_factor: float = 0.999
    theta: float = 0.99
    descriptor_manager: Dict[str, Any] = None
    undersample_descriptors: bool = False
    similarity_threshold: float = 0.8
    drift_detector: Dict[str, Any] = None
    undersample_training: bool = False
    batch_clusterer: str = "em"
    clusterer_parameters: str = ""
    n_classes: int = 2

    def __post_init__(self):
        if self.base_learner is None:
            self.base_learner = {"name": "hoeffding_tree", "params": {"leaf_prediction": "nb"}}
        if self.descriptor_manager is None:
            self.descriptor_manager = {"name": "clustream", "params": {}}
        if self.drift_detector is None:
            self.drift_detector = {"name": "adwin", "params": {}}


@dataclass
class DataConfig:
    """Configuration of the input stream."""

    source: str = "synthetic"
    data_path: Optional[str] = None
    target_column: str = "target"
    max_samples: Optional[int] = None

    # Synthetic stream
    n_samples: int = 10000
    drift_points: List[int] = None
    concept_sequence: Optional[List[int]] = None
    minority_ratio: Optional[float] = 0.1
    noise: float = 0.0

    def __post_init__(self):
        if self.drift_points is None:
            self.drift_points = [2500, 5000, 7500]


@dataclass
class TrainingConfig:
    """Configuration of the prequential training loop."""

    log_frequency: int = 500
    show_progress: bool = True

    # Checkpointing
    checkpoint_dir: str = "checkpoints"
    checkpoint_frequency: int = 5000
    keep_checkpoints: int = 5


@dataclass
class MLflowConfig:
    """Configuration for MLflow tracking."""

    enabled: bool = True
    tracking_uri: Optional[str] = None
    experiment_name: str = "drift_recovery_ensemble"
    run_name: Optional[str] = None
    log_artifacts: bool = True


@dataclass
class EvaluationConfig:
    """Configuration for evaluation and analysis."""

    window_size: int = 1000
    fading_factor: float = 0.999
    drift_tolerance_window: int = 500

    plot_results: bool = True
    save_plots: bool = True
    plot_dir: str = "plots"


@dataclass
class Config:
    """Main configuration class combining all components."""

    model: ModelConfig = None
    data: DataConfig = None
    training: TrainingConfig = None
    mlflow: MLflowConfig = None
    evaluation: EvaluationConfig = None

    # Global settings
    random_seed: int = 1
    log_level: str = "INFO"
    output_dir: str = "outputs"

    def __post_init__(self):
        if self.model is None:
            self.model = ModelConfig()
        if self.data is None:
            self.data = DataConfig()
        if self.training is None:
            self.training = TrainingConfig()
        if self.mlflow is None:
            self.mlflow = MLflowConfig()
        if self.evaluation is None:
            self.evaluation = EvaluationConfig()

        self.model.random_seed = self.random_seed


def load_config(config_path: Union[str, Path]) -> Config:
    """Load configuration from YAML file with environment variable support.

    Supports ``${VAR_NAME:default_value}`` substitution, and ``DRE_*``
    environment variables override individual values.

    Args:
        config_path (Union[str, Path]): Path to configuration file.

    Returns:
        Config: Loaded and validated configuration object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If the file is not valid YAML or the configuration is invalid.

    Example:
        Configuration file with environment variables:

        ```yaml
        model:
          ensemble_size: ${ENSEMBLE_SIZE:10}
        mlflow:
          tracking_uri: ${MLFLOW_TRACKING_URI:null}
        ```
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            config_content = f.read()

        config_content = _substitute_env_vars(config_content)
        config_dict = yaml.safe_load(config_content) or {}

        logger.info(f"Loaded configuration from {config_path}")

        config_dict = _apply_env_overrides(config_dict)
        config = _dict_to_config(config_dict)
        _validate_config(config)

        return config

    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {config_path}: {e}") from e
    except (TypeError, ValueError) as e:
        raise ValueError(f"Error loading config from {config_path}: {e}") from e


def save_config(config: Config, config_path: Union[str, Path]) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Configuration object to save.
        config_path: Path where to save configuration.

    Raises:
        IOError: If unable to save configuration file.
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(config_path, 'w') as f:
            yaml.dump(asdict(config), f, default_flow_style=False, indent=2, sort_keys=False)
        logger.info(f"Saved configuration to {config_path}")
    except OSError as e:
        raise IOError(f"Error saving config to {config_path}: {e}") from e


def _dict_to_config(config_dict: Dict[str, Any]) -> Config:
    def convert_section(section_dict: Optional[Dict], section_class):
        if section_dict is None:
            return section_class()

        # Unknown keys are dropped
        valid_keys = set(section_class.__dataclass_fields__)
        return section_class(**{k: v for k, v in section_dict.items() if k in valid_keys})

    sections = ('model', 'data', 'training', 'mlflow', 'evaluation')
    global_settings = {k: v for k, v in config_dict.items() if k not in sections}

    return Config(
        model=convert_section(config_dict.get('model'), ModelConfig),
        data=convert_section(config_dict.get('data'), DataConfig),
        training=convert_section(config_dict.get('training'), TrainingConfig),
        mlflow=convert_section(config_dict.get('mlflow'), MLflowConfig),
        evaluation=convert_section(config_dict.get('evaluation'), EvaluationConfig),
        **global_settings
    )


def _validate_config(config: Config) -> None:
    """
    Validate configuration for consistency and correctness.

    Args:
        config: Configuration to validate.

    Raises:
        ValueError: If configuration is invalid.
    """
    model = config.model
    for name in ('ensemble_size', 'repository_multiplier', 'time_steps_interval'):
        value = getattr(model, name)
        if not isinstance(value, int) or value < 1:
            raise ValueError(f"{name} must be an integer >= 1, got {value}")

    for name in ('fading_factor', 'theta', 'similarity_threshold'):
        value = getattr(model, name)
        if not (0 <= value <= 1):
            raise ValueError(f"{name} must be in [0, 1], got {value}")

    if model.n_classes < 2:
        raise ValueError(f"n_classes must be at least 2, got {model.n_classes}")

    for name in ('base_learner', 'descriptor_manager', 'drift_detector'):
        value = getattr(model, name)
        if not isinstance(value, dict) or 'name' not in value:
            raise ValueError(f"{name} must be a mapping with a 'name' key, got {value}")

    if config.data.source not in ('synthetic', 'csv'):
        raise ValueError(f"data.source must be 'synthetic' or 'csv', got {config.data.source}")
    if config.data.source == 'csv' and not config.data.data_path:
        raise ValueError("data.data_path is required when data.source is 'csv'")
    if config.data.minority_ratio is not None and not (0 < config.data.minority_ratio < 1):
        raise ValueError(f"minority_ratio must be in (0, 1), got {config.data.minority_ratio}")

    if config.training.log_frequency <= 0 or config.training.checkpoint_frequency <= 0:
        raise ValueError("log_frequency and checkpoint_frequency must be positive")

    if config.evaluation.window_size <= 0:
        raise ValueError("window_size must be positive")
    if config.evaluation.drift_tolerance_window <= 0:
        raise ValueError("drift_tolerance_window must be positive")

    logger.info("Configuration validation passed")


def get_default_config() -> Config:
    """Return the default configuration."""
    return Config()


def setup_logging(config: Config, logging_config_path: Optional[Union[str, Path]] = None) -> None:
    """Configure console and file logging under ``<output_dir>/logs``.

    Args:
        config (Config): Configuration object.
        logging_config_path (Optional[Union[str, Path]]): YAML ``dictConfig``
            file. When missing or unreadable, a console handler plus
            ``application.log`` and ``errors.log`` file handlers are installed.
    """
    logs_dir = Path(config.output_dir) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    if logging_config_path and Path(logging_config_path).exists():
        try:
            with open(logging_config_path, 'r') as f:
                logging_config = yaml.safe_load(f)

            for handler_config in logging_config.get('handlers', {}).values():
                if 'filename' in handler_config and not Path(handler_config['filename']).is_absolute():
                    handler_config['filename'] = str(logs_dir / handler_config['filename'])

            logging.config.dictConfig(logging_config)
            logger.info(f"Loaded logging configuration from {logging_config_path}")
            return
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load logging config from {logging_config_path}: {e}")
            logger.info("Falling back to basic logging setup")

    _setup_basic_logging(config, logs_dir)


def _setup_basic_logging(config: Config, logs_dir: Path) -> None:
    log_level = getattr(logging, config.log_level.upper())
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"

    error_handler = logging.FileHandler(logs_dir / "errors.log")
    error_handler.setLevel(logging.ERROR)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(logs_dir / "application.log"),
            error_handler,
        ]
    )

    logger.info(f"Basic logging configured with level: {config.log_level}")


def setup_environment(config: Config) -> None:
    """Seed global random state, create output directories and set up logging."""
    os.environ["PYTHONHASHSEED"] = str(config.random_seed)
    np.random.seed(config.random_seed)

    Path(config.output_dir).mkdir(parents=True, exist_ok=True)
    Path(config.training.checkpoint_dir).mkdir(parents=True, exist_ok=True)
    if config.evaluation.plot_results:
        Path(config.evaluation.plot_dir).mkdir(parents=True, exist_ok=True)

    setup_logging(config)
    logger.info("Environment setup completed")


def _substitute_env_vars(content: str) -> str:
    """Substitute ``${VAR_NAME:default_value}`` references in configuration text.

    Raises:
        ValueError: If a referenced variable is unset and has no default.
    """
    pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

    def replace_var(match):
        var_name = match.group(1)
        default_value = match.group(2)

        env_value = os.environ.get(var_name)
        if env_value is not None:
            if env_value.lower() in ('null', 'none'):
                return 'null'
            return env_value
        if default_value is not None:
            return default_value
        raise ValueError(f"Environment variable {var_name} is required but not set")

    return re.sub(pattern, replace_var, content)


# DRE_<SECTION>_<KEY> overrides <section>.<key>
ENV_OVERRIDES = {
    'DRE_MODEL_ENSEMBLE_SIZE': ('model', 'ensemble_size'),
    'DRE_MODEL_REPOSITORY_MULTIPLIER': ('model', 'repository_multiplier'),
    'DRE_MODEL_TIME_STEPS_INTERVAL': ('model', 'time_steps_interval'),
    'DRE_MODEL_FADING_FACTOR': ('model', 'fading_factor'),
    'DRE_MODEL_THETA': ('model', 'theta'),
    'DRE_MODEL_SIMILARITY_THRESHOLD': ('model', 'similarity_threshold'),
    'DRE_MODEL_UNDERSAMPLE_TRAINING': ('model', 'undersample_training'),
    'DRE_MODEL_BATCH_CLUSTERER': ('model', 'batch_clusterer'),
    'DRE_DATA_SOURCE': ('data', 'source'),
    'DRE_DATA_DATA_PATH': ('data', 'data_path'),
    'DRE_DATA_MAX_SAMPLES': ('data', 'max_samples'),
    'DRE_MLFLOW_ENABLED': ('mlflow', 'enabled'),
    'DRE_MLFLOW_TRACKING_URI': ('mlflow', 'tracking_uri'),
    'DRE_MLFLOW_EXPERIMENT_NAME': ('mlflow', 'experiment_name'),
    'DRE_LOG_LEVEL': (None, 'log_level'),
    'DRE_OUTPUT_DIR': (None, 'output_dir'),
    'DRE_RANDOM_SEED': (None, 'random_seed'),
}


def _apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ``DRE_*`` environment variable overrides to a configuration mapping."""
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        converted = _convert_env_value(value)
        if section is None:
            config_dict[key] = converted
        else:
            if config_dict.get(section) is None:
                config_dict[section] = {}
            config_dict[section][key] = converted
    return config_dict


def _convert_env_value(value: str) -> Any:
    lowered = value.lower()
    if lowered in ('true', 'yes', 'on'):
        return True
    if lowered in ('false', 'no', 'off'):
        return False
    if lowered in ('null', 'none', ''):
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def load_config_with_env(config_path: Optional[Union[str, Path]] = None) -> Config:
    """Load configuration from a file, or from defaults plus ``DRE_*`` overrides.

    Example:
        >>> os.environ['DRE_MODEL_ENSEMBLE_SIZE'] = '5'
        >>> config = load_config_with_env()
        >>> config.model.ensemble_size
        5
    """
    if config_path is not None:
        return load_config(config_path)

    config = _dict_to_config(_apply_env_overrides({}))
    _validate_config(config)
    logger.info("Loaded configuration from environment variables and defaults")
    return config
