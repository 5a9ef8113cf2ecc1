"""Configuration dataclasses for multi-tissue normalisation.

This module defines the configuration structure for the joint bias field
correction and intensity normalisation estimator, plus a YAML loader.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
import math
import yaml
import logging

logger = logging.getLogger(__name__)

# sqrt(1 / (4 * pi)), the l=0 spherical harmonic of a unit-amplitude signal
DEFAULT_NORM_VALUE = 0.282094
DEFAULT_MAX_ITER = 10
DEFAULT_OUTLIER_RANGE = 1.6
DEFAULT_CONVERGENCE_TOLERANCE = 0.001


class ConfigurationError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


@dataclass
class NormalizationConfig:
    """Configuration for the multi-tissue normalisation estimator.

    Attributes:
        norm_value: Value the summed, corrected tissue compartments are normalised to
        max_iter: Number of outer iterations, also bounds the inner scale factor loop
        independent: Normalise each tissue type with its own scale factor
        outlier_range: IQR multiplier used for the outlier fences
        convergence_tolerance: Mean relative scale factor change that ends the inner loop
        n_workers: Threads used for voxel-wise field reconstruction (None = executor default)
        chunk_size: Number of voxels evaluated per reconstruction chunk
    """
    norm_value: float = DEFAULT_NORM_VALUE
    max_iter: int = DEFAULT_MAX_ITER
    independent: bool = False
    outlier_range: float = DEFAULT_OUTLIER_RANGE
    convergence_tolerance: float = DEFAULT_CONVERGENCE_TOLERANCE
    n_workers: Optional[int] = None
    chunk_size: int = 262144

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not math.isfinite(self.norm_value) or self.norm_value <= 0:
            raise ConfigurationError(
                f"norm_value must be strictly positive, got {self.norm_value}"
            )

        if self.max_iter < 1:
            raise ConfigurationError(
                f"max_iter must be >= 1, got {self.max_iter}"
            )

        if self.outlier_range <= 0:
            raise ConfigurationError(
                f"outlier_range must be positive, got {self.outlier_range}"
            )

        if not 0.0 < self.convergence_tolerance < 1.0:
            raise ConfigurationError(
                f"convergence_tolerance must be in (0.0, 1.0), got {self.convergence_tolerance}"
            )

        if self.n_workers is not None and self.n_workers < 1:
            raise ConfigurationError(
                f"n_workers must be >= 1 or None, got {self.n_workers}"
            )

        if self.chunk_size < 1:
            raise ConfigurationError(
                f"chunk_size must be >= 1, got {self.chunk_size}"
            )


def load_normalization_config(config_path: Union[str, Path]) -> NormalizationConfig:
    """Load and validate normalisation configuration from YAML.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Validated NormalizationConfig object

    Raises:
        FileNotFoundError: If config file does not exist
        ConfigurationError: If configuration is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading normalisation config from {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML: {e}") from e

    if not yaml_data:
        raise ConfigurationError("Configuration file is empty")

    if "normalization" not in yaml_data:
        raise ConfigurationError(
            "Configuration must contain 'normalization' top-level key"
        )

    try:
        config = NormalizationConfig(**(yaml_data["normalization"] or {}))
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration structure: {e}") from e

    logger.info("Normalisation configuration loaded successfully")

    return config
