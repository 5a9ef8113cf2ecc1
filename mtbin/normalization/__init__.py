"""Joint bias field correction and intensity normalisation of tissue compartments.

This package estimates one global scale factor per tissue type together with a
smooth polynomial bias field, so that the scaled and corrected tissue sum
matches a target value inside a mask.
"""

from mtbin.normalization.config import (
    ConfigurationError,
    NormalizationConfig,
    load_normalization_config,
)
from mtbin.normalization.estimator import (
    EstimationResult,
    EstimationState,
    MultiTissueEstimator,
)
from mtbin.normalization.exceptions import (
    BiasFieldSolveError,
    EmptyMaskError,
    InputValidationError,
    MultiTissueNormalizationError,
    NumericalFailureError,
    ScaleFactorSolveError,
)
from mtbin.normalization.multi_tissue import MultiTissueNormalizer, split_tissue_arguments

__all__ = [
    "ConfigurationError",
    "NormalizationConfig",
    "load_normalization_config",
    "EstimationResult",
    "EstimationState",
    "MultiTissueEstimator",
    "BiasFieldSolveError",
    "EmptyMaskError",
    "InputValidationError",
    "MultiTissueNormalizationError",
    "NumericalFailureError",
    "ScaleFactorSolveError",
    "MultiTissueNormalizer",
    "split_tissue_arguments",
]
