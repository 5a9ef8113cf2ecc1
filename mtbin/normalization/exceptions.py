"""Exception hierarchy for multi-tissue bias field correction and normalisation.

Every failure in the estimator is fatal: nothing is retried and nothing is
written to disk once one of these is raised.
"""


class MultiTissueNormalizationError(Exception):
    """Base class for all estimation failures."""
    pass


class InputValidationError(MultiTissueNormalizationError, ValueError):
    """Raised when the input tissue/output list or a parameter is invalid."""
    pass


class EmptyMaskError(MultiTissueNormalizationError, ValueError):
    """Raised when the mask contains no usable voxels."""
    pass


class NumericalFailureError(MultiTissueNormalizationError, RuntimeError):
    """Raised when a least-squares system cannot be solved reliably."""
    pass


class ScaleFactorSolveError(NumericalFailureError):
    """Raised when the per-tissue scale factor solve fails."""
    pass


class BiasFieldSolveError(NumericalFailureError):
    """Raised when the polynomial bias field fit fails."""
    pass
