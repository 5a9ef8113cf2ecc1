"""Per-tissue scale factor solve with a geometric-mean-one constraint."""

import logging

import numpy as np

from mtbin.normalization.exceptions import ScaleFactorSolveError
from mtbin.normalization.lstsq import solve_least_squares

logger = logging.getLogger(__name__)


def constrain_geometric_mean(scale_factors: np.ndarray) -> np.ndarray:
    """Divide scale factors by their geometric mean so that sum(log(s)) == 0.

    Raises:
        ScaleFactorSolveError: If any factor is non-positive or non-finite
    """
    scale_factors = np.asarray(scale_factors, dtype=np.float64)
    if not np.all(np.isfinite(scale_factors)) or np.any(scale_factors <= 0):
        raise ScaleFactorSolveError(
            f"scale factor solve failed: non-positive or non-finite factors {scale_factors}"
        )
    return scale_factors / np.exp(np.mean(np.log(scale_factors)))


def geometric_mean(scale_factors: np.ndarray) -> float:
    """Log-domain average of the scale factors."""
    return float(np.exp(np.mean(np.log(scale_factors))))


def solve_scale_factors(
    tissues: np.ndarray,
    bias_field: np.ndarray,
    mask: np.ndarray,
) -> np.ndarray:
    """Estimate per-tissue scale factors inside the working mask.

    Solves ``sum_j s_j * tissue_j / bias == 1`` in the least-squares sense
    over the active voxels, then applies the geometric-mean-one constraint.

    Args:
        tissues: Stacked tissue fields, shape (T, X, Y, Z)
        bias_field: Image-domain bias field, shape (X, Y, Z)
        mask: Working mask, shape (X, Y, Z)

    Returns:
        Scale factors, shape (T,), with a geometric mean of 1

    Raises:
        ScaleFactorSolveError: If the system is degenerate
    """
    n_tissues = tissues.shape[0]
    n_active = int(np.count_nonzero(mask))
    if n_active < n_tissues:
        raise ScaleFactorSolveError(
            f"scale factor solve failed: {n_active} active voxels for {n_tissues} tissue types"
        )

    design = (tissues[:, mask] / bias_field[mask]).T
    target = np.ones(n_active, dtype=np.float64)

    solution = solve_least_squares(
        design,
        target,
        min_rank=1,
        error_cls=ScaleFactorSolveError,
        label="scale factor",
    )
    if solution.rank < n_tissues:
        logger.warning(
            f"Scale factor system is rank-deficient (rank {solution.rank} for "
            f"{n_tissues} tissues); using the minimum-norm solution"
        )

    logger.debug(f"Raw scale factors: {solution.coefficients}")
    scale_factors = constrain_geometric_mean(solution.coefficients)
    logger.debug(f"Log-normalised scale factors: {scale_factors}")
    return scale_factors


def relative_change(previous: np.ndarray, current: np.ndarray) -> float:
    """Mean of |previous - current| / previous across tissues."""
    return float(np.mean(np.abs(previous - current) / previous))
