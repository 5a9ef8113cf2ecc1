"""Shared least-squares solve used by both the scale factor and bias field fits."""

from dataclasses import dataclass
from typing import Optional, Type
import logging

import numpy as np
from scipy import linalg as scipy_linalg

from mtbin.normalization.exceptions import NumericalFailureError

logger = logging.getLogger(__name__)


@dataclass
class LeastSquaresSolution:
    """Result of a least-squares solve.

    Attributes:
        coefficients: Minimum-norm solution vector, shape (K,)
        rank: Numerical rank of the design matrix
        singular_values: Singular values of the column-equilibrated design matrix
    """
    coefficients: np.ndarray
    rank: int
    singular_values: np.ndarray

    @property
    def condition_number(self) -> float:
        """Ratio of largest to smallest singular value (inf if singular)."""
        if self.singular_values.size == 0 or self.singular_values[-1] == 0:
            return float("inf")
        return float(self.singular_values[0] / self.singular_values[-1])


def solve_least_squares(
    design: np.ndarray,
    target: np.ndarray,
    min_rank: Optional[int] = None,
    error_cls: Type[NumericalFailureError] = NumericalFailureError,
    label: str = "least-squares",
) -> LeastSquaresSolution:
    """Solve ``min ||design @ x - target||`` with an SVD-based decomposition.

    Rank-deficient systems return the minimum-norm solution; callers state how
    much rank they need through ``min_rank``.

    Args:
        design: Design matrix, shape (N, K)
        target: Target vector, shape (N,)
        min_rank: Minimum numerical rank accepted (defaults to 1)
        error_cls: Exception raised on failure
        label: Name used in log and error messages

    Returns:
        LeastSquaresSolution

    Raises:
        error_cls: If the system is empty, the decomposition fails, the rank
            is below ``min_rank`` or the solution is not finite
    """
    design = np.asarray(design, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    n_rows, n_cols = design.shape

    if n_rows == 0:
        raise error_cls(f"{label} solve failed: design matrix has no rows")
    if target.shape != (n_rows,):
        raise error_cls(
            f"{label} solve failed: target shape {target.shape} does not match {n_rows} rows"
        )
    if not (np.all(np.isfinite(design)) and np.all(np.isfinite(target))):
        raise error_cls(f"{label} solve failed: non-finite values in the system")

    required = 1 if min_rank is None else min_rank

    # Equilibrate columns so polynomial terms of very different magnitude
    # (e.g. 1 and x**3 in millimetres) do not dominate the rank decision.
    column_norms = np.linalg.norm(design, axis=0)
    column_norms[column_norms == 0] = 1.0
    cond = np.finfo(np.float64).eps * max(n_rows, n_cols)

    try:
        scaled, _, rank, singular_values = scipy_linalg.lstsq(
            design / column_norms, target, cond=cond
        )
    except (scipy_linalg.LinAlgError, ValueError) as e:
        raise error_cls(f"{label} solve failed: {e}") from e
    coefficients = scaled / column_norms

    rank = int(rank)
    logger.debug(
        f"{label} solve: {n_rows}x{n_cols} system, rank={rank}"
    )

    if rank < required:
        raise error_cls(
            f"{label} solve failed: rank-deficient system "
            f"(rank {rank} < {required} with {n_rows} rows, {n_cols} unknowns)"
        )
    if not np.all(np.isfinite(coefficients)):
        raise error_cls(f"{label} solve failed: non-finite solution")

    return LeastSquaresSolution(
        coefficients=np.asarray(coefficients, dtype=np.float64),
        rank=rank,
        singular_values=np.asarray(singular_values, dtype=np.float64),
    )
