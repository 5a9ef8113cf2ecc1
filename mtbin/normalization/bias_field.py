"""Polynomial bias field estimation in the log domain.

The bias field is modelled as exp(P(x, y, z)) where P is a third-order
trivariate polynomial (20 terms) evaluated at scanner-space voxel positions.
P is fitted to log(sum_j s_j * tissue_j) - log(norm_value) over the working
mask and then evaluated over the whole grid.
"""

from typing import Optional, Tuple
import logging
import math

import numpy as np

from mtbin.normalization.basis import N_BASIS, polynomial_basis
from mtbin.normalization.exceptions import BiasFieldSolveError
from mtbin.normalization.io import voxel_to_world
from mtbin.normalization.lstsq import solve_least_squares
from mtbin.normalization.parallel import map_voxel_chunks

logger = logging.getLogger(__name__)


class BiasFieldEstimator:
    """Fits and reconstructs the multiplicative bias field on a fixed grid.

    Attributes:
        shape: 3-D grid shape
        affine: 4x4 voxel-to-world transform
        log_norm_value: Log of the target value of the normalised tissue sum
        chunk_size: Voxels per reconstruction chunk
        n_workers: Reconstruction threads
    """

    def __init__(
        self,
        shape: Tuple[int, int, int],
        affine: np.ndarray,
        norm_value: float,
        chunk_size: int = 262144,
        n_workers: Optional[int] = None,
    ) -> None:
        self.shape = tuple(int(s) for s in shape)
        self.affine = np.asarray(affine, dtype=np.float64)
        self.log_norm_value = math.log(norm_value)
        self.chunk_size = chunk_size
        self.n_workers = n_workers

    def design_matrix(self, mask: np.ndarray) -> np.ndarray:
        """Basis rows for every active voxel, in C order."""
        indices = np.argwhere(mask)
        return polynomial_basis(voxel_to_world(self.affine, indices))

    def fit(
        self,
        tissues: np.ndarray,
        scale_factors: np.ndarray,
        mask: np.ndarray,
    ) -> np.ndarray:
        """Fit basis weights to the log-domain residual inside the mask.

        Args:
            tissues: Stacked tissue fields, shape (T, X, Y, Z)
            scale_factors: Current scale factors, shape (T,)
            mask: Working mask

        Returns:
            Basis weights, shape (20,)

        Raises:
            BiasFieldSolveError: If fewer than 20 voxels are active or the
                system does not have full column rank
        """
        n_active = int(np.count_nonzero(mask))
        if n_active < N_BASIS:
            raise BiasFieldSolveError(
                f"bias field solve failed: {n_active} active voxels for {N_BASIS} basis functions"
            )

        summed = np.asarray(scale_factors, dtype=np.float64) @ tissues[:, mask]
        with np.errstate(divide="ignore", invalid="ignore"):
            target = np.log(summed) - self.log_norm_value

        solution = solve_least_squares(
            self.design_matrix(mask),
            target,
            min_rank=N_BASIS,
            error_cls=BiasFieldSolveError,
            label="bias field",
        )
        logger.debug(
            f"Bias field fit: {n_active} voxels, condition number {solution.condition_number:.3e}"
        )
        return solution.coefficients

    def reconstruct(self, weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Evaluate the fitted field over the entire grid.

        Returns:
            (log_field, field): log-domain and image-domain bias fields,
            each with the grid shape
        """
        weights = np.asarray(weights, dtype=np.float64)

        def _evaluate(flat_indices: np.ndarray) -> np.ndarray:
            indices = np.column_stack(np.unravel_index(flat_indices, self.shape))
            return polynomial_basis(voxel_to_world(self.affine, indices)) @ weights

        log_field = map_voxel_chunks(
            _evaluate,
            n_voxels=int(np.prod(self.shape)),
            chunk_size=self.chunk_size,
            n_workers=self.n_workers,
        ).reshape(self.shape)
        return log_field, np.exp(log_field)

    @staticmethod
    def identity(shape: Tuple[int, int, int]) -> Tuple[np.ndarray, np.ndarray]:
        """Log and image domain fields of a flat (no-op) bias field."""
        return np.zeros(shape, dtype=np.float64), np.ones(shape, dtype=np.float64)
