"""Joint estimation of tissue scale factors and a polynomial bias field.

The estimator runs a fixed number of outer iterations. Each one resets the
working mask to the initial mask, alternates scale factor solves with outlier
rejection until the factors stop changing (or the pass limit is reached), and
then refits the bias field once. The outer loop has no convergence test of
its own.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np

from mtbin.normalization.bias_field import BiasFieldEstimator
from mtbin.normalization.config import NormalizationConfig
from mtbin.normalization.exceptions import EmptyMaskError, InputValidationError
from mtbin.normalization.mask import refine_mask
from mtbin.normalization.outliers import reject_outliers
from mtbin.normalization.scale_factors import (
    geometric_mean,
    relative_change,
    solve_scale_factors,
)

logger = logging.getLogger(__name__)


@dataclass
class IterationRecord:
    """Summary of one outer iteration.

    The fences are those of the last outlier rejection pass.
    """
    outer_iteration: int
    inner_passes: int
    converged: bool
    n_active_voxels: int
    scale_factors: List[float]
    relative_change: Optional[float]
    lower_fence: Optional[float]
    upper_fence: Optional[float]
    bias_field_mean: float


@dataclass
class EstimationState:
    """Mutable estimation state owned by the estimator for one run.

    Attributes:
        initial_mask: Original mask restricted to positive, finite summed signal
        mask: Current working mask
        n_active: Number of voxels in the working mask
        scale_factors: Latest scale factors
        previous_scale_factors: Factors from the previous inner pass of the
            current outer iteration (None on the first pass)
        bias_field_log: Log-domain bias field
        bias_field: Image-domain bias field
        bias_weights: Latest basis weights (None before the first fit)
        converged: Whether the last inner loop converged
        history: One record per completed outer iteration
    """
    initial_mask: np.ndarray
    mask: np.ndarray
    n_active: int
    scale_factors: np.ndarray
    bias_field_log: np.ndarray
    bias_field: np.ndarray
    previous_scale_factors: Optional[np.ndarray] = None
    bias_weights: Optional[np.ndarray] = None
    converged: bool = False
    history: List[IterationRecord] = field(default_factory=list)


@dataclass
class EstimationResult:
    """Final estimates.

    Attributes:
        scale_factors: Per-tissue factors (geometric mean 1)
        applied_scale_factors: Factors applied to each tissue on output; the
            log-domain average repeated for every tissue unless independent
        bias_field: Image-domain bias field over the whole grid
        bias_field_log: Log-domain bias field
        bias_weights: Basis weights of the final fit
        mask: Final working mask
        history: Per-outer-iteration records
    """
    scale_factors: np.ndarray
    applied_scale_factors: np.ndarray
    bias_field: np.ndarray
    bias_field_log: np.ndarray
    bias_weights: Optional[np.ndarray]
    mask: np.ndarray
    history: List[IterationRecord]

    @property
    def converged(self) -> bool:
        return bool(self.history) and self.history[-1].converged

    def bias_statistics(self) -> Dict[str, float]:
        """Mean, min and max of the bias field inside the final mask."""
        values = self.bias_field[self.mask]
        if values.size == 0:
            return {"mean": float("nan"), "min": float("nan"), "max": float("nan")}
        return {
            "mean": float(values.mean()),
            "min": float(values.min()),
            "max": float(values.max()),
        }

    def correct(self, tissue_index: int, data: np.ndarray) -> np.ndarray:
        """Apply scale factor and bias correction to a tissue volume.

        ``data`` may carry extra axes after the three grid axes; the bias field
        is broadcast across them.
        """
        bias = self.bias_field.reshape(self.bias_field.shape + (1,) * (data.ndim - 3))
        return self.applied_scale_factors[tissue_index] * data / bias


class MultiTissueEstimator:
    """Estimates tissue scale factors and a multiplicative bias field.

    Attributes:
        config: Estimator configuration
        affine: 4x4 voxel-to-world transform shared by all volumes
    """

    def __init__(self, config: NormalizationConfig, affine: np.ndarray) -> None:
        self.config = config
        self.affine = np.asarray(affine, dtype=np.float64)

    def initial_mask(self, tissues: np.ndarray, mask: np.ndarray) -> np.ndarray:
        """Restrict the user mask to voxels whose summed tissue signal is positive.

        Raises:
            EmptyMaskError: If no voxel remains
        """
        initial = refine_mask(tissues.sum(axis=0), mask)
        if not np.any(initial):
            raise EmptyMaskError(
                "Mask contains no voxels with finite, positive summed tissue signal"
            )
        return initial

    def run(self, tissues: np.ndarray, mask: np.ndarray) -> EstimationResult:
        """Run the full estimation.

        Args:
            tissues: Stacked 3-D tissue fields, shape (T, X, Y, Z), T >= 2
            mask: Boolean mask, shape (X, Y, Z)

        Returns:
            EstimationResult

        Raises:
            InputValidationError: On malformed inputs
            EmptyMaskError: If the mask is empty after refinement
            ScaleFactorSolveError: If a scale factor solve fails
            BiasFieldSolveError: If a bias field fit fails
        """
        tissues = np.asarray(tissues, dtype=np.float64)
        mask = np.asarray(mask, dtype=bool)

        if tissues.ndim != 4:
            raise InputValidationError(
                f"Expected stacked 3-D tissue fields (T, X, Y, Z), got shape {tissues.shape}"
            )
        if tissues.shape[0] < 2:
            raise InputValidationError("At least two tissue types must be provided")
        if mask.shape != tissues.shape[1:]:
            raise InputValidationError(
                f"Dimension mismatch for mask: expected {tissues.shape[1:]}, got {mask.shape}"
            )

        state = self._initial_state(tissues, mask)
        logger.info(
            f"Initial mask: {state.n_active} voxels, {tissues.shape[0]} tissue types, "
            f"{self.config.max_iter} iterations"
        )

        bias_estimator = BiasFieldEstimator(
            shape=tissues.shape[1:],
            affine=self.affine,
            norm_value=self.config.norm_value,
            chunk_size=self.config.chunk_size,
            n_workers=self.config.n_workers,
        )

        for outer in range(1, self.config.max_iter + 1):
            logger.info(f"Iteration: {outer}")
            inner_passes, change, rejection = self._estimate_scale_factors(state, tissues)

            logger.info(f"Scale factors: {np.array2string(state.scale_factors, precision=6)}")

            state.bias_weights = bias_estimator.fit(tissues, state.scale_factors, state.mask)
            state.bias_field_log, state.bias_field = bias_estimator.reconstruct(state.bias_weights)

            record = IterationRecord(
                outer_iteration=outer,
                inner_passes=inner_passes,
                converged=state.converged,
                n_active_voxels=state.n_active,
                scale_factors=state.scale_factors.tolist(),
                relative_change=change,
                lower_fence=rejection.lower_fence if rejection is not None else None,
                upper_fence=rejection.upper_fence if rejection is not None else None,
                bias_field_mean=float(state.bias_field[state.mask].mean()),
            )
            state.history.append(record)
            logger.debug(f"Iteration record: {record}")

        return self._result(state)

    def _initial_state(self, tissues: np.ndarray, mask: np.ndarray) -> EstimationState:
        initial = self.initial_mask(tissues, mask)
        bias_log, bias = BiasFieldEstimator.identity(tissues.shape[1:])
        return EstimationState(
            initial_mask=initial,
            mask=initial.copy(),
            n_active=int(np.count_nonzero(initial)),
            scale_factors=np.ones(tissues.shape[0], dtype=np.float64),
            bias_field_log=bias_log,
            bias_field=bias,
        )

    def _estimate_scale_factors(self, state: EstimationState, tissues: np.ndarray) -> tuple:
        """Inner loop: scale factor solves with outlier rejection.

        Convergence is judged within the current outer iteration only: the
        first pass never converges, later passes compare with the pass before.

        Returns:
            (number of passes, last relative change or None,
            last OutlierRejectionResult or None)
        """
        state.mask = state.initial_mask.copy()
        state.n_active = int(np.count_nonzero(state.mask))
        state.previous_scale_factors = None
        state.converged = False

        change = None
        rejection = None
        passes = 0
        while not state.converged and passes < self.config.max_iter:
            passes += 1
            state.scale_factors = solve_scale_factors(tissues, state.bias_field, state.mask)

            if state.previous_scale_factors is not None:
                change = relative_change(state.previous_scale_factors, state.scale_factors)
                logger.debug(
                    f"Pass {passes}: percentage change in estimated scale factors: {change * 100:.6f}"
                )
                state.converged = change < self.config.convergence_tolerance

            if not state.converged:
                rejection = reject_outliers(
                    tissues,
                    state.scale_factors,
                    state.bias_field,
                    state.mask,
                    self.config.outlier_range,
                )
                state.mask = rejection.mask
                state.n_active = rejection.n_active
                logger.debug(
                    f"Pass {passes}: rejected {rejection.n_rejected} voxels, "
                    f"{state.n_active} remain"
                )

            state.previous_scale_factors = state.scale_factors

        if state.converged:
            logger.info(f"Scale factors converged after {passes} passes")
        else:
            logger.info(f"Scale factors did not converge within {passes} passes")
        return passes, change, rejection

    def _result(self, state: EstimationState) -> EstimationResult:
        if self.config.independent:
            applied = state.scale_factors.copy()
        else:
            applied = np.full_like(state.scale_factors, geometric_mean(state.scale_factors))

        return EstimationResult(
            scale_factors=state.scale_factors.copy(),
            applied_scale_factors=applied,
            bias_field=state.bias_field,
            bias_field_log=state.bias_field_log,
            bias_weights=state.bias_weights,
            mask=state.mask,
            history=state.history,
        )

    def summary(self, result: EstimationResult) -> Dict[str, Any]:
        """JSON-friendly summary of a result."""
        return {
            "scale_factors": result.scale_factors.tolist(),
            "applied_scale_factors": result.applied_scale_factors.tolist(),
            "converged": result.converged,
            "n_active_voxels": int(np.count_nonzero(result.mask)),
            "bias_field": result.bias_statistics(),
            "norm_value": self.config.norm_value,
            "independent": self.config.independent,
        }
