"""Quartile-based outlier rejection on the log-domain weighted tissue sum.

Voxels whose log(sum_j s_j * tissue_j / bias) falls outside Tukey-style fences
``[Q1 - k * IQR, Q3 + k * IQR]`` are dropped from the working mask. Rejection
only ever removes voxels; the mask is reset by the caller at the start of each
outer iteration.
"""

from dataclasses import dataclass
from typing import Tuple
import logging

import numpy as np

from mtbin.normalization.exceptions import EmptyMaskError
from mtbin.normalization.mask import refine_mask

logger = logging.getLogger(__name__)


@dataclass
class OutlierRejectionResult:
    """Outcome of one outlier rejection pass.

    Attributes:
        mask: Updated working mask
        n_before: Active voxels before the pass
        n_refined: Active voxels after dropping non-positive sums
        n_active: Active voxels after applying the fences
        lower_fence: Lower log-domain fence
        upper_fence: Upper log-domain fence
    """
    mask: np.ndarray
    n_before: int
    n_refined: int
    n_active: int
    lower_fence: float
    upper_fence: float

    @property
    def n_rejected(self) -> int:
        return self.n_before - self.n_active


def weighted_tissue_sum(
    tissues: np.ndarray,
    scale_factors: np.ndarray,
    bias_field: np.ndarray,
) -> np.ndarray:
    """Return sum_j s_j * tissue_j / bias over the whole grid."""
    summed = np.tensordot(np.asarray(scale_factors, dtype=np.float64), tissues, axes=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        return summed / bias_field


def quartile_ranks(n: int) -> Tuple[int, int]:
    """Ranks of the lower and upper quartiles in a sorted sequence of length n.

    Ranks are round-half-up of 0.25 * n and 0.75 * n, clamped to [0, n - 1].
    """
    if n < 1:
        raise ValueError(f"Cannot compute quartiles of an empty sequence (n={n})")
    lower = int(np.floor(0.25 * n + 0.5))
    upper = int(np.floor(0.75 * n + 0.5))
    return min(lower, n - 1), min(upper, n - 1)


def outlier_fences(sorted_values: np.ndarray, outlier_range: float) -> Tuple[float, float]:
    """Compute (lower, upper) fences from an ascending sequence."""
    lower_rank, upper_rank = quartile_ranks(len(sorted_values))
    lower_quartile = float(sorted_values[lower_rank])
    upper_quartile = float(sorted_values[upper_rank])
    iqr = upper_quartile - lower_quartile
    return lower_quartile - outlier_range * iqr, upper_quartile + outlier_range * iqr


def reject_outliers(
    tissues: np.ndarray,
    scale_factors: np.ndarray,
    bias_field: np.ndarray,
    mask: np.ndarray,
    outlier_range: float,
) -> OutlierRejectionResult:
    """Shrink the working mask by removing log-domain outliers.

    Args:
        tissues: Stacked tissue fields, shape (T, X, Y, Z)
        scale_factors: Current scale factors, shape (T,)
        bias_field: Image-domain bias field, shape (X, Y, Z)
        mask: Current working mask
        outlier_range: IQR multiplier for the fences

    Returns:
        OutlierRejectionResult

    Raises:
        EmptyMaskError: If no voxel has a finite, positive weighted sum
    """
    n_before = int(np.count_nonzero(mask))
    summed = weighted_tissue_sum(tissues, scale_factors, bias_field)
    refined = refine_mask(summed, mask)
    n_refined = int(np.count_nonzero(refined))
    if n_refined == 0:
        raise EmptyMaskError(
            "Outlier rejection left no voxels with a finite, positive weighted tissue sum"
        )

    summed_log = np.log(summed[refined])
    lower_fence, upper_fence = outlier_fences(np.sort(summed_log), outlier_range)

    outliers = (summed_log < lower_fence) | (summed_log > upper_fence)
    refined[refined] = ~outliers
    n_active = n_refined - int(np.count_nonzero(outliers))

    logger.debug(
        f"Outlier rejection: {n_before} -> {n_refined} (refined) -> {n_active} voxels, "
        f"fences=[{lower_fence:.4f}, {upper_fence:.4f}]"
    )

    return OutlierRejectionResult(
        mask=refined,
        n_before=n_before,
        n_refined=n_refined,
        n_active=n_active,
        lower_fence=lower_fence,
        upper_fence=upper_fence,
    )
