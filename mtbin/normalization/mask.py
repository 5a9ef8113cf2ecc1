"""Working-mask derivation for the multi-tissue estimator."""

import logging

import numpy as np

logger = logging.getLogger(__name__)


def refine_mask(signal: np.ndarray, base_mask: np.ndarray) -> np.ndarray:
    """Restrict a mask to voxels where the signal is finite and strictly positive.

    Args:
        signal: Real-valued 3-D field
        base_mask: Boolean 3-D mask with the same shape as ``signal``

    Returns:
        New boolean mask, true where ``base_mask`` is true and the signal is
        finite and > 0

    Raises:
        ValueError: If the shapes differ
    """
    signal = np.asarray(signal)
    base_mask = np.asarray(base_mask, dtype=bool)
    if signal.shape != base_mask.shape:
        raise ValueError(
            f"Signal shape {signal.shape} does not match mask shape {base_mask.shape}"
        )

    with np.errstate(invalid="ignore"):
        refined = base_mask & np.isfinite(signal) & (signal > 0)

    logger.debug(
        f"Refined mask: {int(base_mask.sum())} -> {int(refined.sum())} voxels"
    )
    return refined
