"""Chunked, thread-parallel evaluation over the flat voxel index space."""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional
import logging

import numpy as np

logger = logging.getLogger(__name__)


def map_voxel_chunks(
    func: Callable[[np.ndarray], np.ndarray],
    n_voxels: int,
    chunk_size: int,
    n_workers: Optional[int] = None,
    dtype=np.float64,
) -> np.ndarray:
    """Evaluate ``func`` over contiguous chunks of flat voxel indices.

    Each call receives an index array and must return one value per index.
    Chunks are independent; results are assembled once every worker is done.

    Args:
        func: Per-chunk function, ``func(indices) -> values``
        n_voxels: Total number of voxels
        chunk_size: Voxels per chunk
        n_workers: Worker threads (None = executor default, 1 = run inline)
        dtype: Output array dtype

    Returns:
        Flat array of length ``n_voxels``
    """
    out = np.empty(n_voxels, dtype=dtype)
    starts = range(0, n_voxels, chunk_size)

    def _run(start: int) -> None:
        stop = min(start + chunk_size, n_voxels)
        out[start:stop] = func(np.arange(start, stop))

    if n_workers == 1 or n_voxels <= chunk_size:
        for start in starts:
            _run(start)
        return out

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = [executor.submit(_run, start) for start in starts]
        for future in futures:
            future.result()

    logger.debug(f"Evaluated {n_voxels} voxels in {len(futures)} chunks")
    return out
