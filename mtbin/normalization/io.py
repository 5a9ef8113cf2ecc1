"""Volume access for the multi-tissue estimator.

Thin layer over nibabel: load tissue and mask volumes, check that they share
a voxel grid, map voxel indices to scanner space, and write results back with
a small key/value record stored in a NIfTI comment extension.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple
import json
import logging

import nibabel as nib
import numpy as np
from nibabel.affines import apply_affine
from nibabel.spatialimages import SpatialImage

from mtbin.normalization.exceptions import InputValidationError

logger = logging.getLogger(__name__)

SCALE_FACTOR_KEY = "normalisation_scale_factor"
_KEYVAL_ECODE = 6  # NIfTI "comment" extension


def load_volume(path: Path) -> nib.Nifti1Image:
    """Load a NIfTI volume without reading its data block yet.

    Args:
        path: Path to the NIfTI file

    Returns:
        nibabel image

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Volume not found: {path}")

    logger.debug(f"Loading volume: {path}")
    return nib.load(str(path))


def grid_shape(img: SpatialImage) -> Tuple[int, int, int]:
    """Return the 3-D voxel grid shape of an image (extra axes ignored)."""
    shape = img.shape
    if len(shape) < 3:
        raise InputValidationError(
            f"Expected at least 3 dimensions, got image of shape {shape}"
        )
    return tuple(int(s) for s in shape[:3])


def check_dimensions(
    reference: SpatialImage,
    other: SpatialImage,
    name: str = "image",
) -> None:
    """Check that two images share the first three grid dimensions.

    Raises:
        InputValidationError: If the grid dimensions differ
    """
    ref_shape = grid_shape(reference)
    other_shape = grid_shape(other)
    if ref_shape != other_shape:
        raise InputValidationError(
            f"Dimension mismatch for {name}: expected {ref_shape}, got {other_shape}"
        )


def grid_data(img: SpatialImage) -> np.ndarray:
    """Return the 3-D float64 field used for estimation.

    For images with more than three axes, the first volume along the extra
    axes is used (e.g. the l=0 term of a spherical harmonic series).
    """
    data = np.asanyarray(img.dataobj)
    if data.ndim > 3:
        data = data[(slice(None),) * 3 + (0,) * (data.ndim - 3)]
    return np.asarray(data, dtype=np.float64)


def mask_data(img: SpatialImage) -> np.ndarray:
    """Return the boolean 3-D mask array of a mask image."""
    return grid_data(img) > 0


def voxel_to_world(affine: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """Map integer voxel indices to scanner-space coordinates.

    Args:
        affine: 4x4 voxel-to-world transform
        indices: Voxel indices, shape (N, 3)

    Returns:
        World coordinates, shape (N, 3), float64
    """
    return apply_affine(np.asarray(affine, dtype=np.float64), np.asarray(indices, dtype=np.float64))


def save_volume(
    data: np.ndarray,
    affine: np.ndarray,
    output_path: Path,
    header: Optional[nib.Nifti1Header] = None,
    keyval: Optional[Dict[str, Any]] = None,
    dtype: Any = np.float32,
) -> None:
    """Write a volume to disk, optionally tagging it with key/value metadata.

    Args:
        data: Voxel data
        affine: 4x4 voxel-to-world transform
        output_path: Destination (.nii or .nii.gz)
        header: Header to copy geometry and metadata from
        keyval: Metadata stored as JSON in a NIfTI comment extension
        dtype: On-disk data type
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    out_header = header.copy() if header is not None else None
    img = nib.Nifti1Image(np.asarray(data, dtype=dtype), affine, header=out_header)
    img.set_data_dtype(dtype)

    if keyval:
        payload = json.dumps({k: str(v) for k, v in keyval.items()}).encode("utf-8")
        img.header.extensions.append(nib.nifti1.Nifti1Extension(_KEYVAL_ECODE, payload))

    logger.debug(f"Saving volume: {output_path}")
    nib.save(img, str(output_path))


def read_keyval(img: nib.Nifti1Image) -> Dict[str, str]:
    """Read key/value metadata written by save_volume.

    Comment extensions that are not JSON objects are ignored.
    """
    keyval: Dict[str, str] = {}
    for ext in img.header.extensions:
        if ext.get_code() != _KEYVAL_ECODE:
            continue
        content = ext.get_content()
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        try:
            parsed = json.loads(content.rstrip("\x00"))
        except ValueError:
            continue
        if isinstance(parsed, dict):
            keyval.update({str(k): str(v) for k, v in parsed.items()})
    return keyval


def check_outputs_distinct(paths: Sequence[Path]) -> None:
    """Reject output lists that name the same file twice."""
    resolved = [Path(p).resolve() for p in paths]
    if len(set(resolved)) != len(resolved):
        raise InputValidationError("Output paths must be distinct")


def check_outputs_not_inputs(output_paths: Sequence[Path], input_paths: Sequence[Path]) -> None:
    """Reject outputs that resolve to one of the volumes being read.

    Raises:
        InputValidationError: If an output would overwrite an input
    """
    inputs = {Path(p).resolve() for p in input_paths}
    for output_path in output_paths:
        if Path(output_path).resolve() in inputs:
            raise InputValidationError(
                f"Output \"{output_path}\" would overwrite an input volume"
            )
