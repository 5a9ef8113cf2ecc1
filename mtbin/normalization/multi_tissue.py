"""Multi-tissue bias field correction and intensity normalisation (MTBIN).

This module wires the in-memory estimator to NIfTI files: it validates the
input/output list, loads the tissue compartments and mask, runs the
estimation and writes corrected tissues plus optional bias field and mask
outputs. Nothing is written unless the whole estimation succeeds.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from mtbin.normalization.base import BaseNormalizationStep
from mtbin.normalization.config import NormalizationConfig
from mtbin.normalization.estimator import EstimationResult, MultiTissueEstimator
from mtbin.normalization.exceptions import (
    InputValidationError,
    MultiTissueNormalizationError,
)
from mtbin.normalization.io import (
    SCALE_FACTOR_KEY,
    check_dimensions,
    check_outputs_distinct,
    check_outputs_not_inputs,
    grid_data,
    load_volume,
    mask_data,
    save_volume,
)

logger = logging.getLogger(__name__)

TISSUE_SCALE_FACTOR_KEY = "tissue_scale_factor"


def split_tissue_arguments(arguments: Sequence[str]) -> Tuple[List[Path], List[Path]]:
    """Split an alternating input/output argument list.

    Args:
        arguments: ``[in_1, out_1, in_2, out_2, ...]``

    Returns:
        (input_paths, output_paths)

    Raises:
        InputValidationError: On an odd count or fewer than two tissue types
    """
    if len(arguments) % 2:
        raise InputValidationError(
            "The number of input arguments must be even. "
            "There must be an output file provided for every input tissue image"
        )
    if len(arguments) < 4:
        raise InputValidationError("At least two tissue types must be provided")

    inputs = [Path(a) for a in arguments[0::2]]
    outputs = [Path(a) for a in arguments[1::2]]
    return inputs, outputs


class MultiTissueNormalizer(BaseNormalizationStep):
    """Jointly normalises N tissue compartments and removes a smooth bias field.

    Each output voxel is ``scale_factor * input / bias_field``. By default a
    single global factor (the log-domain average of the per-tissue factors)
    is applied to every tissue; with ``independent=True`` each tissue keeps
    its own factor.
    """

    def __init__(self, config: NormalizationConfig, verbose: bool = False) -> None:
        """Initialize normaliser.

        Args:
            config: Estimator configuration
            verbose: Enable verbose logging
        """
        super().__init__(step_name="MultiTissueNormalizer", verbose=verbose)
        self.config = config

        self.logger.info(
            f"Initialized MultiTissueNormalizer: norm_value={config.norm_value}, "
            f"max_iter={config.max_iter}, independent={config.independent}"
        )

    def execute(
        self,
        input_paths: Sequence[Path],
        output_paths: Sequence[Path],
        **kwargs: Any
    ) -> Dict[str, Any]:
        """Run the estimation and write corrected tissue volumes.

        Args:
            input_paths: Tissue compartment volumes
            output_paths: Destination for each corrected tissue
            **kwargs: Additional parameters:
                - mask_path: Mask volume (Path, required)
                - allow_overwrite: Allow overwriting existing files (bool)
                - bias_output_path: Optional output for the bias field (Path)
                - mask_output_path: Optional output for the final working mask (Path)

        Returns:
            Dictionary containing:
                - 'result': EstimationResult
                - 'scale_factors': Per-tissue factors
                - 'applied_scale_factors': Factors written to each output
                - 'converged': Whether the final inner loop converged
                - 'n_active_voxels': Size of the final working mask
                - 'bias_field': Bias field statistics within the final mask
                - 'outputs': Written file paths

        Raises:
            InputValidationError: On invalid inputs
            FileNotFoundError: If an input does not exist
            FileExistsError: If an output exists and overwrite is not allowed
            EmptyMaskError: If the mask is empty after refinement
            NumericalFailureError: If a least-squares solve fails
        """
        mask_path = kwargs.get("mask_path")
        allow_overwrite = kwargs.get("allow_overwrite", False)
        bias_output_path = kwargs.get("bias_output_path")
        mask_output_path = kwargs.get("mask_output_path")

        input_paths = [Path(p) for p in input_paths]
        output_paths = [Path(p) for p in output_paths]

        if mask_path is None:
            raise InputValidationError("A mask is required")
        mask_path = Path(mask_path)
        if len(input_paths) != len(output_paths):
            raise InputValidationError(
                f"Got {len(input_paths)} inputs but {len(output_paths)} outputs"
            )
        if len(input_paths) < 2:
            raise InputValidationError("At least two tissue types must be provided")

        extra_outputs = [p for p in (bias_output_path, mask_output_path) if p is not None]
        all_outputs = output_paths + [Path(p) for p in extra_outputs]
        check_outputs_distinct(all_outputs)
        check_outputs_not_inputs(all_outputs, input_paths + [mask_path])

        for input_path in input_paths:
            self.validate_inputs(input_path)
        self.validate_inputs(mask_path)
        for output_path in all_outputs:
            self.validate_outputs(output_path, allow_overwrite=allow_overwrite)

        self.log_execution(input_paths, output_paths)

        try:
            images = [load_volume(p) for p in input_paths]
            for path, img in zip(input_paths[1:], images[1:]):
                check_dimensions(images[0], img, name=str(path))

            mask_img = load_volume(mask_path)
            check_dimensions(images[0], mask_img, name=f"mask {mask_path}")

            tissues = np.stack([grid_data(img) for img in images])
            mask = mask_data(mask_img)
            self.logger.info(
                f"Loaded {len(images)} tissue compartments of grid {tissues.shape[1:]}, "
                f"mask with {int(mask.sum())} voxels"
            )

            estimator = MultiTissueEstimator(self.config, affine=images[0].affine)
            result = estimator.run(tissues, mask)
        except MultiTissueNormalizationError as e:
            self.logger.error(f"Multi-tissue normalisation failed: {e}")
            raise

        written = self._write_outputs(
            images, output_paths, result, bias_output_path, mask_output_path
        )

        summary = estimator.summary(result)
        self.logger.info(
            f"Applied scale factors: {summary['applied_scale_factors']}, "
            f"bias field mean in mask: {summary['bias_field']['mean']:.4f}"
        )

        summary["result"] = result
        summary["outputs"] = written
        return summary

    def _write_outputs(
        self,
        images: List[Any],
        output_paths: List[Path],
        result: EstimationResult,
        bias_output_path: Optional[Path],
        mask_output_path: Optional[Path],
    ) -> Dict[str, Any]:
        affine = images[0].affine
        written: Dict[str, Any] = {"tissues": []}

        if bias_output_path is not None:
            save_volume(result.bias_field, affine, Path(bias_output_path))
            written["bias_field"] = str(bias_output_path)

        if mask_output_path is not None:
            save_volume(result.mask, affine, Path(mask_output_path), dtype=np.uint8)
            written["mask"] = str(mask_output_path)

        for j, (img, output_path) in enumerate(zip(images, output_paths)):
            data = np.asarray(np.asanyarray(img.dataobj), dtype=np.float64)
            corrected = result.correct(j, data)
            save_volume(
                corrected,
                img.affine,
                output_path,
                header=img.header,
                keyval={
                    SCALE_FACTOR_KEY: repr(float(result.applied_scale_factors[j])),
                    TISSUE_SCALE_FACTOR_KEY: repr(float(result.scale_factors[j])),
                },
            )
            written["tissues"].append(str(output_path))
            self.logger.debug(f"Saved corrected tissue: {output_path}")

        return written

    def visualize(
        self,
        input_paths: Sequence[Path],
        output_paths: Sequence[Path],
        output_path: Path,
        **kwargs: Any
    ) -> None:
        """Generate a 4-column QC figure of the correction.

        Columns (middle axial slice):
        1. Sum of input tissue compartments
        2. Estimated bias field
        3. Sum of corrected tissue compartments
        4. Final working mask over the corrected sum

        Args:
            input_paths: Input tissue volumes
            output_paths: Corrected tissue volumes
            output_path: Path to save visualization (PNG)
            **kwargs: Additional parameters:
                - result: EstimationResult from execute() (required)

        Raises:
            ValueError: If no result is given
            RuntimeError: If visualization generation fails
        """
        import matplotlib
        matplotlib.use('Agg')
        import matplotlib.pyplot as plt

        result: Optional[EstimationResult] = kwargs.get("result")
        if result is None:
            raise ValueError("result is required for visualization")

        self.logger.info(f"Generating normalisation visualization: {output_path}")

        try:
            before = sum(grid_data(load_volume(Path(p))) for p in input_paths)
            after = sum(grid_data(load_volume(Path(p))) for p in output_paths)

            mid_z = before.shape[2] // 2
            before_slice = before[:, :, mid_z].T
            after_slice = after[:, :, mid_z].T
            bias_slice = result.bias_field[:, :, mid_z].T
            mask_slice = result.mask[:, :, mid_z].T

            fig, axes = plt.subplots(1, 4, figsize=(20, 5))
            fig.suptitle(
                f'Multi-Tissue Normalisation: {len(input_paths)} tissue compartments',
                fontsize=16,
                fontweight='bold'
            )

            im1 = axes[0].imshow(before_slice, cmap='gray', origin='lower')
            axes[0].set_title('Summed Input')
            axes[0].axis('off')
            plt.colorbar(im1, ax=axes[0], fraction=0.046, pad=0.04)

            im2 = axes[1].imshow(bias_slice, cmap='hot', origin='lower')
            axes[1].set_title('Bias Field')
            axes[1].axis('off')
            plt.colorbar(im2, ax=axes[1], fraction=0.046, pad=0.04, label='Bias Field')

            im3 = axes[2].imshow(after_slice, cmap='gray', origin='lower')
            axes[2].set_title('Summed Corrected')
            axes[2].axis('off')
            plt.colorbar(im3, ax=axes[2], fraction=0.046, pad=0.04)

            axes[3].imshow(after_slice, cmap='gray', origin='lower')
            axes[3].imshow(
                np.ma.masked_where(~mask_slice, mask_slice),
                cmap='autumn', origin='lower', alpha=0.4
            )
            axes[3].set_title('Final Working Mask')
            axes[3].axis('off')

            stats = result.bias_statistics()
            factors = ", ".join(f"{s:.4f}" for s in result.scale_factors)
            metadata_text = (
                f"Scale factors: [{factors}]\n"
                f"Bias field in mask: mean={stats['mean']:.4f}, "
                f"range=[{stats['min']:.4f}, {stats['max']:.4f}]\n"
                f"Converged: {result.converged}"
            )
            fig.text(
                0.5, 0.01,
                metadata_text,
                ha='center',
                fontsize=10,
                family='monospace',
                bbox=dict(boxstyle='round', facecolor='wheat', alpha=0.5)
            )

            plt.tight_layout(rect=[0, 0.1, 1, 0.95])

            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)

            plt.savefig(output_path, dpi=150, bbox_inches='tight')
            plt.close(fig)

            self.logger.info(f"Visualization saved to {output_path}")

        except Exception as e:
            self.logger.error(f"Visualization generation failed: {e}")
            raise RuntimeError(f"Visualization failed: {e}") from e
