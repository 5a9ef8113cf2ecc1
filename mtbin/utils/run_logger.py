"""Run logging utilities for multi-tissue normalisation.

This module records everything needed to reproduce and audit a normalisation
run: inputs, outputs, configuration, per-iteration convergence history and the
final estimates.
"""

from dataclasses import dataclass, asdict, field
from typing import List, Dict, Any, Optional
from datetime import datetime
from pathlib import Path
import json
import logging

from mtbin.normalization.config import NormalizationConfig
from mtbin.normalization.estimator import EstimationResult

logger = logging.getLogger(__name__)


@dataclass
class NormalizationRunRecord:
    """Record of a normalisation run.

    Attributes:
        timestamp: ISO format timestamp of when the record was created
        input_paths: Tissue compartment inputs
        output_paths: Corrected tissue outputs
        mask_path: Mask used for the estimation
        config: Estimator configuration
        scale_factors: Final per-tissue scale factors
        applied_scale_factors: Factors applied to each output
        converged: Whether the final inner loop converged
        n_active_voxels: Size of the final working mask
        bias_field: Bias field statistics inside the final mask
        history: Per-outer-iteration convergence records
        extra_outputs: Bias field / mask output paths, if any
    """
    timestamp: str
    input_paths: List[str]
    output_paths: List[str]
    mask_path: str
    config: Dict[str, Any]
    scale_factors: List[float]
    applied_scale_factors: List[float]
    converged: bool
    n_active_voxels: int
    bias_field: Dict[str, float]
    history: List[Dict[str, Any]] = field(default_factory=list)
    extra_outputs: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_result(
        cls,
        input_paths: List[Path],
        output_paths: List[Path],
        mask_path: Path,
        config: NormalizationConfig,
        result: EstimationResult,
        extra_outputs: Optional[Dict[str, str]] = None,
    ) -> 'NormalizationRunRecord':
        """Create record from an estimation result.

        Args:
            input_paths: Tissue compartment inputs
            output_paths: Corrected tissue outputs
            mask_path: Mask path
            config: Configuration used
            result: Estimation result
            extra_outputs: Optional mapping of output kind to path

        Returns:
            NormalizationRunRecord instance
        """
        return cls(
            timestamp=datetime.now().isoformat(),
            input_paths=[str(p) for p in input_paths],
            output_paths=[str(p) for p in output_paths],
            mask_path=str(mask_path),
            config=asdict(config),
            scale_factors=[float(s) for s in result.scale_factors],
            applied_scale_factors=[float(s) for s in result.applied_scale_factors],
            converged=result.converged,
            n_active_voxels=int(result.mask.sum()),
            bias_field=result.bias_statistics(),
            history=[asdict(record) for record in result.history],
            extra_outputs=dict(extra_outputs or {}),
        )

    def save(self, output_path: Path) -> None:
        """Save record to JSON file.

        Creates parent directories if they don't exist.

        Args:
            output_path: Path to output JSON file
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump(asdict(self), f, indent=2)
        logger.info(f"Run record saved to: {output_path}")
