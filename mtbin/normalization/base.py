from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Sequence
import logging

logger = logging.getLogger(__name__)


class BaseNormalizationStep(ABC):
    """Abstract base class for file-level normalisation steps.

    A step reads a set of co-registered volumes, runs an in-memory estimator
    and writes one output per input. Every step must also be able to render a
    before/after visualization for quality control.

    Attributes:
        step_name: Human-readable name of this step
        verbose: Whether to enable verbose logging
    """

    def __init__(self, step_name: str, verbose: bool = False) -> None:
        """Initialize normalisation step.

        Args:
            step_name: Name of this step
            verbose: Enable verbose logging
        """
        self.step_name = step_name
        self.verbose = verbose
        self.logger = logging.getLogger(f"{__name__}.{step_name}")

    @abstractmethod
    def execute(
        self,
        input_paths: Sequence[Path],
        output_paths: Sequence[Path],
        **kwargs: Any
    ) -> Any:
        """Execute the step.

        Args:
            input_paths: Paths to input volumes
            output_paths: Paths to output volumes, one per input
            **kwargs: Additional operation-specific parameters

        Raises:
            FileNotFoundError: If an input file does not exist
            FileExistsError: If an output exists and overwrite is not allowed
        """
        pass

    @abstractmethod
    def visualize(
        self,
        input_paths: Sequence[Path],
        output_paths: Sequence[Path],
        output_path: Path,
        **kwargs: Any
    ) -> None:
        """Generate visualization comparing before and after states.

        Args:
            input_paths: Paths to input volumes (before the step)
            output_paths: Paths to output volumes (after the step)
            output_path: Path to save visualization output
            **kwargs: Additional visualization parameters

        Raises:
            FileNotFoundError: If input files do not exist
            RuntimeError: If visualization generation fails
        """
        pass

    def validate_inputs(self, input_path: Path) -> None:
        """Validate input file exists.

        Args:
            input_path: Path to validate

        Raises:
            FileNotFoundError: If file does not exist
        """
        if not input_path.exists():
            raise FileNotFoundError(f"Input file not found: {input_path}")

        self.logger.debug(f"Input validation passed: {input_path}")

    def validate_outputs(self, output_path: Path, allow_overwrite: bool = False) -> None:
        """Check overwrite conditions for an output path.

        Parent directories are not created here; nothing is touched on disk
        until the estimation has finished.

        Args:
            output_path: Path to validate
            allow_overwrite: Whether to allow overwriting existing files

        Raises:
            FileExistsError: If file exists and overwrite is not allowed
        """
        if output_path.exists() and not allow_overwrite:
            raise FileExistsError(
                f"Output file \"{output_path}\" already exists (use --force to overwrite)"
            )

        self.logger.debug(f"Output validation passed: {output_path}")

    def log_execution(self, input_paths: Sequence[Path], output_paths: Sequence[Path]) -> None:
        """Log execution details.

        Args:
            input_paths: Input file paths
            output_paths: Output file paths
        """
        for input_path, output_path in zip(input_paths, output_paths):
            self.logger.info(
                f"[{self.step_name}] Processing: {input_path.name} -> {output_path.name}"
            )
