"""phylomarkers package."""

__version__ = "1.0.0"

from .config import PipelineConfig, load_config_file
from .errors import (
    EstimationError,
    PhylomarkersError,
    StageExhaustionError,
    StructuralError,
    ToolExecutionError,
    ToolUnavailableError,
    ValidationError,
)
from .pipeline import RunResult, run_pipeline
from .repository import load_repository

__all__ = [
    "EstimationError",
    "PhylomarkersError",
    "PipelineConfig",
    "RunResult",
    "StageExhaustionError",
    "StructuralError",
    "ToolExecutionError",
    "ToolUnavailableError",
    "ValidationError",
    "load_config_file",
    "load_repository",
    "run_pipeline",
]
