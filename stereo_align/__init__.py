"""Stereo rig alignment verification service."""

from .adjustment import AdjustmentPriority, AdjustmentVectors, check_centering, suggest_adjustment
from .config import PipelineConfig, load_config
from .pipeline import AlignmentPipeline
from .stats import PipelineStats

__all__ = [
    "AdjustmentPriority",
    "AdjustmentVectors",
    "AlignmentPipeline",
    "PipelineConfig",
    "PipelineStats",
    "check_centering",
    "load_config",
    "suggest_adjustment",
]
