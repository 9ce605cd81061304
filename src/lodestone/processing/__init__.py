"""Source lifecycle: processing runs, background jobs and batch sweeps."""

from lodestone.processing.processor import ProcessingResult, SourceProcessor
from lodestone.processing.runner import BackgroundRunner
from lodestone.processing.scheduler import RetrainScheduler, SweepReport, sweep_pending

__all__ = [
    "BackgroundRunner",
    "ProcessingResult",
    "RetrainScheduler",
    "SourceProcessor",
    "SweepReport",
    "sweep_pending",
]
