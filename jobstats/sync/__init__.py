"""Sync subpackage for jobstats: scheduler collectors and their registry."""

from .base import BatchScheduler
from .registry import SchedulerRegistry, default_registry
from .slurm import ExecMode, SlurmCollector, parse_sacct_line, parse_sacct_output

__all__ = [
    "BatchScheduler",
    "SchedulerRegistry",
    "default_registry",
    "ExecMode",
    "SlurmCollector",
    "parse_sacct_line",
    "parse_sacct_output",
]
