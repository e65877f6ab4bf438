"""jobstats - collect completed batch jobs, enrich them with metrics and store them in SQLite."""

from .cycle import CollectionCycle
from .database import BatchJob, JobStore
from .sync import BatchScheduler, SchedulerRegistry, SlurmCollector, default_registry
from .tsdb import MetricsEnricher, TSDBClient

__version__ = "0.1.0"

__all__ = [
    "BatchJob",
    "BatchScheduler",
    "CollectionCycle",
    "JobStore",
    "MetricsEnricher",
    "SchedulerRegistry",
    "SlurmCollector",
    "TSDBClient",
    "default_registry",
]
