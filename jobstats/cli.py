"""Command-line entry point: ``jobstats collect|vacuum|prune|show``."""

import signal
import sys
import threading
from typing import Callable

import click
from rich.console import Console
from rich.table import Table

from .config import JobStatsConfig
from .cycle import CollectionCycle
from .database.store import JobStore
from .exceptions import CollectorError, ConfigurationError, StoreError
from .log_config import configure_logging, get_logger
from .sync.registry import default_registry
from .tsdb import MetricsEnricher, SeriesCleaner, TSDBClient

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def verbose_option() -> Callable:
    """-v/--verbose flag: debug logging."""
    return click.option(
        "-v", "--verbose",
        is_flag=True,
        default=False,
        help="Enable debug logging",
    )


def _setup(verbose: bool) -> None:
    configure_logging("DEBUG" if verbose else JobStatsConfig.LOG_LEVEL)
    try:
        JobStatsConfig.validate()
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _open_store() -> JobStore:
    store = JobStore(JobStatsConfig.db_path(), JobStatsConfig.RETENTION_DAYS)
    try:
        store.setup()
    except StoreError as e:
        raise click.ClickException(str(e))
    return store


def build_cycle() -> CollectionCycle:
    """Wire collector, store and enricher from the environment configuration.

    Raises:
        click.ClickException: On configuration or collector setup errors
    """
    registry = default_registry()
    try:
        registry.enable(JobStatsConfig.SCHEDULER)
        scheduler = registry.create(
            sacct_path=JobStatsConfig.SLURM_SACCT_PATH,
            slurm_user=JobStatsConfig.SLURM_USER,
            cutoff=JobStatsConfig.JOB_CUTOFF_SECONDS,
        )
    except (ConfigurationError, CollectorError) as e:
        raise click.ClickException(str(e))

    client = TSDBClient(
        JobStatsConfig.TSDB_WEBURL,
        skip_tls_verify=JobStatsConfig.TSDB_SKIP_TLS_VERIFY,
    )
    if not client.available:
        logger.info("TSDB_WEBURL not set; jobs will be stored without metrics")

    return CollectionCycle(
        scheduler,
        _open_store(),
        MetricsEnricher(client),
        JobStatsConfig.watermark_path(),
        initial_lookback_days=JobStatsConfig.INITIAL_LOOKBACK_DAYS,
        vacuum_interval_days=JobStatsConfig.VACUUM_INTERVAL_DAYS,
        cleaner=SeriesCleaner(client) if JobStatsConfig.TSDB_CLEANUP else None,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """Collect completed batch jobs into a local SQLite job store."""
    pass


@cli.command()
@click.option("--once", is_flag=True, default=False, help="Run a single collection cycle and exit.")
@click.option(
    "--interval",
    type=click.IntRange(min=1),
    default=None,
    help=f"Seconds between cycles (default: JOBSTATS_UPDATE_INTERVAL={JobStatsConfig.UPDATE_INTERVAL}).",
)
@verbose_option()
def collect(once, interval, verbose):
    """Collect completed jobs, enrich them with metrics and store them."""
    _setup(verbose)
    cycle = build_cycle()

    if once:
        try:
            ok = cycle.run_once()
        finally:
            cycle.store.close()
            cycle.enricher.client.close()
        sys.exit(0 if ok else 1)

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping after current step")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    cycle.run_forever(interval or JobStatsConfig.UPDATE_INTERVAL, stop_event)


@cli.command()
@verbose_option()
def vacuum(verbose):
    """Compact the job store database file."""
    _setup(verbose)
    store = _open_store()
    try:
        store.vacuum()
    except StoreError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Vacuumed {store.db_path}")


@cli.command()
@verbose_option()
def prune(verbose):
    """Delete jobs older than the retention period."""
    _setup(verbose)
    store = _open_store()
    try:
        deleted = store.delete_old()
    except StoreError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()
    click.echo(f"Removed {deleted:,} jobs older than {store.retention_days} days")


@cli.command()
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True,
              help="Number of most recently stored jobs to show.")
def show(limit):
    """Show the most recently stored jobs."""
    configure_logging(JobStatsConfig.LOG_LEVEL)
    store = _open_store()
    try:
        jobs = store.jobs(limit=limit)
        total = store.count()
    except StoreError as e:
        raise click.ClickException(str(e))
    finally:
        store.close()

    console = Console()
    table = Table(
        "Job ID", "User", "Account", "Partition", "State", "Start", "Elapsed", "Nodes",
        "CPU %", "CPU Mem %", "CPU kWh", "GPU %", "GPU kWh",
        title=f"{len(jobs)} of {total:,} stored jobs",
    )
    for job in jobs:
        table.add_row(
            job.jobid, job.usr, job.account, job.partition, job.state,
            job.start, job.elapsed, job.nnodes,
            f"{job.ave_cpu_usage:.1f}",
            f"{job.ave_cpu_mem_usage:.1f}",
            f"{job.total_cpu_energy_usage_kwh:.3f}",
            f"{job.ave_gpu_usage:.1f}",
            f"{job.total_gpu_energy_usage_kwh:.3f}",
        )
    console.print(table)


if __name__ == "__main__":
    cli()
