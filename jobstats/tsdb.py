"""Metrics backend client and aggregate-metric enrichment of jobs.

The backend is a Prometheus-compatible TSDB.  For every batch of collected
jobs, eight aggregate queries (CPU and GPU utilisation, memory, energy and
emissions) are issued concurrently and the per-job results are merged into
the BatchJob records before they are stored.
"""

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import httpx
import yaml

from .database.models import BatchJob, IgnoredJob
from .exceptions import TSDBError
from .sync.utils import parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_SCRAPE_INTERVAL = 60.0  # seconds
CONFIG_CACHE_TTL = 3 * 60 * 60  # seconds
RATE_INTERVAL_FACTOR = 4

CONFIG_ENDPOINT = "/api/v1/status/config"
QUERY_ENDPOINT = "/api/v1/query"
LABEL_NAMES_ENDPOINT = "/api/v1/label/__name__/values"
DELETE_SERIES_ENDPOINT = "/api/v1/admin/tsdb/delete_series"

# Metric name prefix of the per-job series exported for batch jobs
JOB_SERIES_PREFIX = "batchjob"

_DURATION_RE = re.compile(
    r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$"
)
_DURATION_UNITS = (
    ("y", 365 * 24 * 3600),
    ("w", 7 * 24 * 3600),
    ("d", 24 * 3600),
    ("h", 3600),
    ("m", 60),
    ("s", 1),
)


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

def parse_duration(value: str) -> float:
    """Parse a Prometheus duration string into seconds.

    Examples:
        >>> parse_duration("1m30s")
        90.0
        >>> parse_duration("500ms")
        0.5

    Raises:
        ValueError: If ``value`` is not a valid duration
    """
    match = _DURATION_RE.match(value.strip()) if value else None
    if match is None or not any(match.groups()):
        raise ValueError(f"invalid duration {value!r}")
    seconds = 0.0
    for (_, factor), part in zip(_DURATION_UNITS, match.groups()[:-1]):
        if part:
            seconds += int(part) * factor
    if match.group(7):
        seconds += int(match.group(7)) / 1000
    return seconds


def format_duration(seconds: float) -> str:
    """Render seconds as a PromQL duration.

    Examples:
        >>> format_duration(5400)
        '1h30m'
        >>> format_duration(45)
        '45s'
        >>> format_duration(0)
        '0s'
    """
    millis = int(round(seconds * 1000))
    if millis <= 0:
        return "0s"

    parts = []
    whole, millis = divmod(millis, 1000)
    for unit, factor in _DURATION_UNITS[2:]:
        count, whole = divmod(whole, factor)
        if count:
            parts.append(f"{count}{unit}")
    if millis:
        parts.append(f"{millis}ms")
    return "".join(parts)


# ---------------------------------------------------------------------------
# Aggregate queries
# ---------------------------------------------------------------------------
#
# Placeholders: {jobs} (|-joined job ids), {rate_interval}, {max_duration},
# {scrape_interval} and {scrape_interval_ms}.

AVG_CPU_USAGE_QUERY = """
avg_over_time(
  avg by (jobid) (
    (
      rate(batchjob_slurm_job_cpu_user_seconds{jobid=~"{jobs}"}[{rate_interval}])
      +
      rate(batchjob_slurm_job_cpu_system_seconds{jobid=~"{jobs}"}[{rate_interval}])
    )
    /
    batchjob_slurm_job_cpus{jobid=~"{jobs}"}
  )[{max_duration}:]
) * 100"""

AVG_CPU_MEM_USAGE_QUERY = """
avg_over_time(
  avg by (jobid) (
    batchjob_slurm_job_memory_used_bytes{jobid=~"{jobs}"}
    /
    batchjob_slurm_job_memory_total_bytes{jobid=~"{jobs}"}
  )[{max_duration}:]
) * 100"""

TOTAL_CPU_ENERGY_USAGE_QUERY = """
sum_over_time(
  sum by (jobid) (
    batchjob_ipmi_dcmi_current_watts_total * {scrape_interval_ms} / 3.6e9
    * on (instance) group_right ()
    (
      rate(batchjob_slurm_job_cpu_user_seconds{jobid=~"{jobs}"}[{rate_interval}])
      +
      rate(batchjob_slurm_job_cpu_system_seconds{jobid=~"{jobs}"}[{rate_interval}])
    )
  / on (instance) group_left ()
    sum by (instance) (rate(batchjob_cpu_seconds_total{mode!~"idle|iowait|steal"}[{rate_interval}]))
  )[{max_duration}:{scrape_interval}]
)"""

TOTAL_CPU_EMISSIONS_QUERY = """
sum_over_time(
  sum by (jobid) (
    label_replace(
      batchjob_ipmi_dcmi_current_watts_total * {scrape_interval_ms} / 3.6e9
      * on (instance) group_right ()
      (
        rate(batchjob_slurm_job_cpu_user_seconds{jobid=~"{jobs}"}[{rate_interval}])
        +
        rate(batchjob_slurm_job_cpu_system_seconds{jobid=~"{jobs}"}[{rate_interval}])
      )
      / on (instance) group_left ()
      sum by (instance) (rate(batchjob_cpu_seconds_total{mode!~"idle|iowait|steal"}[{rate_interval}])),
      "common_label", "mock", "hostname", "(.*)"
    )
    * on (common_label) group_left ()
    label_replace(
      batchjob_emissions_gCo2_kWh{provider="rte"},
      "common_label", "mock", "hostname", "(.*)"
    )
  )[{max_duration}:{scrape_interval}]
)"""

AVG_GPU_USAGE_QUERY = """
avg_over_time(
  avg by (jobid) (
    DCGM_FI_DEV_GPU_UTIL
    * on (UUID) group_right ()
    label_replace(
      batchjob_slurm_job_gpu_index_flag{jobid=~"{jobs}"},
      "UUID", "$1", "uuid", "(.*)"
    )
  )[{max_duration}:{scrape_interval}]
)"""

AVG_GPU_MEM_USAGE_QUERY = """
avg_over_time(
  avg by (jobid) (
    DCGM_FI_DEV_MEM_COPY_UTIL
    * on (UUID) group_right ()
    label_replace(
      batchjob_slurm_job_gpu_index_flag{jobid=~"{jobs}"},
      "UUID", "$1", "uuid", "(.*)"
    )
  )[{max_duration}:{scrape_interval}]
)"""

TOTAL_GPU_ENERGY_USAGE_QUERY = """
sum_over_time(
  sum by (jobid) (
    DCGM_FI_DEV_POWER_USAGE * {scrape_interval_ms} / 3.6e9
    * on (UUID) group_right ()
    batchjob_slurm_job_gpu_index_flag{jobid=~"{jobs}"}
  )[{max_duration}:{scrape_interval}]
)"""

TOTAL_GPU_EMISSIONS_QUERY = """
sum_over_time(
  sum by (jobid) (
    label_replace(
      DCGM_FI_DEV_POWER_USAGE * {scrape_interval_ms} / 3.6e9
      * on (UUID) group_right ()
      batchjob_slurm_job_gpu_index_flag{jobid=~"{jobs}"},
      "common_label", "mock", "instance", "(.*)"
    )
    * on (common_label) group_left ()
    label_replace(
      batchjob_emissions_gCo2_kWh{provider="rte"},
      "common_label", "mock", "instance", "(.*)"
    )
  )[{max_duration}:{scrape_interval}]
)"""

AGG_METRIC_QUERIES = {
    "cpu_usage": AVG_CPU_USAGE_QUERY,
    "cpu_mem_usage": AVG_CPU_MEM_USAGE_QUERY,
    "cpu_energy_usage": TOTAL_CPU_ENERGY_USAGE_QUERY,
    "cpu_emissions": TOTAL_CPU_EMISSIONS_QUERY,
    "gpu_usage": AVG_GPU_USAGE_QUERY,
    "gpu_mem_usage": AVG_GPU_MEM_USAGE_QUERY,
    "gpu_energy_usage": TOTAL_GPU_ENERGY_USAGE_QUERY,
    "gpu_emissions": TOTAL_GPU_EMISSIONS_QUERY,
}

# BatchJob attribute filled from each query's result
METRIC_FIELDS = {
    "cpu_usage": "ave_cpu_usage",
    "cpu_mem_usage": "ave_cpu_mem_usage",
    "cpu_energy_usage": "total_cpu_energy_usage_kwh",
    "cpu_emissions": "total_cpu_emissions_gms",
    "gpu_usage": "ave_gpu_usage",
    "gpu_mem_usage": "ave_gpu_mem_usage",
    "gpu_energy_usage": "total_gpu_energy_usage_kwh",
    "gpu_emissions": "total_gpu_emissions_gms",
}


def render_query(template: str, **values) -> str:
    """Substitute ``{name}`` placeholders in a query template.

    PromQL uses braces for label matchers, so str.format() cannot be used;
    only the given placeholder names are replaced.
    """
    query = template.lstrip("\n")
    for name, value in values.items():
        query = query.replace("{" + name + "}", str(value))
    return query


# ---------------------------------------------------------------------------
# TSDB client
# ---------------------------------------------------------------------------

class TSDBClient:
    """Minimal client for the Prometheus HTTP API.

    An empty URL yields an unavailable client that never touches the network.
    """

    def __init__(
        self,
        url: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        skip_tls_verify: bool = False,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            url: Base URL of the backend, e.g. ``http://prometheus:9090``
            timeout: Request timeout in seconds
            skip_tls_verify: Disable TLS certificate verification
            transport: Custom httpx transport (tests)
        """
        self.url = url.rstrip("/") if url else ""
        self._timeout = timeout
        self._verify = not skip_tls_verify
        self._transport = transport
        self._client: httpx.Client | None = None

        self._scrape_interval = DEFAULT_SCRAPE_INTERVAL
        self._last_config_update: float | None = None

    def __repr__(self):
        return f"TSDBClient(url={self.url!r}, available={self.available})"

    @property
    def available(self) -> bool:
        return bool(self.url)

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.url,
                timeout=self._timeout,
                verify=self._verify,
                transport=self._transport,
            )
        return self._client

    def close(self):
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _data(self, response: httpx.Response) -> dict:
        """Validate a response envelope and return its ``data`` member."""
        try:
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TSDBError(f"{response.request.url}: {e}") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise TSDBError(f"{response.request.url}: response returned no data")
        return data

    def config(self) -> dict:
        """Fetch the backend configuration and return its ``global`` section.

        Raises:
            TSDBError: If the backend is unreachable or the config is unusable
        """
        if not self.available:
            raise TSDBError("TSDB URL is not configured")
        try:
            response = self.client.get(CONFIG_ENDPOINT)
        except httpx.HTTPError as e:
            raise TSDBError(f"Failed to fetch TSDB config: {e}") from e

        blob = self._data(response).get("yaml") or ""
        try:
            full_config = yaml.safe_load(blob) or {}
        except yaml.YAMLError as e:
            raise TSDBError(f"Failed to parse TSDB config: {e}") from e
        if not isinstance(full_config, dict):
            raise TSDBError("TSDB config is not a mapping")
        global_config = full_config.get("global") or {}
        if not isinstance(global_config, dict):
            raise TSDBError("TSDB config global section is not a mapping")
        return global_config

    def scrape_interval(self) -> float:
        """Backend scrape interval in seconds.

        Refreshed at most every three hours.  Any failure, or a config
        without ``scrape_interval``, falls back to one minute.
        """
        now = time.monotonic()
        if self._last_config_update is not None and now - self._last_config_update < CONFIG_CACHE_TTL:
            return self._scrape_interval

        try:
            global_config = self.config()
        except TSDBError as e:
            logger.warning(f"Using default scrape interval: {e}")
            self._scrape_interval = DEFAULT_SCRAPE_INTERVAL
            return self._scrape_interval
        self._last_config_update = now

        try:
            self._scrape_interval = parse_duration(str(global_config["scrape_interval"]))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"No usable scrape_interval in TSDB config ({e}); using default")
            self._scrape_interval = DEFAULT_SCRAPE_INTERVAL
        return self._scrape_interval

    def rate_interval(self) -> float:
        """Window for rate() in seconds: four scrape intervals."""
        return RATE_INTERVAL_FACTOR * self.scrape_interval()

    def query(self, promql: str, at: datetime) -> dict[int, float]:
        """Run an instant query and return ``{jobid: value}``.

        Result rows whose ``jobid`` label is not an integer or whose value is
        not a float are dropped.

        Raises:
            TSDBError: If the request fails or the response has no data
        """
        if not self.available:
            raise TSDBError("TSDB URL is not configured")
        if at.tzinfo is None:
            at = at.astimezone()
        form = {
            "query": promql,
            "time": at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        try:
            response = self.client.post(QUERY_ENDPOINT, data=form)
        except httpx.HTTPError as e:
            raise TSDBError(f"TSDB query failed: {e}") from e

        values = {}
        for row in self._data(response).get("result") or []:
            try:
                jobid = int(row["metric"]["jobid"])
                value = float(row["value"][1])
            except (KeyError, IndexError, TypeError, ValueError):
                continue
            values[jobid] = value
        return values

    def series_names(self, prefix: str = "") -> list[str]:
        """Return the metric names known to the backend that start with ``prefix``.

        Raises:
            TSDBError: If the request fails or the response is malformed
        """
        if not self.available:
            raise TSDBError("TSDB URL is not configured")
        try:
            response = self.client.get(LABEL_NAMES_ENDPOINT)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TSDBError(f"Failed to list TSDB series names: {e}") from e

        names = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(names, list):
            raise TSDBError(f"{response.request.url}: response returned no data")
        return [name for name in names if isinstance(name, str) and name.startswith(prefix)]

    def delete_series(self, matchers: list[str]) -> None:
        """Delete every series selected by ``matchers`` through the admin API.

        The backend must run with its admin API enabled.

        Raises:
            TSDBError: If the request fails
        """
        if not self.available:
            raise TSDBError("TSDB URL is not configured")
        if not matchers:
            return
        try:
            response = self.client.post(DELETE_SERIES_ENDPOINT, data={"match[]": matchers})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TSDBError(f"Failed to delete TSDB series: {e}") from e


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

class MetricsEnricher:
    """Fill the aggregate metric fields of jobs from the metrics backend."""

    def __init__(self, client: TSDBClient):
        self.client = client

    @property
    def available(self) -> bool:
        return self.client.available

    def fetch_agg_metrics(
        self,
        query_time: datetime,
        max_duration: float,
        jobs_regex: str,
    ) -> tuple[dict[str, dict[int, float]], list[Exception]]:
        """Run all aggregate queries concurrently.

        Args:
            query_time: Evaluation time of the instant queries
            max_duration: Lookback window in seconds
            jobs_regex: ``|``-joined job ids

        Returns:
            ``(metrics, errors)``: results keyed by query name, and the
            errors of the queries that failed (absent from ``metrics``)
        """
        metrics: dict[str, dict[int, float]] = {}
        errors: list[Exception] = []

        scrape_interval = self.client.scrape_interval()
        rate_interval = RATE_INTERVAL_FACTOR * scrape_interval
        if max_duration < rate_interval:
            logger.debug(
                f"Lookback {format_duration(max_duration)} shorter than rate interval "
                f"{format_duration(rate_interval)}; skipping metrics"
            )
            return metrics, errors

        placeholders = {
            "jobs": jobs_regex,
            "rate_interval": format_duration(rate_interval),
            "max_duration": format_duration(max_duration),
            "scrape_interval": format_duration(scrape_interval),
            "scrape_interval_ms": int(scrape_interval * 1000),
        }
        lock = threading.Lock()

        def fetch(name, template):
            try:
                result = self.client.query(render_query(template, **placeholders), query_time)
            except TSDBError as e:
                logger.warning(f"Failed to fetch {name} metrics from TSDB: {e}")
                with lock:
                    errors.append(e)
                return
            with lock:
                metrics[name] = result

        with ThreadPoolExecutor(max_workers=len(AGG_METRIC_QUERIES), thread_name_prefix="tsdb-query") as executor:
            futures = [executor.submit(fetch, name, q) for name, q in AGG_METRIC_QUERIES.items()]
            for future in futures:
                future.result()

        return metrics, errors

    def enrich(self, jobs: list[BatchJob], query_time: datetime | None = None) -> tuple[list[BatchJob], list[Exception]]:
        """Merge aggregate metrics into ``jobs`` in place.

        A field is only set when its query returned a value for the job, so
        categories without data leave the field at 0.0.  Backend failures are
        returned, never raised.

        Args:
            jobs: Jobs to enrich
            query_time: Evaluation time, defaults to now

        Returns:
            ``(jobs, errors)``; ``jobs`` is the same list that was passed in
        """
        if not self.available or not jobs:
            return jobs, []

        query_time = query_time or datetime.now(timezone.utc)
        if query_time.tzinfo is None:
            query_time = query_time.astimezone()

        earliest = query_time
        for job in jobs:
            started = parse_datetime(job.start)
            if started is not None and started < earliest:
                earliest = started
        max_duration = (query_time - earliest).total_seconds() // 60 * 60

        jobs_regex = "|".join(job.jobid for job in jobs if job.jobid)
        metrics, errors = self.fetch_agg_metrics(query_time, max_duration, jobs_regex)

        for job in jobs:
            try:
                jobid = int(job.jobid)
            except ValueError:
                continue
            for name, values in metrics.items():
                if jobid in values:
                    setattr(job, METRIC_FIELDS[name], values[jobid])

        if errors:
            logger.warning(f"{len(errors)} of {len(AGG_METRIC_QUERIES)} metric queries failed")
        return jobs, errors


# ---------------------------------------------------------------------------
# Cleanup of ignored jobs
# ---------------------------------------------------------------------------

class SeriesCleaner:
    """Delete the per-job series of jobs dropped by the duration cutoff.

    The names of the per-job metrics are looked up once, on first use, and
    reused for the lifetime of the cleaner.
    """

    def __init__(self, client: TSDBClient, prefix: str = JOB_SERIES_PREFIX):
        self.client = client
        self.prefix = prefix
        self._series: list[str] | None = None

    def matchers(self, jobs: list[IgnoredJob]) -> list[str]:
        if self._series is None:
            self._series = self.client.series_names(self.prefix)
            logger.debug(f"Found {len(self._series)} per-job series in TSDB")
        return [
            f'{name}{{jobid="{job.jobid}",jobuser="{job.usr}",jobaccount="{job.account}"}}'
            for job in jobs
            for name in self._series
        ]

    def delete_jobs(self, jobs: list[IgnoredJob]) -> int:
        """Delete the series of ``jobs``.

        Returns:
            Number of series matchers sent to the backend

        Raises:
            TSDBError: If the series names cannot be listed or the delete fails
        """
        if not jobs:
            return 0
        matchers = self.matchers(jobs)
        self.client.delete_series(matchers)
        logger.debug(f"Deleted TSDB series of {len(jobs)} ignored jobs")
        return len(matchers)
