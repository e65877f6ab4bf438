"""Job record and its SQLAlchemy table.

``JOB_COLUMNS`` is the single declaration of stored columns.  Both the
``jobs`` table definition and the insert path are generated from it, so the
schema order and the insert order cannot drift apart.
"""

from dataclasses import dataclass, fields
from operator import attrgetter
from typing import NamedTuple

from sqlalchemy import Column, Index, Integer, MetaData, Table, Text
from sqlalchemy.orm import declarative_base

JOBS_TABLE = "jobs"


@dataclass
class BatchJob:
    """One completed batch job as reported by the scheduler accounting tool.

    Timestamps are kept verbatim in the scheduler's textual format.  The
    eight metric fields stay at 0.0 until the metrics enricher fills them.
    """

    jobid: str = ""
    uuid: str = ""
    cluster: str = ""
    partition: str = ""
    qos: str = ""
    account: str = ""
    grp: str = ""
    gid: str = ""
    usr: str = ""
    uid: str = ""
    submit: str = ""
    start: str = ""
    end: str = ""
    elapsed: str = ""
    elapsedraw: int = 0
    exitcode: str = ""
    state: str = ""
    nnodes: str = ""
    ncpus: str = ""
    nodelist: str = ""
    nodelistexp: str = ""
    jobname: str = ""
    workdir: str = ""

    # Aggregate metrics
    ave_cpu_usage: float = 0.0
    ave_cpu_mem_usage: float = 0.0
    total_cpu_energy_usage_kwh: float = 0.0
    total_cpu_emissions_gms: float = 0.0
    ave_gpu_usage: float = 0.0
    ave_gpu_mem_usage: float = 0.0
    total_gpu_energy_usage_kwh: float = 0.0
    total_gpu_emissions_gms: float = 0.0

    def is_empty(self) -> bool:
        """True when every attribute is at its zero value."""
        return self == BatchJob()

    def to_row(self) -> dict:
        """Text values keyed by column name, in ``JOB_COLUMNS`` order."""
        return {name: extract(self) for name, extract in JOB_COLUMNS}

    @classmethod
    def from_row(cls, row) -> "BatchJob":
        """Rebuild a job from a stored row mapping (inverse of ``to_row``)."""
        values = {}
        for f in fields(cls):
            raw = row[f.name]
            if f.type in (int, "int"):
                values[f.name] = int(raw or 0)
            elif f.type in (float, "float"):
                values[f.name] = float(raw or 0.0)
            else:
                values[f.name] = raw or ""
        return cls(**values)


class IgnoredJob(NamedTuple):
    """A job dropped by the duration cutoff; only its series labels are kept."""

    jobid: str
    usr: str
    account: str


def _text(name):
    getter = attrgetter(name)
    return lambda job: str(getter(job))


def _number(name):
    getter = attrgetter(name)
    return lambda job: repr(getter(job))


# (column name, extractor) pairs: the schema and the insert statement are
# both built from this tuple.
JOB_COLUMNS = (
    ("jobid", _text("jobid")),
    ("uuid", _text("uuid")),
    ("cluster", _text("cluster")),
    ("partition", _text("partition")),
    ("qos", _text("qos")),
    ("account", _text("account")),
    ("grp", _text("grp")),
    ("gid", _text("gid")),
    ("usr", _text("usr")),
    ("uid", _text("uid")),
    ("submit", _text("submit")),
    ("start", _text("start")),
    ("end", _text("end")),
    ("elapsed", _text("elapsed")),
    ("elapsedraw", _text("elapsedraw")),
    ("exitcode", _text("exitcode")),
    ("state", _text("state")),
    ("nnodes", _text("nnodes")),
    ("ncpus", _text("ncpus")),
    ("nodelist", _text("nodelist")),
    ("nodelistexp", _text("nodelistexp")),
    ("jobname", _text("jobname")),
    ("workdir", _text("workdir")),
    ("ave_cpu_usage", _number("ave_cpu_usage")),
    ("ave_cpu_mem_usage", _number("ave_cpu_mem_usage")),
    ("total_cpu_energy_usage_kwh", _number("total_cpu_energy_usage_kwh")),
    ("total_cpu_emissions_gms", _number("total_cpu_emissions_gms")),
    ("ave_gpu_usage", _number("ave_gpu_usage")),
    ("ave_gpu_mem_usage", _number("ave_gpu_mem_usage")),
    ("total_gpu_energy_usage_kwh", _number("total_gpu_energy_usage_kwh")),
    ("total_gpu_emissions_gms", _number("total_gpu_emissions_gms")),
)

COLUMN_NAMES = tuple(name for name, _ in JOB_COLUMNS)

metadata = MetaData()

jobs_table = Table(
    JOBS_TABLE,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    *(Column(name, Text) for name in COLUMN_NAMES),
    Index("ix_jobs_usr_account_start", "usr", "account", "start"),
    Index("ix_jobs_usr_uuid", "usr", "uuid"),
    sqlite_autoincrement=True,
)

Base = declarative_base(metadata=metadata)


class Job(Base):
    """ORM view of a stored row, used for read-back queries."""

    __table__ = jobs_table

    def __repr__(self):
        return f"<Job(id={self.id}, jobid='{self.jobid}', usr='{self.usr}', state='{self.state}')>"

    def to_batch_job(self) -> BatchJob:
        return BatchJob.from_row({name: getattr(self, name) for name in COLUMN_NAMES})
