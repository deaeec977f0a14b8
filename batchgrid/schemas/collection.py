"""
JobCollection schema - the self-contained unit handed to a worker.

A JobCollection carries everything a worker needs without consulting the
registry: resolved definitions, per-job parameters and seeds, the import
list, the working directory and the storage root where results and markers
go. It is written once by the builder and read once by the driver.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from batchgrid.utils import utcnow

from .definitions import AlgorithmDef, FunctionDef, ProblemDef
from .job_record import JobRecord


@dataclass(frozen=True)
class CollectionJob:
    """
    One job inside a collection; also the job metadata passed to user functions.

    Attributes:
        job_id: The job identifier
        seed: Seed for the algorithm / batch-map function
        instance_seed: Seed for the problem instance function
        repl: Replication index
        problem: Problem name
        algorithm: Algorithm name
        function: Batch-map function name
        prob_pars: Problem parameters
        algo_pars: Algorithm parameters
        pars: Batch-map arguments
        tags: Job tags at collection time
        job_hash: Collection the job belongs to
    """
    job_id: int
    seed: int
    instance_seed: Optional[int] = None
    repl: Optional[int] = None
    problem: Optional[str] = None
    algorithm: Optional[str] = None
    function: Optional[str] = None
    prob_pars: dict[str, Any] = field(default_factory=dict)
    algo_pars: dict[str, Any] = field(default_factory=dict)
    pars: dict[str, Any] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    job_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: JobRecord, job_hash: str) -> "CollectionJob":
        return cls(
            job_id=record.job_id,
            seed=record.seed,
            instance_seed=record.instance_seed,
            repl=record.repl,
            problem=record.problem,
            algorithm=record.algorithm,
            function=record.function,
            prob_pars=dict(record.prob_pars),
            algo_pars=dict(record.algo_pars),
            pars=dict(record.pars),
            tags=tuple(sorted(record.tags)),
            job_hash=job_hash,
        )


@dataclass(frozen=True)
class JobCollection:
    """
    An immutable bundle of jobs plus their resolved definitions.

    Attributes:
        job_hash: Unique collection identifier (also the file name)
        root: Registry storage root the worker writes results and markers to
        jobs: Jobs in execution order
        problems: Problem definitions referenced by the jobs
        algorithms: Algorithm definitions referenced by the jobs
        functions: Batch-map functions referenced by the jobs
        packages: Modules the worker imports before executing
        work_dir: Working directory for the worker (None keeps the current one)
        serializer: Name of the serializer for data and results
        created_at: When the collection was built
    """
    job_hash: str
    root: str
    jobs: tuple[CollectionJob, ...]
    problems: dict[str, ProblemDef] = field(default_factory=dict)
    algorithms: dict[str, AlgorithmDef] = field(default_factory=dict)
    functions: dict[str, FunctionDef] = field(default_factory=dict)
    packages: tuple[str, ...] = ()
    work_dir: Optional[str] = None
    serializer: str = "pickle"
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        ids = [j.job_id for j in self.jobs]
        if not ids:
            raise ValueError("A job collection must contain at least one job")
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate job ids in collection {self.job_hash}")

    @property
    def job_ids(self) -> list[int]:
        return [j.job_id for j in self.jobs]

    def __len__(self) -> int:
        return len(self.jobs)
