"""
JobRecord schema - one row of the job table.

A JobRecord is created by the experiment engine (or batch_map) in status
``defined`` and only moves forward through the lifecycle:

    defined -> submitted -> started -> {done | error | expired}

``expired`` is assigned by the controller when a submission vanished;
a late ``done``/``error`` marker still overrides it. Going back to
``defined`` requires an explicit reset.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from batchgrid.utils import utcnow


class JobStatus(str, Enum):
    """Lifecycle status of a job."""
    DEFINED = "defined"
    SUBMITTED = "submitted"
    STARTED = "started"
    EXPIRED = "expired"
    DONE = "done"
    ERROR = "error"

    @property
    def rank(self) -> int:
        """Position in the lifecycle; a marker never lowers it."""
        return _RANKS[self]

    @property
    def is_final(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)

    @property
    def is_pending(self) -> bool:
        """True while the job is handed to a backend but not finished."""
        return self in (JobStatus.SUBMITTED, JobStatus.STARTED)


_RANKS = {
    JobStatus.DEFINED: 0,
    JobStatus.SUBMITTED: 1,
    JobStatus.STARTED: 2,
    JobStatus.EXPIRED: 3,
    JobStatus.DONE: 4,
    JobStatus.ERROR: 4,
}


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class JobRecord:
    """
    Metadata and execution state of a single job.

    Attributes:
        job_id: Unique, immutable job identifier
        problem: Problem name (None for batch-map jobs)
        algorithm: Algorithm name (None for batch-map jobs)
        function: Batch-map function name (None for experiments)
        prob_pars: Problem parameters for this job
        algo_pars: Algorithm parameters for this job
        pars: Arguments of a batch-map job
        repl: Replication index, starting at 1 (None for batch-map jobs)
        seed: Seed for the algorithm / batch-map function
        instance_seed: Seed for the problem instance function
        status: Current lifecycle status
        defined_at: When the job was created
        submitted_at: When the job was last handed to a backend
        started_at: When a worker started the job
        done_at: When a worker finished the job (success or error)
        updated_at: Timestamp of the last applied status change
        error: Error message for jobs in status ``error``
        tags: Free-form tags for grouping
        job_hash: Identifier of the job collection the job was submitted in
        batch_id: Backend identifier of that submission
    """
    job_id: int
    seed: int
    problem: Optional[str] = None
    algorithm: Optional[str] = None
    function: Optional[str] = None
    prob_pars: dict[str, Any] = field(default_factory=dict)
    algo_pars: dict[str, Any] = field(default_factory=dict)
    pars: dict[str, Any] = field(default_factory=dict)
    repl: Optional[int] = None
    instance_seed: Optional[int] = None
    status: JobStatus = JobStatus.DEFINED
    defined_at: datetime = field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    done_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    job_hash: Optional[str] = None
    batch_id: Optional[str] = None

    @property
    def is_experiment(self) -> bool:
        return self.problem is not None

    def definition_key(self) -> tuple:
        """Key identifying the experiment a job was defined from."""
        return (
            self.problem,
            self.algorithm,
            _freeze(self.prob_pars),
            _freeze(self.algo_pars),
            self.repl,
        )

    def reset(self) -> None:
        """Return the job to ``defined``, dropping all execution state."""
        self.status = JobStatus.DEFINED
        self.submitted_at = None
        self.started_at = None
        self.done_at = None
        self.error = None
        self.job_hash = None
        self.batch_id = None
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "job_id": self.job_id,
            "seed": self.seed,
            "problem": self.problem,
            "algorithm": self.algorithm,
            "function": self.function,
            "prob_pars": self.prob_pars,
            "algo_pars": self.algo_pars,
            "pars": self.pars,
            "repl": self.repl,
            "instance_seed": self.instance_seed,
            "status": self.status.value,
            "defined_at": self.defined_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "done_at": self.done_at.isoformat() if self.done_at else None,
            "updated_at": self.updated_at.isoformat(),
            "error": self.error,
            "tags": sorted(self.tags),
            "job_hash": self.job_hash,
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobRecord":
        """Deserialize from dictionary."""
        return cls(
            job_id=int(data["job_id"]),
            seed=int(data["seed"]),
            problem=data.get("problem"),
            algorithm=data.get("algorithm"),
            function=data.get("function"),
            prob_pars=data.get("prob_pars") or {},
            algo_pars=data.get("algo_pars") or {},
            pars=data.get("pars") or {},
            repl=data.get("repl"),
            instance_seed=data.get("instance_seed"),
            status=JobStatus(data.get("status", "defined")),
            defined_at=datetime.fromisoformat(data["defined_at"]),
            submitted_at=_dt(data.get("submitted_at")),
            started_at=_dt(data.get("started_at")),
            done_at=_dt(data.get("done_at")),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            error=data.get("error"),
            tags=list(data.get("tags") or []),
            job_hash=data.get("job_hash"),
            batch_id=data.get("batch_id"),
        )


def _freeze(value: Any) -> Any:
    """Turn nested dicts/lists into hashable tuples for comparisons."""
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted(_freeze(v) for v in value))
    return value
