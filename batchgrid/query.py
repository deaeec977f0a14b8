"""
Finders and status views over the job table.

All finders return sorted job ids and accept an optional ``ids`` argument
restricting the search. They read the in-memory table; call
``batchgrid.controller.sync_registry`` first to see the latest worker
markers.
"""

from collections import Counter
from typing import Any, Iterable, Optional

from batchgrid.context import resolve_registry
from batchgrid.registry import Registry
from batchgrid.schemas import JobRecord, JobStatus
from batchgrid.store import Predicate

Ids = Optional[Iterable[int]]


def _matches(params: dict[str, Any], wanted: Optional[dict[str, Any]]) -> bool:
    if not wanted:
        return True
    return all(key in params and params[key] == value for key, value in wanted.items())


def find_jobs(
    reg: Optional[Registry] = None,
    predicate: Optional[Predicate] = None,
    ids: Ids = None,
    **pars: Any,
) -> list[int]:
    """
    Find jobs by predicate and/or parameter values.

    Keyword arguments match against the union of a job's problem, algorithm
    and batch-map parameters:

        find_jobs(reg, ratio=0.5)
        find_jobs(reg, lambda r: r.repl == 1)
    """
    reg = resolve_registry(reg)

    def accept(record: JobRecord) -> bool:
        if predicate is not None and not predicate(record):
            return False
        return _matches({**record.pars, **record.prob_pars, **record.algo_pars}, pars)

    return reg.store.query(accept, ids)


def find_experiments(
    reg: Optional[Registry] = None,
    ids: Ids = None,
    problem: Optional[str] = None,
    algorithm: Optional[str] = None,
    prob_pars: Optional[dict[str, Any]] = None,
    algo_pars: Optional[dict[str, Any]] = None,
    repls: Optional[Iterable[int]] = None,
) -> list[int]:
    """Find experiment jobs by problem, algorithm, parameter values and replication."""
    reg = resolve_registry(reg)
    repl_set = set(repls) if repls is not None else None

    def accept(record: JobRecord) -> bool:
        return (
            record.is_experiment
            and (problem is None or record.problem == problem)
            and (algorithm is None or record.algorithm == algorithm)
            and _matches(record.prob_pars, prob_pars)
            and _matches(record.algo_pars, algo_pars)
            and (repl_set is None or record.repl in repl_set)
        )

    return reg.store.query(accept, ids)


def _find_status(reg: Optional[Registry], ids: Ids, *statuses: JobStatus) -> list[int]:
    reg = resolve_registry(reg)
    return reg.store.query(lambda r: r.status in statuses, ids)


def find_defined(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    return _find_status(reg, ids, JobStatus.DEFINED)


def find_submitted(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    """Jobs handed to a backend at some point (submitted, started or finished)."""
    return _find_status(
        reg, ids, JobStatus.SUBMITTED, JobStatus.STARTED, JobStatus.DONE, JobStatus.ERROR
    )


def find_not_submitted(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    """Jobs eligible for submission: defined or expired."""
    return _find_status(reg, ids, JobStatus.DEFINED, JobStatus.EXPIRED)


def find_started(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    """Jobs a worker picked up (started or finished)."""
    return _find_status(reg, ids, JobStatus.STARTED, JobStatus.DONE, JobStatus.ERROR)


def find_running(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    return _find_status(reg, ids, JobStatus.STARTED)


def find_pending(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    """Jobs submitted but not finished yet."""
    return _find_status(reg, ids, JobStatus.SUBMITTED, JobStatus.STARTED)


def find_done(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    return _find_status(reg, ids, JobStatus.DONE)


def find_errors(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    return _find_status(reg, ids, JobStatus.ERROR)


def find_not_done(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    reg = resolve_registry(reg)
    return reg.store.query(lambda r: r.status != JobStatus.DONE, ids)


def find_expired(reg: Optional[Registry] = None, ids: Ids = None) -> list[int]:
    return _find_status(reg, ids, JobStatus.EXPIRED)


def find_tagged(reg: Optional[Registry] = None, tags: Iterable[str] = (), ids: Ids = None) -> list[int]:
    """Jobs carrying at least one of tags."""
    reg = resolve_registry(reg)
    wanted = set(tags)
    return reg.store.query(lambda r: bool(wanted & set(r.tags)), ids)


def get_status(reg: Optional[Registry] = None, ids: Ids = None) -> dict[str, int]:
    """
    Count jobs per status.

    Returns:
        Mapping with one entry per JobStatus value plus ``total``
    """
    reg = resolve_registry(reg)
    counts = Counter(r.status.value for r in reg.store.records(ids))
    summary = {status.value: counts.get(status.value, 0) for status in JobStatus}
    summary["total"] = sum(counts.values())
    return summary


def get_job_table(reg: Optional[Registry] = None, ids: Ids = None) -> list[dict[str, Any]]:
    """One row per job: identifiers, status, timestamps, error and tags."""
    reg = resolve_registry(reg)
    rows = []
    for record in reg.store.records(ids):
        rows.append({
            "job_id": record.job_id,
            "status": record.status.value,
            "problem": record.problem,
            "algorithm": record.algorithm,
            "function": record.function,
            "repl": record.repl,
            "seed": record.seed,
            "submitted_at": record.submitted_at,
            "started_at": record.started_at,
            "done_at": record.done_at,
            "error": record.error,
            "tags": list(record.tags),
            "job_hash": record.job_hash,
            "batch_id": record.batch_id,
        })
    return rows


def get_job_pars(reg: Optional[Registry] = None, ids: Ids = None) -> list[dict[str, Any]]:
    """One row per job with its parameters flattened into columns."""
    reg = resolve_registry(reg)
    rows = []
    for record in reg.store.records(ids):
        row: dict[str, Any] = {"job_id": record.job_id}
        if record.is_experiment:
            row.update(problem=record.problem, algorithm=record.algorithm, repl=record.repl)
            row.update(record.prob_pars)
            row.update(record.algo_pars)
        else:
            row.update(record.pars)
        rows.append(row)
    return rows


def get_error_messages(reg: Optional[Registry] = None, ids: Ids = None) -> dict[int, str]:
    """Error message per failed job."""
    reg = resolve_registry(reg)
    return {
        r.job_id: r.error or ""
        for r in reg.store.records(ids)
        if r.status == JobStatus.ERROR
    }


def get_traceback(reg: Optional[Registry], job_id: int) -> Optional[str]:
    """Traceback recorded by the worker for a failed job, if any."""
    reg = resolve_registry(reg)
    record = reg.store.get(job_id)
    marker = reg.markers.read(job_id)
    if marker is None or marker.job_hash != record.job_hash:
        return None
    return marker.traceback
