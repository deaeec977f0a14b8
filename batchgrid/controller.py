"""
Controller - submit, synchronize, wait for and kill jobs.

The controller is the only writer of the job table. One cycle looks like:

    submit_jobs(reg, backend)     build collections, hand them to the backend,
                                  mark jobs submitted on success only
    sync_registry(reg, backend)   merge worker markers, expire jobs of
                                  vanished submissions, run post_sync hook
    reduce_results_table(reg)     read what finished

Backend hooks run at fixed points: ``pre_submit`` right before every
``backend.submit`` call and ``post_sync`` at the end of every sync.

Every function accepts ``reg=None`` and then uses the ambient default
registry (see batchgrid.context).
"""

import importlib
import logging
import time
import traceback
from pathlib import Path
from typing import Any, Iterable, Optional

from batchgrid.backends.base import ClusterBackend, output_path
from batchgrid.builder import assemble_collection, build_collections
from batchgrid.context import resolve_registry
from batchgrid.driver import execute_job
from batchgrid.errors import (
    BatchgridError,
    InvalidTransitionError,
    JobExecutionError,
    SubmissionRejectedError,
    VanishedSubmissionError,
)
from batchgrid.registry import Registry
from batchgrid.schemas import JobCollection, JobStatus
from batchgrid.utils import retry_with_backoff, utcnow

logger = logging.getLogger(__name__)


def _pending_batches(reg: Registry, ids: Optional[Iterable[int]] = None) -> dict[str, list[int]]:
    """Group submitted/started jobs by the submission they belong to."""
    batches: dict[str, list[int]] = {}
    for record in reg.store.records(ids):
        if record.status.is_pending and record.batch_id is not None:
            batches.setdefault(record.batch_id, []).append(record.job_id)
    return batches


def _check_batch(reg: Registry, batch_id: str, job_ids: list[int]) -> None:
    """
    Verify that a submission the backend no longer runs left no unfinished jobs.

    Markers are merged once more first, so jobs that finished right before
    the worker exited are not lost.

    Raises:
        VanishedSubmissionError: If some of job_ids are still submitted/started
    """
    reg.store.sync()
    unfinished = [j for j in job_ids if reg.store.get(j).status.is_pending]
    if unfinished:
        raise VanishedSubmissionError(batch_id, unfinished)


def _expire_vanished(
    reg: Registry,
    backend: ClusterBackend,
    ids: Optional[Iterable[int]] = None,
) -> tuple[list[int], list[int]]:
    """
    Ask the backend about every pending submission.

    Returns:
        (ids of jobs expired, ids of jobs the backend still queues or runs)
    """
    expired: list[int] = []
    active: list[int] = []
    for batch_id, job_ids in sorted(_pending_batches(reg, ids).items()):
        status = backend.query_status(batch_id)
        if status.is_active:
            active.extend(job_ids)
            continue
        try:
            _check_batch(reg, batch_id, job_ids)
        except VanishedSubmissionError as e:
            logger.warning(f"{e} (backend reports '{status.value}'); marking them expired",
                           extra={"batch_id": batch_id})
            now = utcnow()
            for job_id in e.job_ids:
                reg.store.update_status(job_id, JobStatus.EXPIRED, now)
            expired.extend(e.job_ids)
    return sorted(expired), sorted(active)


def sync_registry(
    reg: Optional[Registry] = None,
    backend: Optional[ClusterBackend] = None,
) -> list[int]:
    """
    Bring the job table up to date.

    Merges worker markers and, if a backend is given, expires jobs of
    submissions the backend no longer knows, then runs its post_sync hook.
    Safe to call at any time and any number of times.

    Returns:
        Ids of jobs whose record changed
    """
    reg = resolve_registry(reg)
    changed = set(reg.store.sync())
    if backend is not None:
        expired, _ = _expire_vanished(reg, backend)
        changed.update(expired)
    reg.store.save()
    if changed:
        logger.info(f"Sync updated {len(changed)} job(s)")
    if backend is not None:
        backend.run_post_sync(reg)
    return sorted(changed)


def submit_jobs(
    reg: Optional[Registry] = None,
    backend: Optional[ClusterBackend] = None,
    ids: Optional[Iterable[int]] = None,
    chunk_size: Optional[int] = None,
    chunks: Optional[Iterable[Iterable[int]]] = None,
    resources: Optional[dict[str, Any]] = None,
    attempts: int = 1,
    backoff_seconds: float = 5.0,
) -> list[int]:
    """
    Submit jobs to a backend.

    Defined and expired jobs are submitted. Submitted or started jobs are
    first reconciled with the backend: they are skipped while it still
    queues or runs them, otherwise expired and submitted again.

    Args:
        reg: Registry (default: ambient registry)
        backend: Backend to submit to
        ids: Jobs to submit (default: all defined and expired jobs)
        chunk_size: Jobs per collection (default: 1)
        chunks: Explicit grouping of job ids into collections (overrides ids)
        resources: Backend-specific resource requests
        attempts: Submission attempts per collection
        backoff_seconds: Initial wait between attempts

    Returns:
        Ids of the jobs submitted

    Raises:
        InvalidTransitionError: If a job is done or failed (reset it first)
        MissingDependencyError: If a definition a job needs was removed
        SubmissionRejectedError: If the backend rejected a collection on the last
            attempt; its jobs keep their previous status, earlier collections
            stay submitted
    """
    reg = resolve_registry(reg)
    if backend is None:
        raise ValueError("submit_jobs needs a backend")
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    reg.store.sync()
    if chunks is not None:
        chunks = [sorted(set(chunk)) for chunk in chunks]
        ids = [job_id for chunk in chunks for job_id in chunk]
    elif ids is None:
        ids = reg.store.query(lambda r: r.status in (JobStatus.DEFINED, JobStatus.EXPIRED))

    records = reg.store.records(ids)
    final = [r.job_id for r in records if r.status.is_final]
    if final:
        raise InvalidTransitionError(
            f"Jobs already finished, reset them before resubmitting: {final}"
        )

    if any(r.status.is_pending for r in records):
        _, active = _expire_vanished(reg, backend, [r.job_id for r in records])
        if active:
            logger.info(f"Skipping {len(active)} job(s) still queued or running")

    eligible = set(reg.store.query(
        lambda r: r.status in (JobStatus.DEFINED, JobStatus.EXPIRED),
        [r.job_id for r in records],
    ))
    if not eligible:
        logger.info("Nothing to submit")
        reg.store.save()
        return []

    if chunks is not None:
        chunks = [[j for j in chunk if j in eligible] for chunk in chunks]
        collections = build_collections(reg, chunks=[c for c in chunks if c])
    else:
        collections = build_collections(reg, sorted(eligible), chunk_size=chunk_size or 1)

    submitted: list[int] = []
    for collection in collections:
        def attempt(collection: JobCollection = collection) -> str:
            backend.run_pre_submit(reg, collection)
            return backend.submit(reg, collection, resources)

        try:
            batch_id = retry_with_backoff(
                attempt,
                max_attempts=attempts,
                backoff_seconds=backoff_seconds,
                retry_on=(SubmissionRejectedError,),
                logger=logger,
            )
        except SubmissionRejectedError as e:
            if not e.job_ids:
                e.job_ids = collection.job_ids
            reg.collection_path(collection.job_hash).unlink(missing_ok=True)
            reg.store.save()
            logger.error(f"Submission of {len(collection)} job(s) rejected: {e}",
                         extra={"job_hash": collection.job_hash})
            raise

        now = utcnow()
        for job_id in collection.job_ids:
            reg.store.update_status(
                job_id, JobStatus.SUBMITTED, now,
                job_hash=collection.job_hash, batch_id=batch_id,
            )
        reg.store.save()
        submitted.extend(collection.job_ids)
        logger.info(
            f"Submitted {len(collection)} job(s) as {batch_id}",
            extra={"job_hash": collection.job_hash, "batch_id": batch_id},
        )

    return sorted(submitted)


def wait_for_jobs(
    reg: Optional[Registry] = None,
    backend: Optional[ClusterBackend] = None,
    ids: Optional[Iterable[int]] = None,
    sleep: float = 2.0,
    timeout: Optional[float] = None,
    stop_on_error: bool = False,
) -> bool:
    """
    Sync repeatedly until no job in ids is submitted or started.

    Args:
        reg: Registry
        backend: Backend used for vanished-submission detection
        ids: Jobs to wait for (default: all jobs)
        sleep: Seconds between syncs
        timeout: Give up after this many seconds
        stop_on_error: Return as soon as one job failed

    Returns:
        True if every job in ids finished without error
    """
    reg = resolve_registry(reg)
    ids = reg.store.all_ids() if ids is None else sorted(set(ids))
    deadline = time.monotonic() + timeout if timeout is not None else None

    while True:
        sync_registry(reg, backend)
        records = reg.store.records(ids)
        pending = [r.job_id for r in records if r.status.is_pending]
        failed = [r.job_id for r in records if r.status == JobStatus.ERROR]
        if stop_on_error and failed:
            logger.warning(f"Stopped waiting: {len(failed)} job(s) failed")
            return False
        if not pending:
            return all(r.status == JobStatus.DONE for r in records)
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(f"Timed out waiting for {len(pending)} job(s)")
            return False
        time.sleep(sleep)


def kill_jobs(
    reg: Optional[Registry] = None,
    backend: Optional[ClusterBackend] = None,
    ids: Optional[Iterable[int]] = None,
) -> list[int]:
    """
    Cancel the submissions of pending jobs (best effort), then sync.

    A cancellation racing with completion may still leave jobs done; the
    returned ids are those that were pending when the kill was issued.
    """
    reg = resolve_registry(reg)
    if backend is None:
        raise ValueError("kill_jobs needs a backend")
    reg.store.sync()
    batches = _pending_batches(reg, ids)
    killed: list[int] = []
    for batch_id, job_ids in sorted(batches.items()):
        logger.info(f"Cancelling {batch_id} ({len(job_ids)} job(s))", extra={"batch_id": batch_id})
        backend.cancel(batch_id)
        killed.extend(job_ids)
    sync_registry(reg, backend)
    return sorted(killed)


def reset_jobs(reg: Optional[Registry] = None, ids: Optional[Iterable[int]] = None) -> list[int]:
    """
    Return jobs to ``defined``, deleting their markers and results.

    A worker still running a reset job writes markers with its old
    collection hash; sync ignores them.
    """
    reg = resolve_registry(reg)
    ids = reg.store.all_ids() if ids is None else ids
    reset = reg.store.reset(ids)
    for job_id in reset:
        reg.result_path(job_id).unlink(missing_ok=True)
    reg.store.save()
    logger.info(f"Reset {len(reset)} job(s)")
    return reset


def test_job(reg: Optional[Registry] = None, job_id: int = 0) -> Any:
    """
    Run one job in the current process and return its result.

    Nothing is written: no marker, no result file, no status change.

    Raises:
        UnknownReferenceError: If the job does not exist
        MissingDependencyError: If a definition the job needs was removed
        JobExecutionError: If the job raises
    """
    reg = resolve_registry(reg)
    record = reg.store.get(job_id)
    collection = assemble_collection(reg, [record], job_hash=f"test{job_id}")
    try:
        for package in collection.packages:
            importlib.import_module(package)
        return execute_job(collection, collection.jobs[0])
    except Exception as e:
        raise JobExecutionError(
            job_id, f"{type(e).__name__}: {e}", traceback.format_exc()
        ) from e


test_job.__test__ = False  # not a pytest test


def get_log(reg: Optional[Registry] = None, job_id: int = 0) -> str:
    """
    Log of the collection that ran a job, followed by captured worker output.

    Raises:
        BatchgridError: If the job was never submitted
        FileNotFoundError: If no log was written (yet)
    """
    reg = resolve_registry(reg)
    record = reg.store.get(job_id)
    if record.job_hash is None:
        raise BatchgridError(f"Job {job_id} has not been submitted")
    paths = [reg.log_path(record.job_hash), output_path(reg, record.job_hash)]
    parts = [p.read_text() for p in paths if p.exists()]
    if not parts:
        raise FileNotFoundError(f"No log found for job {job_id} ({record.job_hash})")
    return "".join(parts)


def sweep_registry(reg: Optional[Registry] = None) -> dict[str, int]:
    """
    Delete files no job needs any more.

    - collections (and job scripts) of submissions with no pending job
    - logs of collections no job refers to
    - markers of unknown jobs or of earlier submissions
    - results of unknown jobs

    Returns:
        Number of files removed per kind
    """
    reg = resolve_registry(reg)
    reg.store.sync()
    records = reg.store.records()
    known_ids = {r.job_id for r in records}
    referenced = {r.job_hash for r in records if r.job_hash}
    pending = {r.job_hash for r in records if r.job_hash and r.status.is_pending}

    removed = {"collections": 0, "logs": 0, "markers": 0, "results": 0}

    for path in reg.subdir("collections").iterdir():
        if not path.name.startswith(".") and path.stem not in pending:
            path.unlink()
            removed["collections"] += 1

    for path in reg.subdir("logs").iterdir():
        if not path.name.startswith(".") and path.stem not in referenced:
            path.unlink()
            removed["logs"] += 1

    for job_id, marker in reg.markers.scan().items():
        if job_id not in known_ids or marker.job_hash != reg.store.get(job_id).job_hash:
            reg.markers.remove(job_id)
            removed["markers"] += 1

    for path in reg.subdir("results").iterdir():
        if not path.name.startswith(".") and _result_job_id(path) not in known_ids:
            path.unlink()
            removed["results"] += 1

    logger.info(
        "Swept registry: " + ", ".join(f"{n} {kind}" for kind, n in removed.items())
    )
    return removed


def _result_job_id(path: Path) -> Optional[int]:
    stem = path.name.split(".", 1)[0]
    return int(stem) if stem.isdigit() else None
