"""
Execution Driver - runs one job collection on a worker.

The driver needs nothing but the collection file and the shared storage
root. For each job, in collection order:

1. write a ``started`` marker
2. derive the problem instance (``random`` seeded with the instance seed)
3. run the algorithm or batch-map function (``random`` seeded with the job seed)
4. on success write the result artifact, then a ``done`` marker;
   on failure write an ``error`` marker with message and traceback

A failing job never stops its siblings. If the worker dies, markers of
finished jobs stay intact and unreached jobs keep no marker, so the
controller can detect the vanished submission and expire them.

Usage:
    python -m batchgrid.driver /path/to/registry/collections/<hash>.pkl
"""

import importlib
import logging
import os
import random
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import click

from batchgrid.builder import load_collection
from batchgrid.errors import JobExecutionError
from batchgrid.registry import result_path_for
from batchgrid.schemas import CollectionJob, JobCollection, JobStatus, StatusMarker
from batchgrid.serialization import get_serializer
from batchgrid.store import MarkerStore
from batchgrid.utils import PLAIN_FORMAT, setup_logging, utcnow

logger = logging.getLogger(__name__)


class DriverReport:
    """Outcome of running a collection."""

    def __init__(self, job_hash: str):
        self.job_hash = job_hash
        self.done: list[int] = []
        self.errors: dict[int, str] = {}

    @property
    def success(self) -> bool:
        return not self.errors

    def __repr__(self) -> str:
        return (
            f"DriverReport(job_hash={self.job_hash}, done={len(self.done)}, "
            f"errors={len(self.errors)})"
        )


def execute_job(
    collection: JobCollection,
    job: CollectionJob,
    data_cache: Optional[dict[str, Any]] = None,
) -> Any:
    """
    Compute a single job's result in the current process.

    Args:
        collection: The collection holding the job's definitions
        job: The job to run
        data_cache: Problem data already loaded, by problem name

    Returns:
        The result of the algorithm or batch-map function
    """
    if job.function is not None:
        function = collection.functions[job.function]
        random.seed(job.seed)
        return function.fn(**job.pars, **function.more_args)

    if data_cache is None:
        data_cache = {}
    problem = collection.problems[job.problem]
    if job.problem not in data_cache:
        data_cache[job.problem] = _load_data(collection, problem.data_file)
    data = data_cache[job.problem]

    random.seed(job.instance_seed)
    if problem.fn is None:
        instance = data
    else:
        instance = problem.fn(data, job, **job.prob_pars)

    algorithm = collection.algorithms[job.algorithm]
    random.seed(job.seed)
    if algorithm.fn is None:
        return instance
    return algorithm.fn(data, job, instance, **job.algo_pars)


def _load_data(collection: JobCollection, data_file: Optional[str]) -> Any:
    if data_file is None:
        return None
    serializer = get_serializer(collection.serializer)
    return serializer.load(Path(collection.root) / data_file)


@contextmanager
def _working_directory(path: Optional[str]) -> Iterator[None]:
    if path is None:
        yield
        return
    previous = os.getcwd()
    os.chdir(path)
    try:
        yield
    finally:
        os.chdir(previous)


@contextmanager
def _collection_log(log_file: Optional[Path]) -> Iterator[None]:
    """Mirror batchgrid log records into the collection's log file."""
    if log_file is None:
        yield
        return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    root_logger = logging.getLogger("batchgrid")
    previous_level = root_logger.level
    root_logger.addHandler(handler)
    if root_logger.getEffectiveLevel() > logging.INFO:
        root_logger.setLevel(logging.INFO)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)
        root_logger.setLevel(previous_level)
        handler.close()


def _format_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def run_collection(
    collection: JobCollection,
    log_file: Optional[Path] = None,
) -> DriverReport:
    """
    Execute every job of a collection and record the outcomes.

    Args:
        collection: The collection to run
        log_file: Log file for this collection (defaults to logs/<hash>.log)

    Returns:
        DriverReport listing finished and failed jobs
    """
    root = Path(collection.root)
    markers = MarkerStore(root / "markers")
    serializer = get_serializer(collection.serializer)
    report = DriverReport(collection.job_hash)
    if log_file is None:
        log_file = root / "logs" / f"{collection.job_hash}.log"

    with _collection_log(log_file):
        logger.info(
            f"Starting collection {collection.job_hash} with {len(collection)} job(s)",
            extra={"job_hash": collection.job_hash},
        )

        setup_error: Optional[BaseException] = None
        setup_trace: Optional[str] = None
        for package in collection.packages:
            try:
                importlib.import_module(package)
            except ImportError as e:
                setup_error, setup_trace = e, traceback.format_exc()
                logger.error(f"Failed to import package '{package}': {e}")
                break

        data_cache: dict[str, Any] = {}
        with _working_directory(collection.work_dir):
            for job in collection.jobs:
                started_at = utcnow()
                markers.write(StatusMarker(
                    job_id=job.job_id,
                    status=JobStatus.STARTED,
                    timestamp=started_at,
                    job_hash=collection.job_hash,
                    started_at=started_at,
                ))
                logger.info(f"Job {job.job_id} started", extra={"job_id": job.job_id})

                try:
                    if setup_error is not None:
                        raise JobExecutionError(job.job_id, _format_error(setup_error), setup_trace)
                    result = execute_job(collection, job, data_cache)
                    serializer.dump(result, result_path_for(root, job.job_id, serializer))
                except KeyboardInterrupt:
                    raise
                except BaseException as e:
                    # sys.exit() in job code fails that job only
                    message = e.message if isinstance(e, JobExecutionError) else _format_error(e)
                    trace = e.traceback if isinstance(e, JobExecutionError) else traceback.format_exc()
                    markers.write(StatusMarker(
                        job_id=job.job_id,
                        status=JobStatus.ERROR,
                        timestamp=utcnow(),
                        job_hash=collection.job_hash,
                        started_at=started_at,
                        error=message,
                        traceback=trace,
                    ))
                    report.errors[job.job_id] = message
                    logger.error(f"Job {job.job_id} failed: {message}", extra={"job_id": job.job_id})
                    continue

                markers.write(StatusMarker(
                    job_id=job.job_id,
                    status=JobStatus.DONE,
                    timestamp=utcnow(),
                    job_hash=collection.job_hash,
                    started_at=started_at,
                ))
                report.done.append(job.job_id)
                logger.info(f"Job {job.job_id} done", extra={"job_id": job.job_id})

        logger.info(
            f"Finished collection {collection.job_hash}: "
            f"{len(report.done)} done, {len(report.errors)} error(s)"
        )
    return report


def run_collection_file(path: Path | str) -> DriverReport:
    """Load a collection file and run it."""
    return run_collection(load_collection(path))


@click.command()
@click.argument("collection_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--log-level", default="INFO", show_default=True, help="Worker log level")
def main(collection_file: str, log_level: str):
    """Run the job collection in COLLECTION_FILE."""
    setup_logging(log_level=log_level, log_format="plain")
    report = run_collection_file(collection_file)
    click.echo(repr(report))


if __name__ == "__main__":
    main()
