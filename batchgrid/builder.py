"""
Job Collection Builder - package jobs for workers.

A collection holds resolved definitions (functions are pickled by
reference, so worker environments must be able to import them), per-job
parameters and seeds, and the registry root. Problem data is not copied:
collections carry the path of the data blob.

Collections are written to ``collections/{job_hash}.pkl`` and never
modified afterwards.
"""

import logging
import pickle
import random
from pathlib import Path
from typing import Iterable, Optional, Sequence

from batchgrid.errors import MissingDependencyError
from batchgrid.registry import Registry
from batchgrid.schemas import AlgorithmDef, CollectionJob, FunctionDef, JobCollection, JobRecord, ProblemDef
from batchgrid.utils import atomic_write_bytes, generate_ulid

logger = logging.getLogger(__name__)

_Definitions = tuple[dict[str, ProblemDef], dict[str, AlgorithmDef], dict[str, FunctionDef]]


def chunk_ids(
    ids: Iterable[int],
    chunk_size: Optional[int] = None,
    n_chunks: Optional[int] = None,
    shuffle: bool = False,
    seed: Optional[int] = None,
) -> list[list[int]]:
    """
    Split ids into chunks.

    Exactly one of chunk_size and n_chunks may be given; with neither,
    every id gets its own chunk. Chunk sizes differ by at most one.

    Args:
        ids: Job ids
        chunk_size: Maximum number of ids per chunk
        n_chunks: Number of chunks
        shuffle: Shuffle ids before splitting
        seed: Seed for shuffling

    Returns:
        List of chunks; ids keep their order inside a chunk unless shuffled
    """
    ids = list(ids)
    if chunk_size is not None and n_chunks is not None:
        raise ValueError("Pass either chunk_size or n_chunks, not both")
    if chunk_size is not None and chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if n_chunks is not None and n_chunks < 1:
        raise ValueError("n_chunks must be >= 1")
    if not ids:
        return []

    if shuffle:
        random.Random(seed).shuffle(ids)

    if n_chunks is None:
        size = chunk_size or 1
        n_chunks = -(-len(ids) // size)
    n_chunks = min(n_chunks, len(ids))

    base, extra = divmod(len(ids), n_chunks)
    chunks = []
    start = 0
    for i in range(n_chunks):
        end = start + base + (1 if i < extra else 0)
        chunks.append(ids[start:end])
        start = end
    return chunks


def _resolve_definitions(reg: Registry, records: Iterable[JobRecord]) -> _Definitions:
    """Load every definition the records need, failing before anything is written."""
    problems, algorithms, functions = {}, {}, {}
    for record in records:
        if record.problem is not None and record.problem not in problems:
            if not reg.has_problem(record.problem):
                raise MissingDependencyError(
                    f"Job {record.job_id}: problem '{record.problem}' was removed"
                )
            problems[record.problem] = reg.load_problem(record.problem)
        if record.algorithm is not None and record.algorithm not in algorithms:
            if not reg.has_algorithm(record.algorithm):
                raise MissingDependencyError(
                    f"Job {record.job_id}: algorithm '{record.algorithm}' was removed"
                )
            algorithms[record.algorithm] = reg.load_algorithm(record.algorithm)
        if record.function is not None and record.function not in functions:
            if not reg.has_function(record.function):
                raise MissingDependencyError(
                    f"Job {record.job_id}: function '{record.function}' was removed"
                )
            functions[record.function] = reg.load_function(record.function)
    return problems, algorithms, functions


def assemble_collection(
    reg: Registry,
    records: Sequence[JobRecord],
    job_hash: str,
    definitions: Optional[_Definitions] = None,
) -> JobCollection:
    """
    Build a collection object for records without persisting it.

    Raises:
        MissingDependencyError: If a job's problem, algorithm or function was removed
    """
    if definitions is None:
        definitions = _resolve_definitions(reg, records)
    problems, algorithms, functions = definitions
    return JobCollection(
        job_hash=job_hash,
        root=str(reg.root),
        jobs=tuple(CollectionJob.from_record(r, job_hash) for r in records),
        problems={r.problem: problems[r.problem] for r in records if r.problem},
        algorithms={r.algorithm: algorithms[r.algorithm] for r in records if r.algorithm},
        functions={r.function: functions[r.function] for r in records if r.function},
        packages=reg.packages,
        work_dir=reg.work_dir,
        serializer=reg.serializer.name,
    )


def build_collections(
    reg: Registry,
    ids: Optional[Iterable[int]] = None,
    chunk_size: Optional[int] = None,
    chunks: Optional[Sequence[Sequence[int]]] = None,
) -> list[JobCollection]:
    """
    Build and persist one collection per chunk.

    Args:
        reg: Registry
        ids: Jobs to package (ignored if chunks is given)
        chunk_size: Jobs per collection (default: one job per collection)
        chunks: Explicit grouping of job ids into collections

    Returns:
        The written collections, in chunk order

    Raises:
        UnknownReferenceError: If an id is not in the registry
        MissingDependencyError: If a job's problem, algorithm or function was removed
    """
    if chunks is None:
        if ids is None:
            raise ValueError("Pass ids or chunks")
        chunks = chunk_ids(sorted(set(ids)), chunk_size=chunk_size)

    seen: set[int] = set()
    for chunk in chunks:
        overlap = seen & set(chunk)
        if overlap:
            raise ValueError(f"Job ids {sorted(overlap)} appear in more than one chunk")
        seen.update(chunk)

    resolved = [[reg.store.get(job_id) for job_id in chunk] for chunk in chunks if chunk]
    definitions = _resolve_definitions(reg, (r for records in resolved for r in records))

    collections = []
    for records in resolved:
        job_hash = f"job{generate_ulid().lower()}"
        collection = assemble_collection(reg, records, job_hash, definitions)
        write_collection(reg.collection_path(job_hash), collection)
        collections.append(collection)

    logger.debug(f"Built {len(collections)} collection(s) for {len(seen)} job(s)")
    return collections


def write_collection(path: Path, collection: JobCollection) -> None:
    """Persist a collection; functions are pickled by reference."""
    try:
        data = pickle.dumps(collection, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, AttributeError, TypeError) as e:
        raise TypeError(
            f"Collection {collection.job_hash} is not serializable; problem, algorithm "
            f"and batch-map functions must be importable module-level functions: {e}"
        ) from e
    atomic_write_bytes(path, data)


def load_collection(path: Path | str) -> JobCollection:
    """Read a collection written by build_collections."""
    with open(path, "rb") as f:
        collection = pickle.load(f)
    if not isinstance(collection, JobCollection):
        raise TypeError(f"{path} does not contain a job collection")
    return collection
