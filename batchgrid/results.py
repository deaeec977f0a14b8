"""
Result Aggregation Layer - read finished results back into tables.

A table is a list of row dicts keyed by ``job_id``, sorted by job id.
Result artifacts are write-once files owned by the worker that produced
them; only jobs in status ``done`` with an artifact count as having a
result. By default jobs without a result are skipped; with
``require_all=True`` an IncompleteResultsError names them.
"""

import logging
from typing import Any, Callable, Iterable, Optional

from batchgrid.context import resolve_registry
from batchgrid.errors import IncompleteResultsError
from batchgrid.registry import Registry
from batchgrid.schemas import JobStatus

logger = logging.getLogger(__name__)

Row = dict[str, Any]

JOIN_MODES = ("inner", "left", "right", "outer")

_NO_INIT = object()


def _has_result(reg: Registry, job_id: int) -> bool:
    return reg.store.get(job_id).status == JobStatus.DONE and reg.has_result(job_id)


def _result_ids(reg: Registry, ids: Optional[Iterable[int]], require_all: bool) -> list[int]:
    """Ids with a result; the missing ones are skipped or reported."""
    if ids is None:
        candidates = reg.store.query(lambda r: r.status == JobStatus.DONE)
    else:
        candidates = [r.job_id for r in reg.store.records(ids)]
    available = [job_id for job_id in candidates if _has_result(reg, job_id)]
    missing = sorted(set(candidates) - set(available))
    if missing:
        if require_all:
            raise IncompleteResultsError(missing)
        logger.debug(f"Skipping {len(missing)} job(s) without result")
    return available


def load_result(reg: Optional[Registry] = None, job_id: int = 0) -> Any:
    """
    Load the result of one job.

    Raises:
        UnknownReferenceError: If the job does not exist
        IncompleteResultsError: If the job has no result
    """
    reg = resolve_registry(reg)
    if not _has_result(reg, job_id):
        raise IncompleteResultsError([job_id])
    return reg.serializer.load(reg.result_path(job_id))


def reduce_results(
    reg: Optional[Registry] = None,
    fn: Optional[Callable[[Any, Any], Any]] = None,
    ids: Optional[Iterable[int]] = None,
    init: Any = _NO_INIT,
    require_all: bool = False,
) -> Any:
    """
    Fold results in job id order: ``acc = fn(acc, result)``.

    Without ``init`` the first result is the initial accumulator. With no
    results at all, ``init`` is returned (None if not given).
    """
    reg = resolve_registry(reg)
    if fn is None:
        raise ValueError("reduce_results needs a reduction function")
    acc = init
    for job_id in _result_ids(reg, ids, require_all):
        result = load_result(reg, job_id)
        acc = result if acc is _NO_INIT else fn(acc, result)
    return None if acc is _NO_INIT else acc


def reduce_results_list(
    reg: Optional[Registry] = None,
    ids: Optional[Iterable[int]] = None,
    fn: Optional[Callable[[Any], Any]] = None,
    require_all: bool = False,
) -> dict[int, Any]:
    """Map job id -> fn(result) (the result itself if fn is None)."""
    reg = resolve_registry(reg)
    out = {}
    for job_id in _result_ids(reg, ids, require_all):
        result = load_result(reg, job_id)
        out[job_id] = fn(result) if fn is not None else result
    return out


def reduce_results_table(
    reg: Optional[Registry] = None,
    ids: Optional[Iterable[int]] = None,
    fn: Optional[Callable[[Any], Any]] = None,
    require_all: bool = False,
) -> list[Row]:
    """
    One row per job with a result.

    Dict results (after fn) become columns; any other value goes into a
    ``result`` column.

    Raises:
        IncompleteResultsError: If require_all and some jobs have no result
    """
    rows = []
    for job_id, value in reduce_results_list(reg, ids, fn, require_all).items():
        row: Row = {"job_id": job_id}
        if isinstance(value, dict):
            row.update({k: v for k, v in value.items() if k != "job_id"})
        else:
            row["result"] = value
        rows.append(row)
    return rows


def join_tables(a: list[Row], b: list[Row], how: str = "inner", key: str = "job_id") -> list[Row]:
    """
    Join two tables on key.

    Args:
        a: Left table
        b: Right table
        how: "inner", "left", "right" or "outer"
        key: Column both tables are keyed by

    Returns:
        Rows sorted by key. Every row has every column; cells missing on one
        side are None. Columns of b that clash with a are renamed ``<name>.y``.

    Raises:
        ValueError: If how is unknown or a key repeats within a table
    """
    if how not in JOIN_MODES:
        raise ValueError(f"Unknown join mode: {how}. Use one of {JOIN_MODES}")

    left = _index(a, key, "left")
    right = _index(b, key, "right")

    left_cols = _columns(a, key)
    right_cols = {c: (f"{c}.y" if c in left_cols else c) for c in _columns(b, key)}

    if how == "inner":
        keys = left.keys() & right.keys()
    elif how == "left":
        keys = left.keys()
    elif how == "right":
        keys = right.keys()
    else:
        keys = left.keys() | right.keys()

    rows = []
    for k in sorted(keys):
        row: Row = {key: k}
        l_row = left.get(k, {})
        r_row = right.get(k, {})
        for col in left_cols:
            row[col] = l_row.get(col)
        for col, name in right_cols.items():
            row[name] = r_row.get(col)
        rows.append(row)
    return rows


def _index(table: list[Row], key: str, side: str) -> dict[Any, Row]:
    index = {}
    for row in table:
        if key not in row:
            raise ValueError(f"{side} table has a row without '{key}'")
        if row[key] in index:
            raise ValueError(f"{side} table repeats {key} {row[key]!r}")
        index[row[key]] = row
    return index


def _columns(table: list[Row], key: str) -> list[str]:
    columns: list[str] = []
    for row in table:
        for col in row:
            if col != key and col not in columns:
                columns.append(col)
    return columns
