"""
Experiment Definition Engine - problems x algorithms x replications.

Usage:
    reg = create_registry("reg", seed=1)
    add_problem(reg, "subsample", data=rows, fn=subsample)
    add_algorithm(reg, "mean", fn=mean)
    ids = add_experiments(
        reg,
        prob_designs={"subsample": expand_grid(ratio=[0.5, 0.9])},
        algo_designs={"mean": None},
        replications=2,
    )

Function contracts:
    instance function:  fn(data, job, **prob_pars) -> instance
    algorithm function: fn(data, job, instance, **algo_pars) -> result
    batch-map function: fn(**pars, **more_args) -> result

Seeds: ``job.seed = registry.seed + job_id`` and
``job.instance_seed = problem.seed + repl - 1``. The instance seed does not
depend on the algorithm, so all algorithms applied to the same
(problem, parameter row, replication) see the same instance.

All registration functions validate everything before writing anything;
a failing call leaves the registry unchanged.
"""

import inspect
import itertools
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from batchgrid.errors import (
    DuplicateKeyError,
    SchemaMismatchError,
    UnknownReferenceError,
)
from batchgrid.registry import Registry, validate_name
from batchgrid.schemas import AlgorithmDef, FunctionDef, JobRecord, ProblemDef

logger = logging.getLogger(__name__)

Design = Optional[Sequence[Mapping[str, Any]]]


def expand_grid(**values: Iterable[Any]) -> list[dict[str, Any]]:
    """
    Build the cross product of parameter values as a list of rows.

    >>> expand_grid(ratio=[0.5, 0.9], n=[10])
    [{'ratio': 0.5, 'n': 10}, {'ratio': 0.9, 'n': 10}]
    """
    names = list(values)
    pools = [list(values[name]) for name in names]
    return [dict(zip(names, combo)) for combo in itertools.product(*pools)]


def _declared_params(fn: Callable, skip: int) -> tuple[set[str], set[str], bool]:
    """
    Inspect fn's parameters after the first ``skip`` positional ones.

    Returns:
        (all accepted names, required names, accepts **kwargs)
    """
    try:
        params = list(inspect.signature(fn).parameters.values())
    except (TypeError, ValueError):
        # No introspectable signature (some builtins): accept anything
        return set(), set(), True
    positional = [
        p for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    skipped = {p.name for p in positional[:skip]}

    accepted: set[str] = set()
    required: set[str] = set()
    var_kw = False
    for p in params:
        if p.name in skipped or p.kind == p.VAR_POSITIONAL:
            continue
        if p.kind == p.VAR_KEYWORD:
            var_kw = True
            continue
        if p.kind == p.POSITIONAL_ONLY:
            continue
        accepted.add(p.name)
        if p.default is p.empty:
            required.add(p.name)
    return accepted, required, var_kw


def _check_design(
    kind: str,
    name: str,
    fn: Optional[Callable],
    skip: int,
    rows: Sequence[Mapping[str, Any]],
) -> None:
    """Validate a parameter table against the target function's signature."""
    if not rows:
        raise SchemaMismatchError(f"{kind} '{name}': parameter table has no rows")

    columns = set(rows[0])
    for i, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise SchemaMismatchError(f"{kind} '{name}': row {i} is not a mapping")
        if set(row) != columns:
            raise SchemaMismatchError(
                f"{kind} '{name}': row {i} has columns {sorted(row)}, expected {sorted(columns)}"
            )

    if fn is None:
        if columns:
            raise SchemaMismatchError(
                f"{kind} '{name}' has no function but parameters {sorted(columns)} were given"
            )
        return

    accepted, required, var_kw = _declared_params(fn, skip)
    unknown = columns - accepted
    if unknown and not var_kw:
        raise SchemaMismatchError(
            f"{kind} '{name}': unknown parameters {sorted(unknown)}; "
            f"function accepts {sorted(accepted)}"
        )
    missing = required - columns
    if missing:
        raise SchemaMismatchError(
            f"{kind} '{name}': missing required parameters {sorted(missing)}"
        )


def _normalize_rows(design: Design) -> list[dict[str, Any]]:
    if design is None:
        return [{}]
    return [dict(row) for row in design]


# ----------------------------------------------------------------------------
# Problems and algorithms
# ----------------------------------------------------------------------------


def add_problem(
    reg: Registry,
    name: str,
    data: Any = None,
    fn: Optional[Callable] = None,
    seed: Optional[int] = None,
    overwrite: bool = False,
) -> ProblemDef:
    """
    Register a problem.

    Args:
        reg: Registry
        name: Unique problem name
        data: Static data, stored once and referenced by all jobs
        fn: Instance function ``fn(data, job, **prob_pars)``; None uses data as instance
        seed: Problem seed (defaults to the registry seed)
        overwrite: Replace an existing problem of the same name

    Returns:
        The stored ProblemDef

    Raises:
        DuplicateKeyError: If the name exists and overwrite is False
    """
    validate_name(name, "problem")
    if fn is not None and not callable(fn):
        raise TypeError(f"Problem '{name}': fn must be callable")
    if reg.has_problem(name) and not overwrite:
        raise DuplicateKeyError(f"Problem already exists: {name}")

    problem = ProblemDef(
        name=name,
        fn=fn,
        seed=reg.seed if seed is None else int(seed),
        data_file=reg.data_file_for(name) if data is not None else None,
    )
    reg.write_problem(problem, data)
    logger.info(f"Added problem '{name}'")
    return problem


def add_algorithm(
    reg: Registry,
    name: str,
    fn: Optional[Callable] = None,
    overwrite: bool = False,
) -> AlgorithmDef:
    """
    Register an algorithm ``fn(data, job, instance, **algo_pars)``.

    Raises:
        DuplicateKeyError: If the name exists and overwrite is False
    """
    validate_name(name, "algorithm")
    if fn is not None and not callable(fn):
        raise TypeError(f"Algorithm '{name}': fn must be callable")
    if reg.has_algorithm(name) and not overwrite:
        raise DuplicateKeyError(f"Algorithm already exists: {name}")

    algorithm = AlgorithmDef(name=name, fn=fn)
    reg.write_algorithm(algorithm)
    logger.info(f"Added algorithm '{name}'")
    return algorithm


def get_problem_ids(reg: Registry) -> list[str]:
    """Names of all registered problems."""
    return reg.problem_names()


def get_algorithm_ids(reg: Registry) -> list[str]:
    """Names of all registered algorithms."""
    return reg.algorithm_names()


def remove_problem(reg: Registry, name: str, keep_jobs: bool = False) -> list[int]:
    """
    Remove a problem and, unless keep_jobs is set, all of its jobs.

    Jobs kept after their problem was removed can no longer be built into
    collections (MissingDependencyError).

    Returns:
        Ids of removed jobs
    """
    reg.delete_problem(name)
    removed: list[int] = []
    if not keep_jobs:
        removed = remove_experiments(reg, reg.store.query(lambda r: r.problem == name))
    logger.info(f"Removed problem '{name}' ({len(removed)} job(s))")
    return removed


def remove_algorithm(reg: Registry, name: str, keep_jobs: bool = False) -> list[int]:
    """Remove an algorithm and, unless keep_jobs is set, all of its jobs."""
    reg.delete_algorithm(name)
    removed: list[int] = []
    if not keep_jobs:
        removed = remove_experiments(reg, reg.store.query(lambda r: r.algorithm == name))
    logger.info(f"Removed algorithm '{name}' ({len(removed)} job(s))")
    return removed


# ----------------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------------


def add_experiments(
    reg: Registry,
    prob_designs: Optional[Mapping[str, Design]] = None,
    algo_designs: Optional[Mapping[str, Design]] = None,
    replications: int = 1,
    tags: Iterable[str] = (),
) -> list[int]:
    """
    Define one job per problem row x algorithm row x replication.

    Experiments that already exist (same problem, algorithm, parameters and
    replication) are skipped, so calling this again with a larger
    ``replications`` adds only the new replications.

    Args:
        reg: Registry
        prob_designs: Problem name -> parameter rows (None: one empty row).
            None selects every registered problem without parameters.
        algo_designs: Algorithm name -> parameter rows, as above
        replications: Number of replications (>= 1)
        tags: Tags for all new jobs

    Returns:
        Ids of the newly defined jobs

    Raises:
        UnknownReferenceError: If a design names an unregistered problem/algorithm
        SchemaMismatchError: If parameter names do not fit the function
    """
    if not isinstance(replications, int) or isinstance(replications, bool) or replications < 1:
        raise ValueError(f"replications must be a positive integer, got {replications!r}")

    if prob_designs is None:
        prob_designs = {name: None for name in reg.problem_names()}
    if algo_designs is None:
        algo_designs = {name: None for name in reg.algorithm_names()}

    problems: dict[str, tuple[ProblemDef, list[dict[str, Any]]]] = {}
    for name, design in prob_designs.items():
        problem = reg.load_problem(name)
        rows = _normalize_rows(design)
        _check_design("Problem", name, problem.fn, 2, rows)
        problems[name] = (problem, rows)

    algorithms: dict[str, tuple[AlgorithmDef, list[dict[str, Any]]]] = {}
    for name, design in algo_designs.items():
        algorithm = reg.load_algorithm(name)
        rows = _normalize_rows(design)
        _check_design("Algorithm", name, algorithm.fn, 3, rows)
        algorithms[name] = (algorithm, rows)

    tags = sorted(set(tags))
    existing = {r.definition_key() for r in reg.store.records() if r.is_experiment}
    pending: list[tuple[ProblemDef, dict, str, dict, int]] = []
    for prob_name, (problem, prob_rows) in problems.items():
        for algo_name, (_, algo_rows) in algorithms.items():
            for prob_pars, algo_pars in itertools.product(prob_rows, algo_rows):
                for repl in range(1, replications + 1):
                    candidate = JobRecord(
                        job_id=0, seed=0, problem=prob_name, algorithm=algo_name,
                        prob_pars=prob_pars, algo_pars=algo_pars, repl=repl,
                    )
                    key = candidate.definition_key()
                    if key in existing:
                        continue
                    existing.add(key)
                    pending.append((problem, prob_pars, algo_name, algo_pars, repl))

    ids = reg.store.peek_ids(len(pending))
    records = [
        JobRecord(
            job_id=job_id,
            seed=reg.seed + job_id,
            problem=problem.name,
            algorithm=algo_name,
            prob_pars=dict(prob_pars),
            algo_pars=dict(algo_pars),
            repl=repl,
            instance_seed=problem.seed + repl - 1,
            tags=list(tags),
        )
        for job_id, (problem, prob_pars, algo_name, algo_pars, repl) in zip(ids, pending)
    ]
    added = reg.store.add_records(records)
    reg.save()
    logger.info(f"Added {len(added)} experiment(s)")
    return added


def _same_function(existing: FunctionDef, fn: Callable, more_args: Mapping[str, Any]) -> bool:
    same_fn = existing.fn is fn or (
        getattr(existing.fn, "__module__", None) == getattr(fn, "__module__", None)
        and getattr(existing.fn, "__qualname__", None) == getattr(fn, "__qualname__", None)
    )
    return same_fn and existing.more_args == dict(more_args)


def batch_map(
    reg: Registry,
    fn: Callable,
    args: Optional[Sequence[Mapping[str, Any]]] = None,
    more_args: Optional[Mapping[str, Any]] = None,
    name: Optional[str] = None,
    tags: Iterable[str] = (),
    **vectors: Iterable[Any],
) -> list[int]:
    """
    Define one plain job per argument row: ``fn(**row, **more_args)``.

    Rows come either from ``args`` or, zipped, from keyword vectors:

        batch_map(reg, pow, x=[1, 2, 3], more_args={"exp": 2})

    Args:
        reg: Registry
        fn: Function to map
        args: Argument rows
        more_args: Constant keyword arguments for every call
        name: Function name in the registry (defaults to fn.__name__)
        tags: Tags for all new jobs
        **vectors: Equal-length argument vectors, zipped into rows

    Returns:
        Ids of the new jobs

    Raises:
        SchemaMismatchError: If argument names do not fit fn's signature
        DuplicateKeyError: If jobs already map a different call under this name
    """
    if not callable(fn):
        raise TypeError("fn must be callable")
    if args is not None and vectors:
        raise ValueError("Pass either args or keyword vectors, not both")

    if vectors:
        columns = {k: list(v) for k, v in vectors.items()}
        lengths = {len(v) for v in columns.values()}
        if len(lengths) != 1:
            raise ValueError(f"Argument vectors differ in length: {sorted(lengths)}")
        rows = [dict(zip(columns, values)) for values in zip(*columns.values())]
    else:
        rows = [dict(row) for row in (args or [])]

    name = name or getattr(fn, "__name__", None)
    validate_name(name, "function")
    more_args = dict(more_args or {})

    if rows:
        call_rows = [{**row, **more_args} for row in rows]
        _check_design("Function", name, fn, 0, call_rows)
        overlap = set(rows[0]) & set(more_args)
        if overlap:
            raise SchemaMismatchError(
                f"Function '{name}': arguments {sorted(overlap)} given both per job and in more_args"
            )

    tags = sorted(set(tags))
    ids = reg.store.peek_ids(len(rows))
    records = [
        JobRecord(job_id=job_id, seed=reg.seed + job_id, function=name, pars=row, tags=list(tags))
        for job_id, row in zip(ids, rows)
    ]
    reg.store.check_records(records)

    in_use = any(r.function == name for r in reg.store.records())
    if in_use and not _same_function(reg.load_function(name), fn, more_args):
        raise DuplicateKeyError(
            f"Function '{name}' is used by existing jobs with a different function or "
            f"more_args; pass another name"
        )
    if not in_use:
        reg.write_function(FunctionDef(name=name, fn=fn, more_args=more_args))
    added = reg.store.add_records(records)
    reg.save()
    logger.info(f"Added {len(added)} job(s) mapping '{name}'")
    return added


def remove_experiments(reg: Registry, ids: Iterable[int]) -> list[int]:
    """Delete jobs with their markers and results."""
    ids = sorted(set(ids))
    for job_id in ids:
        reg.store.get(job_id)
    removed = reg.store.remove_records(ids)
    for job_id in removed:
        result = reg.result_path(job_id)
        if result.exists():
            result.unlink()
    reg.save()
    return removed


# ----------------------------------------------------------------------------
# Tags
# ----------------------------------------------------------------------------


def add_job_tags(reg: Registry, ids: Optional[Iterable[int]], tags: Iterable[str]) -> list[int]:
    """Add tags to jobs (all jobs if ids is None). Returns the affected ids."""
    tags = set(tags)
    records = reg.store.records(ids)
    for record in records:
        record.tags = sorted(set(record.tags) | tags)
    reg.save()
    return [r.job_id for r in records]


def remove_job_tags(reg: Registry, ids: Optional[Iterable[int]], tags: Iterable[str]) -> list[int]:
    """Remove tags from jobs (all jobs if ids is None). Returns the ids that lost a tag."""
    tags = set(tags)
    changed = []
    for record in reg.store.records(ids):
        if tags & set(record.tags):
            record.tags = sorted(set(record.tags) - tags)
            changed.append(record.job_id)
    reg.save()
    return changed


def get_used_job_tags(reg: Registry, ids: Optional[Iterable[int]] = None) -> list[str]:
    """All tags in use on the given jobs."""
    used: set[str] = set()
    for record in reg.store.records(ids):
        used.update(record.tags)
    return sorted(used)
