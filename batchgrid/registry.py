"""
Registry - the on-disk home of one set of jobs.

A Registry is an explicit handle on a storage root. Every operation in
batchgrid takes the handle as its first argument; nothing in the engine
looks up a "current" registry (see batchgrid.context for the optional
ambient default used at the API boundary).

Storage layout:
    root/
        registry.json          settings (seed, serializer, packages, ...)
        jobs.json              job table snapshot
        problems/{name}/       definition.pkl + data blob
        algorithms/{name}.pkl
        functions/{name}.pkl   batch-map functions
        collections/{hash}.pkl job collections
        results/{job_id}.*     result artifacts
        markers/{job_id}.json  status markers
        logs/{hash}.log        worker logs
"""

import json
import logging
import pickle
import random
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from batchgrid.errors import UnknownReferenceError
from batchgrid.schemas import AlgorithmDef, FunctionDef, ProblemDef
from batchgrid.serialization import PickleSerializer, Serializer, get_serializer
from batchgrid.store import JobRecordStore, MarkerStore
from batchgrid.utils import atomic_write_json, utcnow

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"
TABLE_FILE = "jobs.json"
SUBDIRS = ("problems", "algorithms", "functions", "collections", "results", "markers", "logs")

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

_definitions = PickleSerializer()


def _dump_definition(definition: Any, path: Path) -> None:
    try:
        _definitions.dump(definition, path)
    except (pickle.PicklingError, AttributeError, TypeError) as e:
        raise TypeError(
            f"{type(definition).__name__} '{definition.name}' is not serializable; functions "
            f"must be importable module-level functions: {e}"
        ) from e


def result_path_for(root: Path, job_id: int, serializer: Serializer) -> Path:
    """Location of a job's result artifact, shared by controller and workers."""
    return Path(root) / "results" / f"{job_id}{serializer.extension}"


def validate_name(name: str, kind: str) -> None:
    """Names become file names, so they are restricted to a safe alphabet."""
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid {kind} name {name!r}: use letters, digits, '_', '.' and '-'"
        )


class Registry:
    """
    Handle on a registry storage root.

    Attributes:
        root: Storage root
        seed: Base seed; job seeds are ``seed + job_id``
        serializer: Serializer for problem data and results
        work_dir: Working directory for workers (None: worker's cwd)
        packages: Modules workers import before executing jobs
        store: The job table
    """

    def __init__(self, root: Path | str, settings: dict[str, Any]):
        self.root = Path(root).resolve()
        self.seed: int = int(settings["seed"])
        self.serializer: Serializer = get_serializer(settings.get("serializer", "pickle"))
        self.work_dir: Optional[str] = settings.get("work_dir")
        self.packages: tuple[str, ...] = tuple(settings.get("packages", ()))
        self.created_at = datetime.fromisoformat(settings["created_at"]) if settings.get(
            "created_at") else utcnow()

        for subdir in SUBDIRS:
            (self.root / subdir).mkdir(parents=True, exist_ok=True)

        self.markers = MarkerStore(self.root / "markers")
        self.store = JobRecordStore(self.root / TABLE_FILE, self.markers)

    def __repr__(self) -> str:
        return f"Registry(root={self.root}, jobs={len(self.store)})"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def settings(self) -> dict[str, Any]:
        return {
            "seed": self.seed,
            "serializer": self.serializer.name,
            "work_dir": self.work_dir,
            "packages": list(self.packages),
            "created_at": self.created_at.isoformat(),
        }

    def save(self) -> None:
        """Persist settings and the job table."""
        atomic_write_json(self.root / REGISTRY_FILE, self.settings())
        self.store.save()

    def sync(self) -> list[int]:
        """Merge worker markers into the job table and persist it if anything changed."""
        changed = self.store.sync()
        if changed:
            self.store.save()
        return changed

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def subdir(self, name: str) -> Path:
        return self.root / name

    def collection_path(self, job_hash: str) -> Path:
        return self.root / "collections" / f"{job_hash}.pkl"

    def log_path(self, job_hash: str) -> Path:
        return self.root / "logs" / f"{job_hash}.log"

    def result_path(self, job_id: int) -> Path:
        return result_path_for(self.root, job_id, self.serializer)

    def has_result(self, job_id: int) -> bool:
        return self.result_path(job_id).exists()

    # ------------------------------------------------------------------
    # Problems
    # ------------------------------------------------------------------

    def _problem_dir(self, name: str) -> Path:
        return self.root / "problems" / name

    def problem_names(self) -> list[str]:
        return sorted(
            p.name for p in (self.root / "problems").iterdir()
            if (p / "definition.pkl").exists()
        )

    def has_problem(self, name: str) -> bool:
        return (self._problem_dir(name) / "definition.pkl").exists()

    def write_problem(self, problem: ProblemDef, data: Any = None) -> None:
        """Store a problem definition and, if it has one, its data blob."""
        problem_dir = self._problem_dir(problem.name)
        problem_dir.mkdir(parents=True, exist_ok=True)
        if problem.data_file is not None:
            self.serializer.dump(data, self.root / problem.data_file)
        _dump_definition(problem, problem_dir / "definition.pkl")

    def data_file_for(self, name: str) -> str:
        """Relative path of a problem's data blob."""
        return f"problems/{name}/data{self.serializer.extension}"

    def load_problem(self, name: str) -> ProblemDef:
        """
        Load a problem definition.

        Raises:
            UnknownReferenceError: If the problem is not registered
        """
        path = self._problem_dir(name) / "definition.pkl"
        if not path.exists():
            raise UnknownReferenceError(f"Unknown problem: {name}")
        return _definitions.load(path)

    def load_problem_data(self, problem: ProblemDef) -> Any:
        if problem.data_file is None:
            return None
        return self.serializer.load(self.root / problem.data_file)

    def delete_problem(self, name: str) -> None:
        if not self.has_problem(name):
            raise UnknownReferenceError(f"Unknown problem: {name}")
        shutil.rmtree(self._problem_dir(name))

    # ------------------------------------------------------------------
    # Algorithms and batch-map functions
    # ------------------------------------------------------------------

    def algorithm_names(self) -> list[str]:
        return sorted(p.stem for p in (self.root / "algorithms").glob("*.pkl"))

    def has_algorithm(self, name: str) -> bool:
        return (self.root / "algorithms" / f"{name}.pkl").exists()

    def write_algorithm(self, algorithm: AlgorithmDef) -> None:
        _dump_definition(algorithm, self.root / "algorithms" / f"{algorithm.name}.pkl")

    def load_algorithm(self, name: str) -> AlgorithmDef:
        path = self.root / "algorithms" / f"{name}.pkl"
        if not path.exists():
            raise UnknownReferenceError(f"Unknown algorithm: {name}")
        return _definitions.load(path)

    def delete_algorithm(self, name: str) -> None:
        path = self.root / "algorithms" / f"{name}.pkl"
        if not path.exists():
            raise UnknownReferenceError(f"Unknown algorithm: {name}")
        path.unlink()

    def function_names(self) -> list[str]:
        return sorted(p.stem for p in (self.root / "functions").glob("*.pkl"))

    def has_function(self, name: str) -> bool:
        return (self.root / "functions" / f"{name}.pkl").exists()

    def write_function(self, function: FunctionDef) -> None:
        _dump_definition(function, self.root / "functions" / f"{function.name}.pkl")

    def load_function(self, name: str) -> FunctionDef:
        path = self.root / "functions" / f"{name}.pkl"
        if not path.exists():
            raise UnknownReferenceError(f"Unknown function: {name}")
        return _definitions.load(path)


def create_registry(
    root: Path | str,
    seed: Optional[int] = None,
    serializer: str = "pickle",
    work_dir: Optional[Path | str] = None,
    packages: Iterable[str] = (),
) -> Registry:
    """
    Create a new registry at root.

    Args:
        root: Storage root; must not already hold a registry
        seed: Base seed (random if None)
        serializer: Name of the payload serializer ("pickle" or "json")
        work_dir: Working directory for workers
        packages: Modules workers import before executing jobs

    Returns:
        The new Registry

    Raises:
        FileExistsError: If root already holds a registry
        KeyError: If the serializer is unknown
    """
    root = Path(root)
    if (root / REGISTRY_FILE).exists():
        raise FileExistsError(f"A registry already exists at {root}")
    get_serializer(serializer)

    root.mkdir(parents=True, exist_ok=True)
    if seed is None:
        seed = random.SystemRandom().randint(1, 2**31 - 1)
    settings = {
        "seed": seed,
        "serializer": serializer,
        "work_dir": str(Path(work_dir).resolve()) if work_dir is not None else None,
        "packages": list(packages),
        "created_at": utcnow().isoformat(),
    }
    reg = Registry(root, settings)
    reg.save()
    logger.info(f"Created registry at {reg.root} (seed={seed}, serializer={serializer})")
    return reg


def load_registry(root: Path | str, sync: bool = True) -> Registry:
    """
    Open an existing registry.

    Args:
        root: Storage root
        sync: Merge markers written since the table was last saved

    Raises:
        FileNotFoundError: If root holds no registry
    """
    root = Path(root)
    settings_path = root / REGISTRY_FILE
    if not settings_path.exists():
        raise FileNotFoundError(f"No registry found at {root}")
    with open(settings_path) as f:
        settings = json.load(f)
    reg = Registry(root, settings)
    if sync:
        reg.sync()
    return reg
