"""
Problem, algorithm and batch-map function definitions.

Definitions are stored once in the registry (``problems/``, ``algorithms/``,
``functions/``) and copied by value into each job collection that needs them.
Problem data is the exception: it is stored once as a blob and collections
only carry its path.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

# (data, job, **prob_pars) -> instance
InstanceFn = Callable[..., Any]
# (data, job, instance, **algo_pars) -> result
AlgorithmFn = Callable[..., Any]


@dataclass(frozen=True)
class ProblemDef:
    """
    A registered problem.

    Attributes:
        name: Unique problem name
        fn: Instance function; if None the instance is the data itself
        seed: Problem seed; instances use ``seed + repl - 1``
        data_file: Path of the data blob relative to the registry root
            (None if the problem has no data)
    """
    name: str
    fn: Optional[InstanceFn]
    seed: int
    data_file: Optional[str] = None


@dataclass(frozen=True)
class AlgorithmDef:
    """
    A registered algorithm.

    Attributes:
        name: Unique algorithm name
        fn: Algorithm function; if None the result is the problem instance
    """
    name: str
    fn: Optional[AlgorithmFn]


@dataclass(frozen=True)
class FunctionDef:
    """
    A batch-map function.

    Attributes:
        name: Unique function name
        fn: The function, called as ``fn(**pars, **more_args)``
        more_args: Constant keyword arguments shared by all jobs
    """
    name: str
    fn: Callable[..., Any]
    more_args: dict[str, Any] = field(default_factory=dict)
