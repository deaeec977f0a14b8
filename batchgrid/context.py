"""
Ambient default registry for interactive use.

The engine always receives its registry explicitly. For scripts and
notebooks the API-level functions (controller, results) also accept
``reg=None`` and resolve it here:

    with use_registry(load_registry("my-experiments")):
        submit_jobs(backend=backend)
        wait_for_jobs(backend=backend)
        table = reduce_results_table()
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from batchgrid.errors import BatchgridError
from batchgrid.registry import Registry

_default_registry: ContextVar[Optional[Registry]] = ContextVar(
    "batchgrid_default_registry", default=None
)


@contextmanager
def use_registry(reg: Registry) -> Iterator[Registry]:
    """Make reg the default registry inside the with-block."""
    token = _default_registry.set(reg)
    try:
        yield reg
    finally:
        _default_registry.reset(token)


def get_default_registry() -> Optional[Registry]:
    return _default_registry.get()


def resolve_registry(reg: Optional[Registry]) -> Registry:
    """
    Return reg, or the ambient default if reg is None.

    Raises:
        BatchgridError: If neither is available
    """
    if reg is not None:
        return reg
    default = _default_registry.get()
    if default is None:
        raise BatchgridError(
            "No registry given and no default registry set (see batchgrid.context.use_registry)"
        )
    return default
