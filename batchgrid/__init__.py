"""
batchgrid - Batch experiment registry

Defines problems and algorithms, crosses them into experiments, submits
the jobs to local or cluster backends and collects the results. Workers
report back through marker files on shared storage only.
"""

__version__ = "0.1.0"


__all__ = ["BatchgridConfig", "load_config", "get_batchgrid_home", "create_registry", "load_registry"]

from .config import BatchgridConfig, load_config, get_batchgrid_home
from .registry import create_registry, load_registry
