"""
Backend Registry for constructing cluster backends by name.

Maps backend names (interactive, multicore, ssh, scheduler, container) to
factories, so the configured backend can be built from ``config.yaml``:

    backend: scheduler
    backend_options:
      scheduler: slurm
      resources:
        time: "01:00:00"
"""

from typing import TYPE_CHECKING, Any, Callable

from batchgrid.backends.base import ClusterBackend

if TYPE_CHECKING:
    from batchgrid.config import BatchgridConfig

BackendFactory = Callable[..., ClusterBackend]


class BackendRegistry:
    """
    Registry of backend factories by name.

    Usage:
        registry = BackendRegistry.create_default()
        backend = registry.create("multicore", ncpus=4)

        # Custom backends
        registry.register("mine", MyBackend)
    """

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(self, name: str, factory: BackendFactory) -> None:
        """
        Register a factory for a backend name.

        Args:
            name: Backend name used in configuration
            factory: Callable taking backend options as keyword arguments
        """
        self._factories[name] = factory

    def get(self, name: str) -> BackendFactory:
        """
        Get the factory for a backend name.

        Raises:
            KeyError: If no factory is registered under name
        """
        if name not in self._factories:
            raise KeyError(
                f"No backend registered under name: {name}. "
                f"Registered: {self.list_backends()}"
            )
        return self._factories[name]

    def has(self, name: str) -> bool:
        return name in self._factories

    def list_backends(self) -> list[str]:
        return sorted(self._factories)

    def create(self, name: str, **options: Any) -> ClusterBackend:
        """Build a backend instance from its name and options."""
        return self.get(name)(**options)

    @classmethod
    def create_default(cls) -> "BackendRegistry":
        """Create a registry with every built-in backend."""
        from batchgrid.backends.container import ContainerBackend
        from batchgrid.backends.interactive import InteractiveBackend
        from batchgrid.backends.multicore import MulticoreBackend
        from batchgrid.backends.scheduler import SchedulerBackend
        from batchgrid.backends.ssh import SSHBackend

        registry = cls()
        registry.register("interactive", InteractiveBackend)
        registry.register("multicore", MulticoreBackend)
        registry.register("ssh", SSHBackend)
        registry.register("scheduler", SchedulerBackend)
        registry.register("container", ContainerBackend)
        return registry


def create_backend(config: "BatchgridConfig", registry: "BackendRegistry | None" = None) -> ClusterBackend:
    """
    Build the backend named in config.

    Raises:
        KeyError: If the backend name is unknown
        TypeError: If backend_options do not fit the backend
    """
    registry = registry or BackendRegistry.create_default()
    return registry.create(config.backend, **config.backend_options)
