"""
Serializers for opaque payloads.

Problem data and job results are opaque to batchgrid: they are only ever
passed through a Serializer. The serializer is chosen when a registry is
created and recorded in the registry settings and in every job collection,
so workers decode with the same strategy the controller used.

- pickle: any picklable Python object (default)
- json: JSON-compatible values only, readable from other languages

Job collections always use pickle because they carry function references.
"""

import json
import pickle
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from batchgrid.utils import atomic_write_bytes


class Serializer(ABC):
    """Pluggable (de)serialization strategy for payload blobs."""

    name: str = ""
    extension: str = ""

    @abstractmethod
    def dumps(self, obj: Any) -> bytes:
        pass

    @abstractmethod
    def loads(self, data: bytes) -> Any:
        pass

    def dump(self, obj: Any, path: Path) -> None:
        """Serialize obj and write it atomically to path."""
        atomic_write_bytes(path, self.dumps(obj))

    def load(self, path: Path) -> Any:
        """Read and deserialize the blob at path."""
        return self.loads(Path(path).read_bytes())

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PickleSerializer(Serializer):
    name = "pickle"
    extension = ".pkl"

    def dumps(self, obj: Any) -> bytes:
        return pickle.dumps(obj, protocol=pickle.HIGHEST_PROTOCOL)

    def loads(self, data: bytes) -> Any:
        return pickle.loads(data)


class JsonSerializer(Serializer):
    name = "json"
    extension = ".json"

    def dumps(self, obj: Any) -> bytes:
        try:
            return json.dumps(obj, sort_keys=True).encode()
        except TypeError as e:
            raise TypeError(f"Value is not JSON serializable: {e}") from e

    def loads(self, data: bytes) -> Any:
        return json.loads(data)


_SERIALIZERS: dict[str, type[Serializer]] = {
    PickleSerializer.name: PickleSerializer,
    JsonSerializer.name: JsonSerializer,
}


def get_serializer(name: str) -> Serializer:
    """
    Look up a serializer by name.

    Raises:
        KeyError: If no serializer with that name exists
    """
    if name not in _SERIALIZERS:
        raise KeyError(
            f"Unknown serializer: {name}. Registered: {sorted(_SERIALIZERS)}"
        )
    return _SERIALIZERS[name]()


def register_serializer(serializer_cls: type[Serializer]) -> None:
    """Make a custom serializer available by its name."""
    if not serializer_cls.name:
        raise ValueError("Serializer classes must define a name")
    _SERIALIZERS[serializer_cls.name] = serializer_cls
