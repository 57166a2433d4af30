"""Resource store interface used by the reconcilers, and an in-memory store for tests."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Protocol, TypeVar

from cicd_operator.observability import log_event
from cicd_operator.resources import IntegrationConfig, IntegrationJob, PipelineRun


LOGGER = logging.getLogger("cicd_operator.cluster")

Resource = IntegrationConfig | IntegrationJob | PipelineRun
ResourceT = TypeVar("ResourceT", IntegrationConfig, IntegrationJob, PipelineRun)


class ClusterError(RuntimeError):
    """The resource store rejected or failed an operation."""


class ResourceNotFoundError(ClusterError):
    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictError(ClusterError):
    pass


@dataclass(frozen=True)
class ResourceKey:
    namespace: str
    name: str

    @classmethod
    def of(cls, obj: Resource) -> ResourceKey:
        return cls(namespace=obj.metadata.namespace, name=obj.metadata.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: float | None = None


class ClusterClient(Protocol):
    def get(self, kind: type[ResourceT], key: ResourceKey) -> ResourceT: ...

    def list(self, kind: type[ResourceT], namespace: str | None = None) -> list[ResourceT]: ...

    def create(self, obj: Resource) -> None: ...

    def delete(self, kind: type[Resource], key: ResourceKey) -> None: ...

    def patch(self, obj: Resource) -> None:
        """Persist metadata and spec; status is left untouched."""
        ...

    def patch_status(self, obj: Resource) -> None: ...


class InMemoryCluster:
    """Thread-safe resource store honoring finalizers the way the real control plane does.

    Deleting an object with finalizers only stamps ``deletion_timestamp``; the
    object disappears once a patch leaves it with no finalizers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[tuple[str, str, str], Resource] = {}
        self._injected_errors: dict[tuple[str, str], Exception] = {}
        self.operations: list[tuple[str, str, str]] = []

    def inject_error(self, verb: str, kind: type[Resource], exc: Exception) -> None:
        """Make the next ``verb`` call on ``kind`` raise ``exc``."""
        with self._lock:
            self._injected_errors[(verb, kind.KIND)] = exc

    def get(self, kind: type[ResourceT], key: ResourceKey) -> ResourceT:
        with self._lock:
            self._raise_injected("get", kind.KIND)
            stored = self._objects.get((kind.KIND, key.namespace, key.name))
            if stored is None:
                raise ResourceNotFoundError(kind.KIND, key.namespace, key.name)
            if not isinstance(stored, kind):
                raise ClusterError(f"{key} is not a {kind.KIND}")
            return copy.deepcopy(stored)

    def list(self, kind: type[ResourceT], namespace: str | None = None) -> list[ResourceT]:
        with self._lock:
            out: list[ResourceT] = []
            for (stored_kind, stored_namespace, _), stored in sorted(self._objects.items()):
                if stored_kind != kind.KIND or not isinstance(stored, kind):
                    continue
                if namespace is not None and stored_namespace != namespace:
                    continue
                out.append(copy.deepcopy(stored))
            return out

    def create(self, obj: Resource) -> None:
        with self._lock:
            self._raise_injected("create", obj.KIND)
            index = _index(obj)
            if index in self._objects:
                raise ConflictError(f"{obj.KIND} {ResourceKey.of(obj)} already exists")
            stored = copy.deepcopy(obj)
            if stored.metadata.creation_timestamp is None:
                stored.metadata.creation_timestamp = datetime.now(timezone.utc)
            stored.metadata.resource_version = 1
            self._objects[index] = stored
            self._record("create", obj)

    def delete(self, kind: type[Resource], key: ResourceKey) -> None:
        with self._lock:
            self._raise_injected("delete", kind.KIND)
            index = (kind.KIND, key.namespace, key.name)
            stored = self._objects.get(index)
            if stored is None:
                raise ResourceNotFoundError(kind.KIND, key.namespace, key.name)
            if stored.metadata.finalizers:
                if stored.metadata.deletion_timestamp is None:
                    stored.metadata.deletion_timestamp = datetime.now(timezone.utc)
                    stored.metadata.resource_version += 1
            else:
                del self._objects[index]
            self._record("delete", stored)

    def patch(self, obj: Resource) -> None:
        with self._lock:
            self._raise_injected("patch", obj.KIND)
            index = _index(obj)
            stored = self._objects.get(index)
            if stored is None:
                raise ResourceNotFoundError(obj.KIND, obj.metadata.namespace, obj.metadata.name)
            updated = copy.deepcopy(obj)
            updated.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
            updated.metadata.creation_timestamp = stored.metadata.creation_timestamp
            updated.metadata.resource_version = stored.metadata.resource_version + 1
            setattr(updated, "status", copy.deepcopy(stored.status))
            self._record("patch", obj)
            if updated.metadata.deletion_timestamp is not None and not updated.metadata.finalizers:
                del self._objects[index]
                log_event(LOGGER, "resource_removed", kind=obj.KIND, key=str(ResourceKey.of(obj)))
                return
            self._objects[index] = updated

    def patch_status(self, obj: Resource) -> None:
        with self._lock:
            self._raise_injected("patch_status", obj.KIND)
            stored = self._objects.get(_index(obj))
            if stored is None:
                raise ResourceNotFoundError(obj.KIND, obj.metadata.namespace, obj.metadata.name)
            setattr(stored, "status", copy.deepcopy(obj.status))
            stored.metadata.resource_version += 1
            self._record("patch_status", obj)

    def count(self, verb: str, kind: type[Resource]) -> int:
        return sum(
            1 for op_verb, op_kind, _ in self.operations if op_verb == verb and op_kind == kind.KIND
        )

    def _raise_injected(self, verb: str, kind: str) -> None:
        exc = self._injected_errors.pop((verb, kind), None)
        if exc is not None:
            raise exc

    def _record(self, verb: str, obj: Resource) -> None:
        self.operations.append((verb, obj.KIND, str(ResourceKey.of(obj))))


def _index(obj: Resource) -> tuple[str, str, str]:
    return obj.KIND, obj.metadata.namespace, obj.metadata.name
