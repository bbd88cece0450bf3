"""Shared fixtures: an in-memory object store standing in for a cluster."""

import copy
import itertools
from collections.abc import AsyncIterator
from typing import Any

import pytest

from meshloom.core.errors import ConflictError, NotFoundError
from meshloom.core.interfaces import ObjectStore, WatchEvent
from meshloom.core.kinds import ResourceKind
from meshloom.k8s.apply import merge_for_apply

Key = tuple[str, str, str]


def _matches(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        term = term.strip()
        if "!=" in term:
            key, value = term.split("!=", 1)
            if labels.get(key) == value:
                return False
        elif "=" in term:
            key, value = term.split("=", 1)
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


class MemoryStore(ObjectStore):
    """
    Object store keeping objects in a dict.

    Follows the API server where controllers depend on it: resource versions
    are checked on update, and deleting an object with finalizers only marks
    it for deletion.
    """

    def __init__(self) -> None:
        self.objects: dict[Key, dict[str, Any]] = {}
        self.log: list[tuple[str, str, str, str]] = []
        self.conflicts = 0
        self._versions = itertools.count(1)

    @staticmethod
    def _key(kind: str, namespace: str | None, name: str) -> Key:
        return kind, namespace or "", name

    def _key_of(self, obj: dict[str, Any]) -> Key:
        metadata = obj["metadata"]
        return self._key(obj["kind"], metadata.get("namespace"), metadata["name"])

    def _store(self, key: Key, obj: dict[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("uid", f"uid-{key[2]}")
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def add(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object without recording a write."""
        return self._store(self._key_of(obj), obj)

    def find(self, kind: ResourceKind, namespace: str | None, name: str) -> dict[str, Any] | None:
        obj = self.objects.get(self._key(kind.kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def names(self, kind: ResourceKind, namespace: str | None = None) -> list[str]:
        return sorted(
            name for (k, ns, name) in self.objects if k == kind.kind and (namespace is None or ns == namespace)
        )

    def writes(self, verb: str | None = None) -> list[tuple[str, str, str, str]]:
        return [entry for entry in self.log if verb is None or entry[0] == verb]

    async def get(self, kind: ResourceKind, namespace: str | None, name: str) -> dict[str, Any]:
        obj = self.find(kind, namespace, name)
        if obj is None:
            raise NotFoundError(kind.kind, namespace, name)
        return obj

    async def list(
        self, kind: ResourceKind, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items())
            if k == kind.kind
            and (namespace is None or ns == namespace)
            and _matches(obj["metadata"].get("labels") or {}, label_selector)
        ]

    async def apply(self, desired: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        key = self._key_of(desired)
        existing = self.objects.get(key)
        if existing is None:
            self.log.append(("create", *key))
            return self._store(key, desired), True

        merged, changed = merge_for_apply(existing, desired)
        if not changed:
            return copy.deepcopy(existing), False
        self.log.append(("update", *key))
        return self._store(key, merged), True

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        key = self._key_of(obj)
        existing = self.objects.get(key)
        if existing is None:
            raise NotFoundError(key[0], key[1], key[2])
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictError(f"{key} was modified")
        version = obj["metadata"].get("resourceVersion")
        if version and version != existing["metadata"]["resourceVersion"]:
            raise ConflictError(f"{key} was modified")

        self.log.append(("update", *key))
        stored = self._store(key, obj)
        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"].get("finalizers"):
            del self.objects[key]
        return stored

    async def delete(self, kind: ResourceKind, namespace: str | None, name: str) -> bool:
        key = self._key(kind.kind, namespace, name)
        obj = self.objects.get(key)
        if obj is None:
            return False
        self.log.append(("delete", *key))
        if obj["metadata"].get("finalizers"):
            obj["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        else:
            del self.objects[key]
        return True

    async def delete_collection(self, kind: ResourceKind, namespace: str, label_selector: str) -> int:
        doomed = [obj["metadata"]["name"] for obj in await self.list(kind, namespace, label_selector)]
        for name in doomed:
            await self.delete(kind, namespace, name)
        return len(doomed)

    async def watch(self, kind: ResourceKind, namespace: str | None = None) -> AsyncIterator[WatchEvent]:
        for obj in await self.list(kind, namespace):
            yield WatchEvent(type="ADDED", object=obj)


@pytest.fixture
def hub() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def spoke() -> MemoryStore:
    return MemoryStore()
