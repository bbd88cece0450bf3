"""Shared metadata handling for logical resources."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Resource:
    """Kubernetes metadata common to every logical resource."""

    name: str
    namespace: str = ""

    # Kubernetes metadata
    uid: str | None = None
    resource_version: str | None = None
    deletion_timestamp: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)

    def get_full_name(self) -> str:
        """Get the namespace/name key of the resource."""
        return f"{self.namespace}/{self.name}"

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer, returning True if the resource changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer, returning True if the resource changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True

    @staticmethod
    def metadata_kwargs(k8s_object: dict[str, Any]) -> dict[str, Any]:
        """Extract constructor arguments from an object's metadata."""
        metadata = k8s_object.get("metadata", {})
        return {
            "name": metadata.get("name", ""),
            "namespace": metadata.get("namespace", ""),
            "uid": metadata.get("uid"),
            "resource_version": metadata.get("resourceVersion"),
            "deletion_timestamp": metadata.get("deletionTimestamp"),
            "labels": dict(metadata.get("labels") or {}),
            "annotations": dict(metadata.get("annotations") or {}),
            "finalizers": list(metadata.get("finalizers") or []),
        }

    def metadata_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.uid:
            metadata["uid"] = self.uid
        if self.deletion_timestamp:
            metadata["deletionTimestamp"] = self.deletion_timestamp
        return metadata
