"""Core interfaces for meshloom."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from meshloom.core.kinds import ResourceKind
from meshloom.core.models import Mesh


@dataclass
class PhysicalMesh:
    """Vendor-specific objects that implement one logical mesh."""

    control_plane: dict[str, Any]
    gateways: dict[str, Any] | None = None
    cross_network_gateway: dict[str, Any] | None = None
    member_roll: dict[str, Any] | None = None

    def objects(self) -> list[dict[str, Any]]:
        """All manifests, in apply order."""
        candidates = [self.control_plane, self.gateways, self.cross_network_gateway, self.member_roll]
        return [obj for obj in candidates if obj is not None]


@dataclass(frozen=True)
class WatchEvent:
    type: str  # ADDED, MODIFIED or DELETED
    object: dict[str, Any] = field(default_factory=dict)


class ObjectStore(ABC):
    """Keyed access to the objects of one cluster."""

    @abstractmethod
    async def get(self, kind: ResourceKind, namespace: str | None, name: str) -> dict[str, Any]:
        """Get an object, raising NotFoundError if it does not exist."""
        pass

    @abstractmethod
    async def list(
        self, kind: ResourceKind, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        """List objects, optionally scoped to a namespace and filtered by labels."""
        pass

    @abstractmethod
    async def apply(self, desired: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """
        Create or update an object so that it matches the desired state.

        Labels and annotations are merged into the existing object; the
        payload (spec, data) is replaced. Nothing is written when the
        existing object already matches.

        Args:
            desired: Complete manifest including apiVersion and kind.

        Returns:
            The observed object and whether anything was written.
        """
        pass

    @abstractmethod
    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an object, honouring metadata.resourceVersion.

        Raises:
            ConflictError: The object changed since it was read.
        """
        pass

    @abstractmethod
    async def delete(self, kind: ResourceKind, namespace: str | None, name: str) -> bool:
        """Delete an object, returning False if it was already absent."""
        pass

    @abstractmethod
    async def delete_collection(self, kind: ResourceKind, namespace: str, label_selector: str) -> int:
        """Delete every object matching the selector, returning how many were deleted."""
        pass

    @abstractmethod
    def watch(self, kind: ResourceKind, namespace: str | None = None) -> AsyncIterator[WatchEvent]:
        """Stream change events for a kind."""
        pass


class MeshTranslator(ABC):
    """Bidirectional mapping between logical meshes and one physical backend."""

    @abstractmethod
    def to_physical(self, mesh: Mesh) -> PhysicalMesh:
        """Translate a logical mesh into physical manifests.

        Raises:
            MissingFieldError: cluster, controlPlane or its namespace is empty.
        """
        pass

    @abstractmethod
    def to_logical(
        self,
        primary: dict[str, Any],
        member_namespaces: list[str],
        cluster: str,
        companion: dict[str, Any] | None = None,
    ) -> Mesh:
        """Synthesize a discovered logical mesh from a physical control plane.

        Args:
            primary: The observed control-plane object.
            member_namespaces: Namespaces enrolled in the mesh, possibly empty.
            cluster: Name of the cluster the object was observed on.
            companion: Optional companion gateways object of the same mesh.
        """
        pass
