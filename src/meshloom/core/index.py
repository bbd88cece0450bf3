"""Lookup of logical meshes by the physical control plane they stand for."""

from meshloom.core.models import Mesh

PhysicalKey = tuple[str, str, str]


def physical_key(mesh: Mesh) -> PhysicalKey | None:
    """(cluster namespace, control-plane namespace, physical name) of a mesh."""
    if mesh.control_plane is None or not mesh.control_plane.namespace:
        return None
    if mesh.is_discovered and mesh.discovered_from is not None:
        return mesh.namespace, mesh.discovered_from[0], mesh.discovered_from[1]
    return mesh.namespace, mesh.control_plane.namespace, mesh.physical_name()


class MeshIndex:
    """
    Meshes keyed by hub key and by physical key.

    The index is updated one mesh at a time from watch events, so ownership
    questions are answered without re-listing every mesh.
    """

    def __init__(self) -> None:
        self._meshes: dict[tuple[str, str], Mesh] = {}
        self._by_physical: dict[PhysicalKey, set[tuple[str, str]]] = {}

    @classmethod
    def from_meshes(cls, meshes: list[Mesh]) -> "MeshIndex":
        index = cls()
        for mesh in meshes:
            index.upsert(mesh)
        return index

    def upsert(self, mesh: Mesh) -> None:
        self.remove(mesh.namespace, mesh.name)
        key = (mesh.namespace, mesh.name)
        self._meshes[key] = mesh
        physical = physical_key(mesh)
        if physical is not None:
            self._by_physical.setdefault(physical, set()).add(key)

    def remove(self, namespace: str, name: str) -> None:
        key = (namespace, name)
        mesh = self._meshes.pop(key, None)
        if mesh is None:
            return
        physical = physical_key(mesh)
        if physical is not None and physical in self._by_physical:
            self._by_physical[physical].discard(key)
            if not self._by_physical[physical]:
                del self._by_physical[physical]

    def get(self, namespace: str, name: str) -> Mesh | None:
        return self._meshes.get((namespace, name))

    def by_physical(self, cluster: str, namespace: str, name: str) -> list[Mesh]:
        """Meshes representing the physical object ``namespace/name`` on ``cluster``."""
        keys = self._by_physical.get((cluster, namespace, name), set())
        return sorted((self._meshes[key] for key in keys), key=lambda m: m.name)

    def in_namespace(self, namespace: str) -> list[Mesh]:
        return [mesh for (ns, _), mesh in sorted(self._meshes.items()) if ns == namespace]

    def __len__(self) -> int:
        return len(self._meshes)
