"""Discovery reconciler: mirrors existing physical meshes as logical meshes."""

import logging
from typing import Any

from meshloom.controllers.runner import Controller, Request, WatchSource
from meshloom.core.errors import NotFoundError
from meshloom.core.index import MeshIndex, physical_key
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import (
    ISTIO_OPERATOR,
    MESH,
    NAMESPACE,
    SERVICE_MESH_CONTROL_PLANE,
    SERVICE_MESH_MEMBER_ROLL,
)
from meshloom.core.models import Mesh, MeshProvider, discovered_mesh_name
from meshloom.k8s.apply import merge_for_apply, retry_on_conflict
from meshloom.mesh import IstioTranslator, OSSMTranslator, translator_for

logger = logging.getLogger(__name__)


class MeshDiscoveryController(Controller):
    """
    Create, update and retract discovered meshes for one spoke cluster.

    A physical control plane that a user-authored mesh already accounts for
    is never discovered: at most one logical mesh represents a physical
    object, and user intent wins.
    """

    def __init__(self, cluster_name: str, hub: ObjectStore, spoke: ObjectStore, provider: MeshProvider):
        self.name = f"mesh-discovery-{provider.name.lower()}"
        self.cluster_name = cluster_name
        self.hub = hub
        self.spoke = spoke
        self.provider = provider
        self.translator = translator_for(provider)
        if provider is MeshProvider.UPSTREAM_ISTIO:
            self.physical_kind = ISTIO_OPERATOR
        else:
            self.physical_kind = SERVICE_MESH_CONTROL_PLANE
        self._index: MeshIndex | None = None

    def sources(self) -> list[WatchSource]:
        sources = [
            WatchSource(tag="physical", store=self.spoke, kind=self.physical_kind),
            WatchSource(tag="mesh", store=self.hub, kind=MESH, namespace=self.cluster_name),
        ]
        if self.provider is MeshProvider.OPENSHIFT:
            sources.append(WatchSource(tag="member-roll", store=self.spoke, kind=SERVICE_MESH_MEMBER_ROLL))
        return sources

    async def reconcile(self, request: Request) -> None:
        if request.source == "mesh":
            await self._index_mesh(request.name)
        elif request.source == "member-roll":
            assert request.namespace is not None
            for control_plane in await self.spoke.list(self.physical_kind, request.namespace):
                await self.discover(request.namespace, control_plane["metadata"]["name"])
        else:
            assert request.namespace is not None
            await self.discover(request.namespace, request.name)

    async def discover(self, namespace: str, name: str) -> None:
        """Reconcile the discovered mesh of the physical object ``namespace/name``."""
        physical = await self._get_or_none(namespace, name)

        if self.provider is MeshProvider.UPSTREAM_ISTIO and name.endswith(IstioTranslator.GATEWAYS_SUFFIX):
            base_name = name.removesuffix(IstioTranslator.GATEWAYS_SUFFIX)
            if await self._get_or_none(namespace, base_name) is not None:
                # Companion gateways belong to the control plane's mesh
                await self.discover(namespace, base_name)
                return

        if physical is None or physical.get("metadata", {}).get("deletionTimestamp"):
            await self.retract(namespace, name)
            return

        index = await self._ensure_index()
        if not self._claimed_by_user(index, physical):
            # A miss may come from a stale index; confirm against a fresh listing
            index = await self._refresh_index()
        if self._claimed_by_user(index, physical):
            logger.debug("%s %s/%s belongs to a user-authored mesh", self.physical_kind.kind, namespace, name)
            return

        mesh = await self._translate(physical)

        async def write() -> tuple[dict[str, Any], bool]:
            try:
                current = await self.hub.get(MESH, mesh.namespace, mesh.name)
            except NotFoundError:
                return await self.hub.apply(mesh.to_dict())
            # Peers are owned by the federation controller
            assert mesh.control_plane is not None
            mesh.control_plane.peers = list(Mesh.from_dict(current).peers)
            merged, changed = merge_for_apply(current, mesh.to_dict())
            if changed:
                current = await self.hub.update(merged)
            return current, changed

        observed, changed = await retry_on_conflict(write)
        index.upsert(Mesh.from_dict(observed))
        if changed:
            logger.info("Discovered mesh %s/%s", mesh.namespace, mesh.name)

    async def retract(self, namespace: str, name: str) -> None:
        """Delete the discovered mesh of a physical object that went away."""
        index = await self._ensure_index()
        names = {
            mesh.name
            for mesh in index.by_physical(self.cluster_name, namespace, name)
            if mesh.is_discovered
        }
        if self.provider is MeshProvider.OPENSHIFT:
            names.add(discovered_mesh_name(self.cluster_name, namespace, name))

        for mesh_name in sorted(names):
            if await self.hub.delete(MESH, self.cluster_name, mesh_name):
                logger.info("Removed discovered mesh %s/%s", self.cluster_name, mesh_name)
            index.remove(self.cluster_name, mesh_name)

    async def _translate(self, physical: dict[str, Any]) -> Mesh:
        metadata = physical["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]

        if isinstance(self.translator, OSSMTranslator):
            try:
                member_roll = await self.spoke.get(SERVICE_MESH_MEMBER_ROLL, namespace, OSSMTranslator.MEMBER_ROLL_NAME)
            except NotFoundError:
                member_roll = None
            members = OSSMTranslator.member_namespaces(member_roll)
            return self.translator.to_logical(physical, members, self.cluster_name)

        revision = (physical.get("spec") or {}).get("revision", "")
        selector = "istio-injection=enabled"
        if revision:
            selector += f",istio.io/rev={revision}"
        members = [ns["metadata"]["name"] for ns in await self.spoke.list(NAMESPACE, label_selector=selector)]
        companion = await self._get_or_none(namespace, name + IstioTranslator.GATEWAYS_SUFFIX)
        return self.translator.to_logical(physical, members, self.cluster_name, companion)

    def _claimed_by_user(self, index: MeshIndex, physical: dict[str, Any]) -> bool:
        metadata = physical["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]
        revision = (physical.get("spec") or {}).get("revision", "")

        candidates = index.by_physical(self.cluster_name, namespace, name)
        if name.endswith(IstioTranslator.GATEWAYS_SUFFIX):
            candidates += index.by_physical(
                self.cluster_name, namespace, name.removesuffix(IstioTranslator.GATEWAYS_SUFFIX)
            )

        for mesh in candidates:
            if mesh.is_discovered or mesh.provider is not self.provider:
                continue
            if self.provider is MeshProvider.UPSTREAM_ISTIO:
                assert mesh.control_plane is not None
                if mesh.control_plane.revision != revision:
                    continue
            return True
        return False

    async def _index_mesh(self, name: str) -> None:
        """Track a hub mesh; a user-authored mesh displaces discovered duplicates."""
        index = await self._ensure_index()
        try:
            mesh = Mesh.from_dict(await self.hub.get(MESH, self.cluster_name, name))
        except NotFoundError:
            index.remove(self.cluster_name, name)
            return
        index.upsert(mesh)

        key = physical_key(mesh)
        if mesh.is_discovered or mesh.is_deleting or mesh.provider is not self.provider or key is None:
            return
        for duplicate in index.by_physical(*key):
            if duplicate.is_discovered:
                logger.info("Mesh %s/%s now claims the physical object of %s", mesh.namespace, mesh.name, duplicate.name)
                await self.hub.delete(MESH, self.cluster_name, duplicate.name)
                index.remove(self.cluster_name, duplicate.name)

    async def _ensure_index(self) -> MeshIndex:
        if self._index is None:
            return await self._refresh_index()
        return self._index

    async def _refresh_index(self) -> MeshIndex:
        meshes = await self.hub.list(MESH, self.cluster_name)
        self._index = MeshIndex.from_meshes([Mesh.from_dict(m) for m in meshes])
        return self._index

    async def _get_or_none(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return await self.spoke.get(self.physical_kind, namespace, name)
        except NotFoundError:
            return None

