"""Deployment orchestrator: installs physical control planes for logical meshes."""

import logging

from meshloom.controllers.polling import poll_until
from meshloom.controllers.runner import Controller, Request, WatchSource
from meshloom.core.constants import CROSS_NETWORK_GATEWAY, GATEWAY_OWNER_LABEL, MESH_FINALIZER
from meshloom.core.errors import NotFoundError, ValidationError
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import (
    DEPLOYMENT,
    ISTIO_GATEWAY,
    ISTIO_OPERATOR,
    MESH,
    SERVICE_MESH_CONTROL_PLANE,
    SERVICE_MESH_MEMBER_ROLL,
    ResourceKind,
    kind_of,
)
from meshloom.core.models import Mesh, MeshProvider
from meshloom.k8s.apply import namespace_manifest
from meshloom.mesh import IstioTranslator, OSSMTranslator, translator_for

logger = logging.getLogger(__name__)


class MeshDeployController(Controller):
    """
    Reconcile the logical meshes of one spoke cluster into physical objects.

    Only meshes of the configured provider are handled; discovered meshes are
    written to only once they carry federation peers and are never torn down.
    """

    def __init__(
        self,
        cluster_name: str,
        hub: ObjectStore,
        spoke: ObjectStore,
        provider: MeshProvider,
        poll_interval: float = 5.0,
        rollout_timeout: float = 300.0,
        deletion_timeout: float = 60.0,
    ):
        self.name = f"mesh-deploy-{provider.name.lower()}"
        self.cluster_name = cluster_name
        self.hub = hub
        self.spoke = spoke
        self.provider = provider
        self.translator = translator_for(provider)
        self.poll_interval = poll_interval
        self.rollout_timeout = rollout_timeout
        self.deletion_timeout = deletion_timeout

    def sources(self) -> list[WatchSource]:
        return [
            WatchSource(
                tag="mesh",
                store=self.hub,
                kind=MESH,
                namespace=self.cluster_name,
                predicate=lambda obj: obj.get("spec", {}).get("meshProvider") == self.provider.value,
            )
        ]

    async def reconcile(self, request: Request) -> None:
        try:
            mesh = Mesh.from_dict(await self.hub.get(MESH, request.namespace, request.name))
        except NotFoundError:
            return

        if mesh.provider is not self.provider:
            return

        if mesh.is_deleting:
            if mesh.has_finalizer(MESH_FINALIZER):
                await self.remove_mesh_resources(mesh)
                mesh.remove_finalizer(MESH_FINALIZER)
                await self.hub.update(mesh.to_dict())
            return

        if mesh.add_finalizer(MESH_FINALIZER):
            mesh = Mesh.from_dict(await self.hub.update(mesh.to_dict()))

        if mesh.is_discovered and not mesh.peers:
            logger.debug("Mesh %s is discovered and not federated, nothing to deploy", mesh.get_full_name())
            return

        physical = self.translator.to_physical(mesh)
        namespace = physical.control_plane["metadata"]["namespace"]

        await self.spoke.apply(namespace_manifest(namespace))
        _, changed = await self.spoke.apply(physical.control_plane)
        if changed:
            logger.info("Applied control plane for mesh %s", mesh.get_full_name())

        if isinstance(self.translator, IstioTranslator):
            assert mesh.control_plane is not None
            await self.wait_for_control_plane(namespace, mesh.control_plane.revision)

            gateways_name = physical.control_plane["metadata"]["name"] + IstioTranslator.GATEWAYS_SUFFIX
            if physical.gateways is not None:
                await self.spoke.apply(physical.gateways)
            elif not mesh.is_discovered:
                await self.spoke.delete(ISTIO_OPERATOR, namespace, gateways_name)

            if physical.cross_network_gateway is not None:
                await self.spoke.apply(physical.cross_network_gateway)
            elif await self.owns_cross_network_gateway(namespace, physical.control_plane["metadata"]["name"]):
                await self.spoke.delete(ISTIO_GATEWAY, namespace, CROSS_NETWORK_GATEWAY)
                logger.info("Removed cross-network gateway of mesh %s", mesh.get_full_name())

        if physical.member_roll is not None:
            await self.spoke.apply(physical.member_roll)

    async def wait_for_control_plane(self, namespace: str, revision: str = "") -> None:
        """Wait until the istiod deployment has fully rolled out."""
        name = f"istiod-{revision}" if revision else "istiod"

        async def rolled_out() -> bool:
            try:
                deployment = await self.spoke.get(DEPLOYMENT, namespace, name)
            except NotFoundError:
                return False
            replicas = (deployment.get("spec") or {}).get("replicas", 1)
            status = deployment.get("status") or {}
            return status.get("readyReplicas", 0) == replicas and status.get("updatedReplicas", 0) == replicas

        await poll_until(rolled_out, self.poll_interval, self.rollout_timeout, f"the {name} deployment in {namespace} to start")

    async def owns_cross_network_gateway(self, namespace: str, owner: str) -> bool:
        """Whether the cross-network gateway in ``namespace`` was created for control plane ``owner``."""
        try:
            gateway = await self.spoke.get(ISTIO_GATEWAY, namespace, CROSS_NETWORK_GATEWAY)
        except NotFoundError:
            return False
        labels = gateway["metadata"].get("labels") or {}
        if labels.get(GATEWAY_OWNER_LABEL) != owner:
            logger.debug("Cross-network gateway in %s belongs to %s, not %s", namespace, labels.get(GATEWAY_OWNER_LABEL), owner)
            return False
        return True

    async def remove_mesh_resources(self, mesh: Mesh) -> None:
        """Delete the physical objects of a mesh and wait for them to go away."""
        if mesh.is_discovered:
            logger.info("Mesh %s is discovered, leaving its physical objects in place", mesh.get_full_name())
            return
        try:
            targets = self._physical_keys(mesh)
        except ValidationError as e:
            # Nothing can have been deployed for an invalid mesh
            logger.warning("Skipping cleanup of invalid mesh %s: %s", mesh.get_full_name(), e)
            return

        # The control plane comes last and names the gateway owner
        owner = targets[-1][2]
        owned = []
        for kind, namespace, name in targets:
            if kind is ISTIO_GATEWAY and not await self.owns_cross_network_gateway(namespace, owner):
                continue
            owned.append((kind, namespace, name))
        targets = owned

        for kind, namespace, name in targets:
            await self.spoke.delete(kind, namespace, name)

        async def all_gone() -> bool:
            for kind, namespace, name in targets:
                try:
                    await self.spoke.get(kind, namespace, name)
                    return False
                except NotFoundError:
                    continue
            return True

        await poll_until(all_gone, self.poll_interval, self.deletion_timeout, f"physical objects of mesh {mesh.get_full_name()} to be deleted")
        logger.info("Removed physical objects of mesh %s", mesh.get_full_name())

    def _physical_keys(self, mesh: Mesh) -> list[tuple[ResourceKind, str, str]]:
        """Keys of every object this mesh may have produced, dependents first."""
        physical = self.translator.to_physical(mesh)
        name = physical.control_plane["metadata"]["name"]
        namespace = physical.control_plane["metadata"]["namespace"]

        if isinstance(self.translator, OSSMTranslator):
            return [
                (SERVICE_MESH_MEMBER_ROLL, namespace, OSSMTranslator.MEMBER_ROLL_NAME),
                (SERVICE_MESH_CONTROL_PLANE, namespace, name),
            ]
        return [
            (ISTIO_GATEWAY, namespace, CROSS_NETWORK_GATEWAY),
            (ISTIO_OPERATOR, namespace, name + IstioTranslator.GATEWAYS_SUFFIX),
            (kind_of(physical.control_plane), namespace, name),
        ]

