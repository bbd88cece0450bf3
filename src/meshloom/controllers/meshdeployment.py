"""MeshDeployment fan-out: one logical mesh per target cluster."""

import copy
import logging

from meshloom.controllers.runner import Controller, Request, WatchSource
from meshloom.core.constants import (
    DEFAULT_TRUST_DOMAIN,
    MESH_DEPLOYMENT_FINALIZER,
    MESH_DEPLOYMENT_LABEL,
    MESH_DEPLOYMENT_NAMESPACE_LABEL,
)
from meshloom.core.errors import MissingFieldError, NotFoundError
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import MESH, MESH_DEPLOYMENT
from meshloom.core.models import ControlPlane, Mesh, MeshDeployment, MeshProvider
from meshloom.k8s.apply import merge_for_apply, retry_on_conflict

logger = logging.getLogger(__name__)


class MeshDeploymentController(Controller):
    """Keep the meshes generated from each MeshDeployment in sync with it."""

    name = "mesh-deployment"

    def __init__(self, hub: ObjectStore):
        self.hub = hub

    def sources(self) -> list[WatchSource]:
        return [WatchSource(tag="mesh-deployment", store=self.hub, kind=MESH_DEPLOYMENT)]

    async def reconcile(self, request: Request) -> None:
        try:
            deployment = MeshDeployment.from_dict(await self.hub.get(MESH_DEPLOYMENT, request.namespace, request.name))
        except NotFoundError:
            return

        if deployment.is_deleting:
            if deployment.has_finalizer(MESH_DEPLOYMENT_FINALIZER):
                await self.remove_meshes(deployment)
                deployment.remove_finalizer(MESH_DEPLOYMENT_FINALIZER)
                await self.hub.update(deployment.to_dict())
            return

        if deployment.add_finalizer(MESH_DEPLOYMENT_FINALIZER):
            deployment = MeshDeployment.from_dict(await self.hub.update(deployment.to_dict()))

        if deployment.provider is None:
            raise MissingFieldError("meshProvider", "meshDeployment")
        if deployment.control_plane is None:
            raise MissingFieldError("controlPlane", "meshDeployment")

        for cluster in deployment.clusters:
            await self.apply_mesh(deployment, cluster)

        # Meshes of clusters dropped from the deployment
        for obj in await self.hub.list(MESH, label_selector=_owned_by(deployment)):
            metadata = obj["metadata"]
            if metadata["namespace"] not in deployment.clusters:
                if await self.hub.delete(MESH, metadata["namespace"], metadata["name"]):
                    logger.info("Removed mesh %s/%s no longer targeted by %s", metadata["namespace"], metadata["name"], deployment.name)

    def build_mesh(self, deployment: MeshDeployment, cluster: str) -> Mesh:
        """Desired mesh for one target cluster."""
        name = deployment.mesh_name(cluster)
        if deployment.provider is MeshProvider.UPSTREAM_ISTIO:
            # Federated upstream meshes share one CA and therefore one trust domain
            trust_domain = DEFAULT_TRUST_DOMAIN
        else:
            trust_domain = f"{name}.local"

        control_plane = copy.deepcopy(deployment.control_plane) or ControlPlane()
        control_plane.peers = []
        return Mesh(
            name=name,
            namespace=cluster,
            labels={MESH_DEPLOYMENT_LABEL: deployment.name, MESH_DEPLOYMENT_NAMESPACE_LABEL: deployment.namespace},
            provider=deployment.provider,
            cluster=cluster,
            control_plane=control_plane,
            mesh_config=copy.deepcopy(deployment.mesh_config),
            member_namespaces=list(deployment.member_namespaces),
            trust_domain=trust_domain,
        )

    async def apply_mesh(self, deployment: MeshDeployment, cluster: str) -> None:
        """Create or update the mesh of one cluster, keeping its federation peers."""
        desired = self.build_mesh(deployment, cluster)

        async def write() -> None:
            try:
                current = await self.hub.get(MESH, cluster, desired.name)
            except NotFoundError:
                await self.hub.apply(desired.to_dict())
                logger.info("Created mesh %s/%s for %s", cluster, desired.name, deployment.name)
                return

            assert desired.control_plane is not None
            desired.control_plane.peers = list(Mesh.from_dict(current).peers)
            merged, changed = merge_for_apply(current, desired.to_dict())
            if changed:
                await self.hub.update(merged)
                logger.info("Updated mesh %s/%s for %s", cluster, desired.name, deployment.name)

        await retry_on_conflict(write)

    async def remove_meshes(self, deployment: MeshDeployment) -> None:
        owned = await self.hub.list(MESH, label_selector=_owned_by(deployment))
        names = sorted((obj["metadata"]["namespace"], obj["metadata"]["name"]) for obj in owned)
        for namespace, name in names:
            if await self.hub.delete(MESH, namespace, name):
                logger.info("Deleted mesh %s/%s of %s", namespace, name, deployment.name)


def _owned_by(deployment: MeshDeployment) -> str:
    """Label selector for the meshes generated from ``deployment``."""
    return f"{MESH_DEPLOYMENT_LABEL}={deployment.name},{MESH_DEPLOYMENT_NAMESPACE_LABEL}={deployment.namespace}"
