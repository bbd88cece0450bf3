"""Spoke side of complete trust for upstream Istio meshes.

A federated mesh requests an intermediate CA from the hub: the CSR goes up
as ``<mesh>-csr`` while the private key stays on the spoke as
``<mesh>-privatekey``. Once the hub answers with ``<mesh>-intermediateca``
the two halves are joined into the ``cacerts`` secret istiod reads at start.
"""

import logging

from meshloom.controllers.runner import Controller, Request, WatchSource
from meshloom.core.constants import (
    CA_KEY_KEY,
    FEDERATION_LABEL,
    FEDERATION_OWNER_ANNOTATION,
    ISTIO_CA_SECRET,
    ISTIOD_APP_LABEL,
    TRUE,
)
from meshloom.core.errors import NotFoundError, ProtocolError
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import MESH, POD, SECRET
from meshloom.core.messages import ArtifactKind, CertificateArtifact
from meshloom.core.models import Mesh, MeshProvider
from meshloom.k8s.apply import secret_data, secret_manifest
from meshloom.security.certificate import DEFAULT_KEY_SIZE, build_intermediate_csr

logger = logging.getLogger(__name__)


class IstioTrustAgent(Controller):
    """Keep the ``cacerts`` of federated Istio meshes on one spoke in sync."""

    name = "istio-trust"

    def __init__(self, cluster_name: str, hub: ObjectStore, spoke: ObjectStore, key_size: int = DEFAULT_KEY_SIZE):
        self.cluster_name = cluster_name
        self.hub = hub
        self.spoke = spoke
        self.key_size = key_size

    def sources(self) -> list[WatchSource]:
        return [
            WatchSource(
                tag="mesh",
                store=self.hub,
                kind=MESH,
                namespace=self.cluster_name,
                predicate=lambda obj: obj.get("spec", {}).get("meshProvider") == MeshProvider.UPSTREAM_ISTIO.value,
            ),
            WatchSource(
                tag="certificate",
                store=self.hub,
                kind=SECRET,
                namespace=self.cluster_name,
                predicate=lambda obj: (obj["metadata"].get("labels") or {}).get(FEDERATION_LABEL) == TRUE,
                decode_messages=True,
            ),
        ]

    async def reconcile(self, request: Request) -> None:
        message = request.message
        if request.source == "mesh":
            await self.reconcile_mesh(request.name)
        elif isinstance(message, CertificateArtifact) and message.kind is ArtifactKind.INTERMEDIATE_CA:
            await self.install_intermediate(message.owner)

    async def reconcile_mesh(self, name: str) -> None:
        try:
            mesh = Mesh.from_dict(await self.hub.get(MESH, self.cluster_name, name))
        except NotFoundError:
            return
        if mesh.is_deleting or mesh.provider is not MeshProvider.UPSTREAM_ISTIO:
            return
        if mesh.control_plane is None or not mesh.control_plane.namespace:
            logger.debug("Mesh %s has no control plane namespace yet", mesh.get_full_name())
            return

        if mesh.peers:
            await self.request_certificate(mesh)
            await self.install_intermediate(mesh.name)
        elif not mesh.is_discovered:
            await self.remove_certificates(mesh)

    async def request_certificate(self, mesh: Mesh) -> None:
        """
        Upload a CSR for the mesh unless one is already outstanding.

        The private key is written to the spoke before the CSR leaves it, so a
        signed certificate always has a key to pair with.
        """
        assert mesh.control_plane is not None
        namespace = mesh.control_plane.namespace
        csr = CertificateArtifact(ArtifactKind.CSR, mesh.name)
        private_key = CertificateArtifact(ArtifactKind.PRIVATE_KEY, mesh.name)

        csr_exists = await self._exists(self.hub, self.cluster_name, csr.name)
        key_exists = await self._exists(self.spoke, namespace, private_key.name)
        if csr_exists and key_exists:
            return

        owner = mesh.annotations.get(FEDERATION_OWNER_ANNOTATION)
        if not owner:
            logger.debug("Mesh %s has peers but no federation owner yet", mesh.get_full_name())
            return

        revision = mesh.control_plane.revision
        service_account = f"istiod-{revision}" if revision else "istiod"
        host = f"spiffe://{mesh.effective_trust_domain}/ns/{namespace}/sa/{service_account}"
        csr_data, key_data = build_intermediate_csr([host], f"{mesh.name}-{mesh.namespace}", self.key_size)

        # A half-present pair is stale; anything signed for it is too
        await self.hub.delete(SECRET, self.cluster_name, CertificateArtifact(ArtifactKind.INTERMEDIATE_CA, mesh.name).name)
        await self.spoke.apply(secret_manifest(private_key.name, namespace, key_data))
        await self.hub.apply(
            secret_manifest(
                csr.name,
                self.cluster_name,
                csr_data,
                labels={FEDERATION_LABEL: TRUE},
                annotations={FEDERATION_OWNER_ANNOTATION: owner},
            )
        )
        logger.info("Requested intermediate CA for mesh %s", mesh.get_full_name())

    async def install_intermediate(self, mesh_name: str) -> None:
        """Join a signed intermediate CA with its private key into ``cacerts``."""
        try:
            mesh = Mesh.from_dict(await self.hub.get(MESH, self.cluster_name, mesh_name))
        except NotFoundError:
            return
        if not mesh.peers or mesh.control_plane is None:
            return
        namespace = mesh.control_plane.namespace

        try:
            intermediate = await self.hub.get(
                SECRET, self.cluster_name, CertificateArtifact(ArtifactKind.INTERMEDIATE_CA, mesh_name).name
            )
        except NotFoundError:
            return
        private_key = await self.spoke.get(SECRET, namespace, CertificateArtifact(ArtifactKind.PRIVATE_KEY, mesh_name).name)

        key_data = secret_data(private_key)
        if CA_KEY_KEY not in key_data:
            raise ProtocolError(f"private key secret of mesh {mesh.get_full_name()} has no {CA_KEY_KEY}")
        data = secret_data(intermediate)
        data[CA_KEY_KEY] = key_data[CA_KEY_KEY]

        owner = mesh.annotations.get(FEDERATION_OWNER_ANNOTATION)
        _, changed = await self.spoke.apply(
            secret_manifest(
                ISTIO_CA_SECRET,
                namespace,
                data,
                labels={FEDERATION_LABEL: TRUE},
                annotations={FEDERATION_OWNER_ANNOTATION: owner} if owner else None,
            )
        )
        if changed:
            logger.info("Installed intermediate CA for mesh %s", mesh.get_full_name())
            await self.restart_istiod(namespace)

    async def remove_certificates(self, mesh: Mesh) -> None:
        """Drop the trust material of a mesh that lost all its peers."""
        assert mesh.control_plane is not None
        namespace = mesh.control_plane.namespace

        had_cacerts = await self.spoke.delete(SECRET, namespace, ISTIO_CA_SECRET)
        await self.spoke.delete(SECRET, namespace, CertificateArtifact(ArtifactKind.PRIVATE_KEY, mesh.name).name)
        for kind in (ArtifactKind.CSR, ArtifactKind.INTERMEDIATE_CA):
            await self.hub.delete(SECRET, self.cluster_name, CertificateArtifact(kind, mesh.name).name)

        if had_cacerts:
            logger.info("Removed federated CA of mesh %s", mesh.get_full_name())
            await self.restart_istiod(namespace)

    async def restart_istiod(self, namespace: str) -> None:
        """istiod only reads ``cacerts`` at start, so its pods are recycled."""
        deleted = await self.spoke.delete_collection(POD, namespace, ISTIOD_APP_LABEL)
        logger.info("Restarted %d istiod pods in %s", deleted, namespace)

    async def _exists(self, store: ObjectStore, namespace: str, name: str) -> bool:
        try:
            await store.get(SECRET, namespace, name)
            return True
        except NotFoundError:
            return False
