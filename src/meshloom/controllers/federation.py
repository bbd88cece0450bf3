"""Hub side of the trust federation protocol.

The hub reacts to three kinds of input:
- MeshFederation objects: shared CA bootstrap, peer declaration and removal
- ``<mesh>-csr`` secrets uploaded by spokes: signing with the shared CA
- ``-ep4-`` endpoint and ``-mesh-ca`` config maps uploaded by spokes:
  assembling the ``<peer>-to-<local>`` configuration for the peer cluster
"""

import logging
from typing import Any

from meshloom.controllers.runner import Controller, Request, WatchSource
from meshloom.core.constants import (
    FEDERATION_LABEL,
    FEDERATION_OWNER_ANNOTATION,
    MESH_FEDERATION_FINALIZER,
    MESH_NAMESPACE_KEY,
    PEER_ENDPOINT_KEY,
    PEER_NAMESPACE_KEY,
    PEER_TRUST_DOMAIN_KEY,
    ROOT_CERT_KEY,
    TRUE,
)
from meshloom.core.errors import MissingFieldError, NotFoundError, ProtocolError, ValidationError
from meshloom.core.index import MeshIndex
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import CONFIG_MAP, MESH, MESH_FEDERATION, SECRET
from meshloom.core.messages import (
    ArtifactKind,
    CertificateArtifact,
    EndpointMessage,
    FederationConfigMessage,
    MeshCAMessage,
    decode_message,
)
from meshloom.core.models import Mesh, MeshFederation, Peer, TrustType
from meshloom.k8s.apply import config_map_manifest, retry_on_conflict, secret_data, secret_manifest
from meshloom.security.certificate import DEFAULT_KEY_SIZE, build_intermediate_ca, build_root_ca

logger = logging.getLogger(__name__)


def _is_federation_resource(obj: dict[str, Any]) -> bool:
    return (obj.get("metadata", {}).get("labels") or {}).get(FEDERATION_LABEL) == TRUE


class MeshFederationController(Controller):
    """Drive MeshFederations and the hub-side federation message exchange."""

    name = "mesh-federation"

    def __init__(self, hub: ObjectStore, key_size: int = DEFAULT_KEY_SIZE):
        self.hub = hub
        self.key_size = key_size

    def sources(self) -> list[WatchSource]:
        return [
            WatchSource(tag="federation", store=self.hub, kind=MESH_FEDERATION),
            WatchSource(
                tag="certificate",
                store=self.hub,
                kind=SECRET,
                predicate=_is_federation_resource,
                decode_messages=True,
            ),
            WatchSource(
                tag="endpoint",
                store=self.hub,
                kind=CONFIG_MAP,
                predicate=_is_federation_resource,
                decode_messages=True,
            ),
        ]

    async def reconcile(self, request: Request) -> None:
        message = request.message
        namespace = request.namespace or ""

        if isinstance(message, CertificateArtifact):
            if message.kind is ArtifactKind.CSR:
                await self.sign_csr(namespace, message)
        elif isinstance(message, EndpointMessage):
            await self.fan_in(namespace, message)
        elif isinstance(message, MeshCAMessage):
            await self.fan_in_namespace(namespace)
        elif message is None and request.source == "federation":
            await self.reconcile_federation(namespace, request.name)

    async def reconcile_federation(self, namespace: str, name: str) -> None:
        try:
            federation = MeshFederation.from_dict(await self.hub.get(MESH_FEDERATION, namespace, name))
        except NotFoundError:
            return

        if federation.is_deleting:
            if federation.has_finalizer(MESH_FEDERATION_FINALIZER):
                await self.remove_federation(federation)
                federation.remove_finalizer(MESH_FEDERATION_FINALIZER)
                await self.hub.update(federation.to_dict())
            return

        if federation.add_finalizer(MESH_FEDERATION_FINALIZER):
            federation = MeshFederation.from_dict(await self.hub.update(federation.to_dict()))

        # Reject malformed pairs before touching anything
        federation.validate()

        if federation.trust_type is TrustType.COMPLETE:
            await self.ensure_shared_ca(federation)
        else:
            logger.info("Federation %s uses limited trust, no shared CA needed", federation.get_full_name())

        missing: list[NotFoundError] = []
        for mesh_peer in federation.mesh_peers:
            first, second = mesh_peer.peers
            try:
                first_mesh = Mesh.from_dict(await self.hub.get(MESH, first.cluster, first.name))
                second_mesh = Mesh.from_dict(await self.hub.get(MESH, second.cluster, second.name))
            except NotFoundError as e:
                missing.append(e)
                continue

            required = federation.trust_type.required_provider
            if first_mesh.provider is not required or second_mesh.provider is not required:
                logger.warning(
                    "Skipping peers %s/%s and %s/%s of %s: %s trust requires both meshes to use %s",
                    first.cluster,
                    first.name,
                    second.cluster,
                    second.name,
                    federation.get_full_name(),
                    federation.trust_type.value,
                    required.value,
                )
                continue

            await self.add_peer(first, second, federation)
            await self.add_peer(second, first, federation)

        await self.prune_peers(federation)

        if missing:
            # Retry once the meshes exist
            raise missing[0]

    async def ensure_shared_ca(self, federation: MeshFederation) -> None:
        """Create the federation's root CA secret unless it already exists."""
        try:
            await self.hub.get(SECRET, federation.namespace, federation.shared_ca_name)
            return
        except NotFoundError:
            pass

        manifest = secret_manifest(
            federation.shared_ca_name,
            federation.namespace,
            build_root_ca(self.key_size),
            labels={FEDERATION_LABEL: TRUE},
            annotations={FEDERATION_OWNER_ANNOTATION: federation.owner_reference},
        )
        if federation.uid:
            manifest["metadata"]["ownerReferences"] = [
                {
                    "apiVersion": MESH_FEDERATION.api_version,
                    "kind": MESH_FEDERATION.kind,
                    "name": federation.name,
                    "uid": federation.uid,
                }
            ]
        await self.hub.apply(manifest)
        logger.info("Created shared CA for federation %s", federation.get_full_name())

    async def add_peer(self, target: Peer, peer: Peer, federation: MeshFederation) -> None:
        """Record ``peer`` on the mesh ``target``, re-reading it before every write.

        The first federation to declare a pair owns it; a later federation
        declaring the same pair only takes over once the owner lets go.
        """

        async def write() -> None:
            mesh = Mesh.from_dict(await self.hub.get(MESH, target.cluster, target.name))
            if mesh.control_plane is None:
                raise MissingFieldError("controlPlane")
            changed = mesh.control_plane.add_peer(peer)
            if peer.key not in mesh.peer_owners:
                changed = mesh.record_peer_owner(peer, federation.owner_reference) or changed
            changed = mesh.refresh_federation_owner() or changed
            if changed:
                await self.hub.update(mesh.to_dict())
                logger.info("Mesh %s/%s now peers with %s/%s", target.cluster, target.name, peer.cluster, peer.name)

        await retry_on_conflict(write)

    async def prune_peers(self, federation: MeshFederation) -> None:
        """Release peerings owned by the federation that it no longer declares."""
        declared = federation.declared_pairs()
        for mesh in await self._peered_meshes(federation):
            for peer in list(mesh.peers):
                if mesh.owner_of(peer) != federation.owner_reference:
                    continue
                if frozenset({mesh.as_peer(), peer}) not in declared:
                    await self.release_pair(mesh.as_peer(), peer, federation)

    async def remove_federation(self, federation: MeshFederation) -> None:
        pairs = set()
        for mesh in await self._peered_meshes(federation):
            for peer in mesh.peers:
                if mesh.owner_of(peer) == federation.owner_reference:
                    pairs.add(frozenset({mesh.as_peer(), peer}))

        for pair in pairs:
            first, second = sorted(pair, key=lambda p: (p.cluster, p.name))
            await self.release_pair(first, second, federation)

        if federation.trust_type is TrustType.COMPLETE:
            if await self.hub.delete(SECRET, federation.namespace, federation.shared_ca_name):
                logger.info("Deleted shared CA of federation %s", federation.get_full_name())

    async def release_pair(self, first: Peer, second: Peer, federation: MeshFederation) -> None:
        """Hand a pair to another federation declaring it, or undo the peering."""
        successor = await self._successor(frozenset({first, second}), federation)
        if successor is None:
            await self.remove_pair(first, second, federation)
            return

        for target, peer in ((first, second), (second, first)):
            mesh, owner_changed = await self._set_peering(target, peer, successor.owner_reference)
            if mesh is not None and owner_changed and not mesh.is_discovered:
                await self._reset_certificates(target)
        logger.info(
            "Peering of %s/%s and %s/%s now belongs to federation %s",
            first.cluster,
            first.name,
            second.cluster,
            second.name,
            successor.get_full_name(),
        )

    async def remove_pair(self, first: Peer, second: Peer, federation: MeshFederation) -> None:
        """Undo the peering of two meshes on the hub."""
        for target, peer in ((first, second), (second, first)):
            mesh, owner_changed = await self._set_peering(target, peer, None)
            await self.hub.delete(CONFIG_MAP, peer.cluster, FederationConfigMessage(peer=peer.name, local=target.name).name)

            # A new owner means a new shared CA; no owner means no federated CA
            if mesh is not None and owner_changed and not mesh.is_discovered:
                await self._reset_certificates(target)

        logger.info(
            "Removed peering of %s/%s and %s/%s", first.cluster, first.name, second.cluster, second.name
        )

    async def _set_peering(self, target: Peer, peer: Peer, owner: str | None) -> tuple[Mesh | None, bool]:
        """
        Move the peering of ``target`` with ``peer`` to ``owner``, or drop it when ``owner`` is None.

        Returns:
            The written mesh (None if it is gone) and whether its
            federation-owner annotation changed.
        """
        result: list[tuple[Mesh | None, bool]] = [(None, False)]

        async def write() -> None:
            try:
                mesh = Mesh.from_dict(await self.hub.get(MESH, target.cluster, target.name))
            except NotFoundError:
                result[0] = (None, False)
                return
            previous = mesh.annotations.get(FEDERATION_OWNER_ANNOTATION)
            if owner is None:
                changed = mesh.control_plane is not None and mesh.control_plane.remove_peer(peer)
            elif peer in mesh.peers:
                changed = False
            else:
                result[0] = (mesh, False)
                return
            changed = mesh.record_peer_owner(peer, owner) or changed
            changed = mesh.refresh_federation_owner() or changed
            if changed:
                mesh = Mesh.from_dict(await self.hub.update(mesh.to_dict()))
            result[0] = (mesh, mesh.annotations.get(FEDERATION_OWNER_ANNOTATION) != previous)

        await retry_on_conflict(write)
        return result[0]

    async def _reset_certificates(self, target: Peer) -> None:
        for kind in (ArtifactKind.CSR, ArtifactKind.INTERMEDIATE_CA):
            await self.hub.delete(SECRET, target.cluster, CertificateArtifact(kind, target.name).name)

    async def _successor(self, pair: frozenset[Peer], federation: MeshFederation) -> MeshFederation | None:
        """Another live federation that declares ``pair``, if any."""
        candidates = []
        for obj in await self.hub.list(MESH_FEDERATION):
            try:
                other = MeshFederation.from_dict(obj)
            except ValidationError:
                continue
            if other.owner_reference == federation.owner_reference or other.is_deleting:
                continue
            if pair in other.declared_pairs():
                candidates.append(other)
        return min(candidates, key=lambda f: f.owner_reference) if candidates else None

    async def _peered_meshes(self, federation: MeshFederation) -> list[Mesh]:
        meshes = [Mesh.from_dict(obj) for obj in await self.hub.list(MESH)]
        return [m for m in meshes if any(m.owner_of(peer) == federation.owner_reference for peer in m.peers)]

    async def sign_csr(self, namespace: str, csr: CertificateArtifact) -> None:
        """Sign a spoke's CSR with the shared CA of the owning federation."""
        intermediate = CertificateArtifact(ArtifactKind.INTERMEDIATE_CA, csr.owner)
        try:
            csr_secret = await self.hub.get(SECRET, namespace, csr.name)
        except NotFoundError:
            return

        owner = (csr_secret["metadata"].get("annotations") or {}).get(FEDERATION_OWNER_ANNOTATION, "")
        if "/" not in owner:
            logger.warning("CSR %s/%s has no federation owner, not signing", namespace, csr.name)
            return

        try:
            await self.hub.get(SECRET, namespace, intermediate.name)
            return
        except NotFoundError:
            pass

        federation_namespace, federation_name = owner.split("/", 1)
        shared_ca_name = CertificateArtifact(ArtifactKind.SHARED_CA, federation_name).name
        shared_ca = await self.hub.get(SECRET, federation_namespace, shared_ca_name)

        data = build_intermediate_ca(secret_data(csr_secret), secret_data(shared_ca))
        await self.hub.apply(
            secret_manifest(
                intermediate.name,
                namespace,
                data,
                labels={FEDERATION_LABEL: TRUE},
                annotations={FEDERATION_OWNER_ANNOTATION: owner},
            )
        )
        logger.info("Signed intermediate CA %s/%s", namespace, intermediate.name)

    async def fan_in_namespace(self, namespace: str) -> None:
        """Re-run the fan-in for every endpoint message of a cluster namespace."""
        for obj in await self.hub.list(CONFIG_MAP, namespace, f"{FEDERATION_LABEL}={TRUE}"):
            message = _decode_or_none(obj["metadata"]["name"])
            if isinstance(message, EndpointMessage):
                await self.fan_in(namespace, message)

    async def fan_in(self, namespace: str, endpoint: EndpointMessage) -> None:
        """
        Build the federation configuration for the peer of an endpoint message.

        Args:
            namespace: Hub namespace of the cluster that published the endpoint.
            endpoint: Names the local control plane and the peer mesh it serves.
        """
        index = MeshIndex.from_meshes([Mesh.from_dict(obj) for obj in await self.hub.list(MESH)])
        current = self._resolve_local(index, namespace, endpoint)
        if current is None:
            raise NotFoundError(MESH.kind, namespace, endpoint.local)

        peer_ref = next((p for p in current.peers if p.name == endpoint.peer), None)
        if peer_ref is None:
            logger.info("Mesh %s/%s no longer peers with %s", namespace, current.name, endpoint.peer)
            return
        peer = index.get(peer_ref.cluster, peer_ref.name)
        if peer is None:
            raise NotFoundError(MESH.kind, peer_ref.cluster, peer_ref.name)

        config_name = FederationConfigMessage(peer=peer.name, local=current.name).name

        try:
            endpoint_map = await self.hub.get(CONFIG_MAP, namespace, endpoint.name)
        except NotFoundError:
            endpoint_map = None
        if endpoint_map is None or endpoint_map["metadata"].get("deletionTimestamp"):
            if await self.hub.delete(CONFIG_MAP, peer_ref.cluster, config_name):
                logger.info("Withdrew federation config %s/%s", peer_ref.cluster, config_name)
            return

        address = (endpoint_map.get("data") or {}).get(PEER_ENDPOINT_KEY)
        if not address:
            raise ProtocolError(f"endpoint message {namespace}/{endpoint.name} has no {PEER_ENDPOINT_KEY}")

        assert current.control_plane is not None and peer.control_plane is not None
        ca_name = MeshCAMessage(current.control_plane.namespace).name
        try:
            ca_map = await self.hub.get(CONFIG_MAP, namespace, ca_name)
        except NotFoundError:
            logger.debug("Waiting for %s/%s before configuring %s", namespace, ca_name, config_name)
            return
        root_cert = (ca_map.get("data") or {}).get(ROOT_CERT_KEY)
        if not root_cert:
            raise ProtocolError(f"mesh CA {namespace}/{ca_name} has no {ROOT_CERT_KEY}")

        _, changed = await self.hub.apply(
            config_map_manifest(
                config_name,
                peer_ref.cluster,
                {
                    ROOT_CERT_KEY: root_cert,
                    PEER_ENDPOINT_KEY: address,
                    PEER_TRUST_DOMAIN_KEY: current.effective_trust_domain,
                    PEER_NAMESPACE_KEY: current.control_plane.namespace,
                    MESH_NAMESPACE_KEY: peer.control_plane.namespace,
                },
                labels={FEDERATION_LABEL: TRUE},
            )
        )
        if changed:
            logger.info("Published federation config %s/%s", peer_ref.cluster, config_name)

    def _resolve_local(self, index: MeshIndex, namespace: str, endpoint: EndpointMessage) -> Mesh | None:
        """Find the mesh whose control plane is named ``endpoint.local``."""
        candidates = [
            mesh
            for mesh in index.in_namespace(namespace)
            if mesh.control_plane is not None and mesh.control_plane.namespace and mesh.physical_name() == endpoint.local
        ]
        if len(candidates) > 1:
            # Several control planes share the name; the peer list disambiguates
            candidates = [m for m in candidates if any(p.name == endpoint.peer for p in m.peers)]
        return candidates[0] if candidates else None


def _decode_or_none(name: str):
    try:
        return decode_message(name)
    except ProtocolError:
        return None
