"""Spoke side of limited trust for OpenShift Service Mesh.

Each mesh exposes an ingress gateway per peer. Once the gateway's load
balancer has an address the agent publishes it to the hub, together with the
mesh's root certificate. The hub answers with a ``<peer>-to-<local>`` config
map, which the agent turns into a ServiceMeshPeer.
"""

import logging
from typing import Any

from meshloom.controllers.polling import poll_until
from meshloom.controllers.runner import Controller, Request, WatchSource
from meshloom.core.constants import (
    FEDERATION_LABEL,
    INGRESS_FOR_LABEL,
    ISTIO_CA_CONFIGMAP,
    ISTIO_CONFIG_LABEL,
    MESH_NAMESPACE_KEY,
    PEER_ENDPOINT_KEY,
    PEER_NAMESPACE_KEY,
    PEER_TRUST_DOMAIN_KEY,
    ROOT_CERT_KEY,
    SOURCE_SERVICE_ANNOTATION,
    TRUE,
)
from meshloom.core.errors import NotFoundError, ProtocolError
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import (
    CONFIG_MAP,
    SERVICE,
    SERVICE_MESH_CONTROL_PLANE,
    SERVICE_MESH_PEER,
)
from meshloom.core.messages import EndpointMessage, FederationConfigMessage, MeshCAMessage, decode_message
from meshloom.k8s.apply import config_map_manifest
from meshloom.mesh import OSSMTranslator

logger = logging.getLogger(__name__)

CA_ROOT_CERT_SUFFIX = "-ca-root-cert"


def _labels(obj: dict[str, Any]) -> dict[str, str]:
    return obj.get("metadata", {}).get("labels") or {}


def load_balancer_address(service: dict[str, Any]) -> str | None:
    """First ingress IP or hostname of a LoadBalancer service, if assigned."""
    for ingress in ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []:
        address = ingress.get("ip") or ingress.get("hostname")
        if address:
            return address
    return None


class OSSMFederationAgent(Controller):
    """Exchange endpoints and root certificates for OSSM meshes on one spoke."""

    name = "ossm-federation"

    def __init__(
        self,
        cluster_name: str,
        hub: ObjectStore,
        spoke: ObjectStore,
        poll_interval: float = 5.0,
        address_timeout: float = 60.0,
    ):
        self.cluster_name = cluster_name
        self.hub = hub
        self.spoke = spoke
        self.poll_interval = poll_interval
        self.address_timeout = address_timeout

    def sources(self) -> list[WatchSource]:
        return [
            WatchSource(
                tag="ingress",
                store=self.spoke,
                kind=SERVICE,
                predicate=lambda obj: INGRESS_FOR_LABEL in _labels(obj),
            ),
            WatchSource(
                tag="ca-root",
                store=self.spoke,
                kind=CONFIG_MAP,
                predicate=lambda obj: (
                    obj.get("metadata", {}).get("name") == ISTIO_CA_CONFIGMAP
                    and _labels(obj).get(ISTIO_CONFIG_LABEL) == TRUE
                ),
            ),
            WatchSource(
                tag="federation-config",
                store=self.hub,
                kind=CONFIG_MAP,
                namespace=self.cluster_name,
                predicate=lambda obj: _labels(obj).get(FEDERATION_LABEL) == TRUE,
                decode_messages=True,
            ),
        ]

    async def reconcile(self, request: Request) -> None:
        namespace = request.namespace or ""
        if request.source == "ingress":
            await self.publish_endpoint(namespace, request.name)
        elif request.source == "ca-root":
            await self.publish_root_cert(namespace)
        elif isinstance(request.message, FederationConfigMessage):
            await self.configure_peer(request.message)

    async def publish_endpoint(self, namespace: str, name: str) -> None:
        """Publish the address of an ingress gateway serving one peer."""
        try:
            service = await self.spoke.get(SERVICE, namespace, name)
        except NotFoundError:
            service = None
        if service is None or service["metadata"].get("deletionTimestamp"):
            await self.withdraw_endpoint(namespace, name)
            return

        peer = _labels(service)[INGRESS_FOR_LABEL]
        control_plane = next(
            (
                ref["name"]
                for ref in service["metadata"].get("ownerReferences") or []
                if ref.get("kind") == SERVICE_MESH_CONTROL_PLANE.kind
            ),
            None,
        )
        if control_plane is None:
            logger.warning("Ingress service %s/%s is not owned by a control plane", namespace, name)
            return

        async def address() -> str | None:
            return load_balancer_address(await self.spoke.get(SERVICE, namespace, name))

        endpoint = await poll_until(
            address,
            self.poll_interval,
            self.address_timeout,
            f"a load balancer address for {namespace}/{name}",
        )

        message = EndpointMessage(local=control_plane, peer=peer)
        _, changed = await self.hub.apply(
            config_map_manifest(
                message.name,
                self.cluster_name,
                {PEER_ENDPOINT_KEY: endpoint},
                labels={FEDERATION_LABEL: TRUE},
                annotations={SOURCE_SERVICE_ANNOTATION: f"{namespace}/{name}"},
            )
        )
        if changed:
            logger.info("Published endpoint %s for peer %s", endpoint, peer)

    async def withdraw_endpoint(self, namespace: str, name: str) -> None:
        """Retract endpoints published for a service that went away."""
        source = f"{namespace}/{name}"
        for obj in await self.hub.list(CONFIG_MAP, self.cluster_name, f"{FEDERATION_LABEL}={TRUE}"):
            metadata = obj["metadata"]
            if (metadata.get("annotations") or {}).get(SOURCE_SERVICE_ANNOTATION) != source:
                continue
            try:
                message = decode_message(metadata["name"])
            except ProtocolError:
                message = None

            await self.hub.delete(CONFIG_MAP, self.cluster_name, metadata["name"])
            if isinstance(message, EndpointMessage):
                await self.spoke.delete(SERVICE_MESH_PEER, namespace, message.peer)
                await self.spoke.delete(CONFIG_MAP, namespace, message.peer + CA_ROOT_CERT_SUFFIX)
                logger.info("Withdrew endpoint of %s for peer %s", source, message.peer)

    async def publish_root_cert(self, namespace: str) -> None:
        """Republish the root certificate of the control plane in ``namespace``."""
        if not await self.spoke.list(SERVICE_MESH_CONTROL_PLANE, namespace):
            return
        message = MeshCAMessage(namespace)
        try:
            root = await self.spoke.get(CONFIG_MAP, namespace, ISTIO_CA_CONFIGMAP)
        except NotFoundError:
            await self.hub.delete(CONFIG_MAP, self.cluster_name, message.name)
            return

        root_cert = (root.get("data") or {}).get(ROOT_CERT_KEY)
        if not root_cert:
            return
        await self.hub.apply(
            config_map_manifest(
                message.name,
                self.cluster_name,
                {ROOT_CERT_KEY: root_cert},
                labels={FEDERATION_LABEL: TRUE},
            )
        )

    async def configure_peer(self, message: FederationConfigMessage) -> None:
        """Turn a federation config from the hub into a ServiceMeshPeer."""
        try:
            config = await self.hub.get(CONFIG_MAP, self.cluster_name, message.name)
        except NotFoundError:
            # Withdrawal is handled when the ingress service goes away
            return
        if config["metadata"].get("deletionTimestamp"):
            return

        data = config.get("data") or {}
        missing = [
            key
            for key in (ROOT_CERT_KEY, PEER_ENDPOINT_KEY, PEER_TRUST_DOMAIN_KEY, PEER_NAMESPACE_KEY, MESH_NAMESPACE_KEY)
            if not data.get(key)
        ]
        if missing:
            raise ProtocolError(f"federation config {message.name} is missing {', '.join(missing)}")

        namespace = data[MESH_NAMESPACE_KEY]
        remote = message.local
        ca_name = remote + CA_ROOT_CERT_SUFFIX
        await self.spoke.apply(config_map_manifest(ca_name, namespace, {ROOT_CERT_KEY: data[ROOT_CERT_KEY]}))

        trust_domain = data[PEER_TRUST_DOMAIN_KEY]
        peer = {
            "apiVersion": SERVICE_MESH_PEER.api_version,
            "kind": SERVICE_MESH_PEER.kind,
            "metadata": {"name": remote, "namespace": namespace},
            "spec": {
                "remote": {
                    "addresses": [data[PEER_ENDPOINT_KEY]],
                    "discoveryPort": OSSMTranslator.FEDERATION_DISCOVERY_PORT,
                    "servicePort": OSSMTranslator.FEDERATION_SERVICE_PORT,
                },
                "gateways": {
                    "ingress": {"name": f"{remote}-ingress"},
                    "egress": {"name": f"{remote}-egress"},
                },
                "security": {
                    "trustDomain": trust_domain,
                    "clientID": f"{trust_domain}/ns/{data[PEER_NAMESPACE_KEY]}/sa/{message.peer}-egress-service-account",
                    "certificateChain": {"kind": "ConfigMap", "name": ca_name},
                },
            },
        }
        _, changed = await self.spoke.apply(peer)
        if changed:
            logger.info("Configured ServiceMeshPeer %s/%s", namespace, remote)
