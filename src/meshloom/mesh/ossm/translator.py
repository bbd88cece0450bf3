"""Translation between logical meshes and OpenShift Service Mesh resources."""

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, ClassVar

from meshloom.core.constants import DEFAULT_TRUST_DOMAIN, EGRESS_FOR_LABEL, INGRESS_FOR_LABEL
from meshloom.core.interfaces import MeshTranslator, PhysicalMesh
from meshloom.core.kinds import SERVICE_MESH_CONTROL_PLANE, SERVICE_MESH_MEMBER_ROLL
from meshloom.core.models import AccessLogging, ControlPlane, Mesh, MeshConfig, MeshProvider, Peer, ProxyConfig

logger = logging.getLogger(__name__)


class OSSMTranslator(MeshTranslator):
    """Translate meshes to and from ServiceMeshControlPlane/MemberRoll pairs."""

    PROFILE_COMPONENTS: ClassVar[Mapping[str, frozenset[str]]] = MappingProxyType(
        {
            "default": frozenset(
                {
                    "grafana",
                    "istio-discovery",
                    "istio-egress",
                    "istio-ingress",
                    "kiali",
                    "mesh-config",
                    "prometheus",
                    "telemetry-common",
                    "tracing",
                }
            ),
        }
    )

    # Logical component name -> spec.addons key
    ADDONS: ClassVar[Mapping[str, str]] = MappingProxyType(
        {
            "prometheus": "prometheus",
            "grafana": "grafana",
            "kiali": "kiali",
            "3scale": "threeScale",
        }
    )

    DEFAULT_VERSION = "v2.1"
    DEFAULT_PROFILE = "default"
    MEMBER_ROLL_NAME = "default"
    FEDERATION_SERVICE_PORT = 15443
    FEDERATION_DISCOVERY_PORT = 8188

    def to_physical(self, mesh: Mesh) -> PhysicalMesh:
        """Translate a logical mesh into a control plane and member roll."""
        mesh.validate()
        control_plane = mesh.control_plane
        assert control_plane is not None

        name = mesh.physical_name()
        namespace = control_plane.namespace
        profiles = list(control_plane.profiles) or [self.DEFAULT_PROFILE]
        implied = frozenset().union(*(self.PROFILE_COMPONENTS.get(p, frozenset()) for p in profiles))

        spec: dict[str, Any] = {
            "version": control_plane.version or self.DEFAULT_VERSION,
            "profiles": profiles,
        }
        gateways: dict[str, Any] = {}

        for component in control_plane.components:
            if component in implied:
                continue
            if component == "tracing":
                spec["tracing"] = {"type": "Jaeger"}
            elif component in self.ADDONS:
                spec.setdefault("addons", {})[self.ADDONS[component]] = {"enabled": True}
            elif component == "istio-ingress":
                gateways["enabled"] = True
                gateways["ingress"] = {"enabled": True}
            elif component == "istio-egress":
                gateways["enabled"] = True
                gateways["egress"] = {"enabled": True}
            else:
                logger.debug("Component %s has no ServiceMeshControlPlane toggle, ignoring", component)

        trust_domain = mesh.trust_domain or (mesh.mesh_config.trust_domain if mesh.mesh_config else "")
        if trust_domain:
            spec["security"] = {"trust": {"domain": trust_domain}}

        access_logging = mesh.mesh_config.access_logging if mesh.mesh_config else None
        if access_logging is not None:
            log_file = {"name": access_logging.file, "format": access_logging.format, "encoding": access_logging.encoding}
            spec["proxy"] = {"accessLogging": {"file": {k: v for k, v in log_file.items() if v}}}

        if control_plane.peers:
            gateways["enabled"] = True
            egress = gateways.setdefault("egressGateways", {})
            ingress = gateways.setdefault("ingressGateways", {})
            for peer in control_plane.peers:
                egress[f"{peer.name}-egress"] = self._egress_gateway(peer)
                ingress[f"{peer.name}-ingress"] = self._ingress_gateway(peer)

        if gateways:
            spec["gateways"] = gateways

        member_roll = None
        if mesh.member_namespaces:
            member_roll = {
                "apiVersion": SERVICE_MESH_MEMBER_ROLL.api_version,
                "kind": SERVICE_MESH_MEMBER_ROLL.kind,
                "metadata": {"name": self.MEMBER_ROLL_NAME, "namespace": namespace},
                "spec": {"members": list(mesh.member_namespaces)},
            }

        return PhysicalMesh(
            control_plane={
                "apiVersion": SERVICE_MESH_CONTROL_PLANE.api_version,
                "kind": SERVICE_MESH_CONTROL_PLANE.kind,
                "metadata": {"name": name, "namespace": namespace},
                "spec": spec,
            },
            member_roll=member_roll,
        )

    def to_logical(
        self,
        primary: dict[str, Any],
        member_namespaces: list[str],
        cluster: str,
        companion: dict[str, Any] | None = None,
    ) -> Mesh:
        """Synthesize a discovered mesh from a ServiceMeshControlPlane."""
        metadata = primary.get("metadata", {})
        spec = primary.get("spec", {})
        readiness = (primary.get("status") or {}).get("readiness") or {}
        namespace = metadata.get("namespace", "")

        access_file = ((spec.get("proxy") or {}).get("accessLogging") or {}).get("file") or {}
        access_logging = AccessLogging.from_dict(
            {
                "file": access_file.get("name", ""),
                "format": access_file.get("format", ""),
                "encoding": access_file.get("encoding", ""),
            }
        )
        trust_domain = ((spec.get("security") or {}).get("trust") or {}).get("domain") or DEFAULT_TRUST_DOMAIN

        control_plane = ControlPlane(
            namespace=namespace,
            version=spec.get("version", ""),
            profiles=list(spec.get("profiles") or []),
            components=self._components(spec, readiness),
        )

        return Mesh.discovered(
            cluster,
            namespace,
            metadata.get("name", ""),
            provider=MeshProvider.OPENSHIFT,
            control_plane=control_plane,
            mesh_config=MeshConfig(
                trust_domain=trust_domain,
                proxy_config=ProxyConfig(access_logging=access_logging) if access_logging else None,
            ),
            member_namespaces=list(member_namespaces),
            readiness=dict(readiness),
        )

    @staticmethod
    def member_namespaces(member_roll: dict[str, Any] | None) -> list[str]:
        """Members of a ServiceMeshMemberRoll; an absent roll has none."""
        if member_roll is None:
            return []
        return list((member_roll.get("spec") or {}).get("members") or [])

    def _components(self, spec: dict[str, Any], readiness: dict[str, Any]) -> list[str]:
        # Readiness lists deployed components grouped by state
        components: list[str] = []
        for state_components in (readiness.get("components") or {}).values():
            for component in state_components or []:
                if component and component not in components:
                    components.append(component)

        toggled = []
        if (spec.get("tracing") or {}).get("type") == "Jaeger":
            toggled.append("tracing")
        for logical, key in self.ADDONS.items():
            if (spec.get("addons") or {}).get(key, {}).get("enabled"):
                toggled.append(logical)
        gateways = spec.get("gateways") or {}
        if (gateways.get("ingress") or {}).get("enabled"):
            toggled.append("istio-ingress")
        if (gateways.get("egress") or {}).get("enabled"):
            toggled.append("istio-egress")

        for component in toggled:
            if component not in components:
                components.append(component)
        return components

    def _egress_gateway(self, peer: Peer) -> dict[str, Any]:
        return {
            "enabled": True,
            "requestedNetworkView": [f"network-{peer.name}"],
            "routerMode": "sni-dnat",
            "service": {
                "metadata": {"labels": {EGRESS_FOR_LABEL: peer.name}},
                "type": "ClusterIP",
                "ports": [
                    {"port": self.FEDERATION_SERVICE_PORT, "name": "tls"},
                    {"port": self.FEDERATION_DISCOVERY_PORT, "name": "http-discovery"},
                ],
            },
            "runtime": self._gateway_runtime(),
        }

    def _ingress_gateway(self, peer: Peer) -> dict[str, Any]:
        return {
            "enabled": True,
            "routerMode": "sni-dnat",
            "service": {
                "metadata": {
                    "labels": {INGRESS_FOR_LABEL: peer.name},
                    "annotations": {"service.beta.kubernetes.io/aws-load-balancer-type": "nlb"},
                },
                "type": "LoadBalancer",
                "ports": [
                    {"port": self.FEDERATION_SERVICE_PORT, "name": "tls"},
                    {"port": self.FEDERATION_DISCOVERY_PORT, "name": "https-discovery"},
                ],
            },
            "runtime": self._gateway_runtime(),
        }

    def _gateway_runtime(self) -> dict[str, Any]:
        return {
            "deployment": {"autoScaling": {"enabled": False}},
            "container": {"resources": {"requests": {"cpu": "10m", "memory": "128Mi"}}},
        }
