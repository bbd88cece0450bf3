"""Translation between logical meshes and IstioOperator resources."""

import copy
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, ClassVar

from meshloom.core.constants import CROSS_NETWORK_GATEWAY, DEFAULT_TRUST_DOMAIN, GATEWAY_OWNER_LABEL
from meshloom.core.interfaces import MeshTranslator, PhysicalMesh
from meshloom.core.kinds import ISTIO_GATEWAY, ISTIO_OPERATOR
from meshloom.core.models import AccessLogging, ControlPlane, Mesh, MeshConfig, MeshProvider, ProxyConfig

logger = logging.getLogger(__name__)


class IstioTranslator(MeshTranslator):
    """
    Translate meshes to and from upstream Istio operator resources.

    A mesh becomes up to three objects:
    - the control-plane IstioOperator, with its built-in gateways disabled
    - a companion ``<name>-gateways`` IstioOperator holding the ingress, egress
      and east-west gateways
    - the cross-network Gateway, when the mesh has federation peers
    """

    PROFILE_COMPONENTS: ClassVar[Mapping[str, frozenset[str]]] = MappingProxyType(
        {
            "empty": frozenset(),
            "minimal": frozenset({"base", "istiod"}),
            "default": frozenset({"base", "istiod", "istio-ingress"}),
            "demo": frozenset({"base", "istiod", "istio-egress", "istio-ingress"}),
            "openshift": frozenset({"base", "istiod", "istio-ingress", "cni"}),
            "external": frozenset({"istiod-remote"}),
        }
    )

    # Logical component name -> IstioOperator component key
    CONTROL_PLANE_COMPONENTS: ClassVar[Mapping[str, str]] = MappingProxyType(
        {
            "base": "base",
            "istiod": "pilot",
            "istiod-remote": "istiodRemote",
            "cni": "cni",
        }
    )

    INGRESS_COMPONENT = "istio-ingress"
    EGRESS_COMPONENT = "istio-egress"
    INGRESS_GATEWAY = "istio-ingressgateway"
    EGRESS_GATEWAY = "istio-egressgateway"
    EASTWEST_GATEWAY = "istio-eastwestgateway"
    EASTWEST_SELECTOR: ClassVar[Mapping[str, str]] = MappingProxyType(
        {"istio": "eastwestgateway", "app": "istio-eastwestgateway"}
    )
    EASTWEST_PORTS: ClassVar[tuple[tuple[str, int, int], ...]] = (
        ("status-port", 15021, 15021),
        ("http2", 80, 8080),
        ("https", 443, 8443),
        ("tls", 15443, 15443),
    )
    CROSS_NETWORK_HOSTS: ClassVar[tuple[str, ...]] = ("*.global",)
    CROSS_NETWORK_PORT = 15443

    DEFAULT_PROFILE = "default"
    DEFAULT_NAMESPACE = "istio-system"
    GATEWAYS_SUFFIX = "-gateways"

    def to_physical(self, mesh: Mesh) -> PhysicalMesh:
        """Translate a logical mesh into IstioOperator resources."""
        mesh.validate()
        control_plane = mesh.control_plane
        assert control_plane is not None

        name = mesh.physical_name()
        namespace = control_plane.namespace
        profile = control_plane.profiles[0] if control_plane.profiles else self.DEFAULT_PROFILE
        implied = self.PROFILE_COMPONENTS.get(profile, frozenset())

        components: dict[str, Any] = {
            "ingressGateways": [{"name": self.INGRESS_GATEWAY, "enabled": False}],
            "egressGateways": [{"name": self.EGRESS_GATEWAY, "enabled": False}],
        }
        values: dict[str, Any] = {"global": {"istioNamespace": namespace}}
        gateway_components: dict[str, Any] = {}

        for component in control_plane.components:
            if component in self.CONTROL_PLANE_COMPONENTS:
                # Profile defaults already cover it
                if component in implied:
                    continue
                components[self.CONTROL_PLANE_COMPONENTS[component]] = {"enabled": True}
            elif component == self.INGRESS_COMPONENT:
                gateway_components["ingressGateways"] = [self._gateway(self.INGRESS_GATEWAY)]
            elif component == self.EGRESS_COMPONENT:
                gateway_components["egressGateways"] = [self._gateway(self.EGRESS_GATEWAY)]
            else:
                logger.debug("Component %s has no Istio counterpart, ignoring", component)

        mesh_config = self._mesh_config(mesh)

        cross_network_gateway = None
        if control_plane.peers:
            mesh_config["defaultConfig"] = {
                "proxyMetadata": {
                    "ISTIO_META_DNS_CAPTURE": "true",
                    "ISTIO_META_DNS_AUTO_ALLOCATE": "true",
                }
            }
            mesh_config["outboundTrafficPolicy"] = {"mode": "ALLOW_ANY"}
            components["pilot"] = {
                "enabled": True,
                "k8s": {"env": [{"name": "PILOT_SKIP_VALIDATE_TRUST_DOMAIN", "value": "true"}]},
            }
            values["global"]["network"] = name
            values["global"]["multiCluster"] = {"clusterName": name}
            gateway_components.setdefault("ingressGateways", []).append(self._eastwest_gateway())
            cross_network_gateway = self._cross_network_gateway(name, namespace)

        spec: dict[str, Any] = self._base_spec(control_plane, profile)
        spec["components"] = components
        spec["values"] = values
        if mesh_config:
            spec["meshConfig"] = mesh_config

        gateways = None
        if gateway_components:
            gateways_spec = self._base_spec(control_plane, "empty")
            gateways_spec["components"] = gateway_components
            gateways_spec["values"] = {
                "global": {"istioNamespace": namespace},
                "gateways": {self.INGRESS_GATEWAY: {"injectionTemplate": "gateway"}},
            }
            gateways = self._operator(name + self.GATEWAYS_SUFFIX, namespace, gateways_spec)

        return PhysicalMesh(
            control_plane=self._operator(name, namespace, spec),
            gateways=gateways,
            cross_network_gateway=cross_network_gateway,
        )

    def to_logical(
        self,
        primary: dict[str, Any],
        member_namespaces: list[str],
        cluster: str,
        companion: dict[str, Any] | None = None,
    ) -> Mesh:
        """Synthesize a discovered mesh from an IstioOperator and its gateways."""
        metadata = primary.get("metadata", {})
        spec = primary.get("spec", {})
        name = metadata.get("name", "")
        namespace = spec.get("namespace") or self.DEFAULT_NAMESPACE

        raw_mesh_config = spec.get("meshConfig") or {}
        access_logging = AccessLogging.from_dict(
            {
                "file": raw_mesh_config.get("accessLogFile", ""),
                "format": raw_mesh_config.get("accessLogFormat", ""),
                "encoding": raw_mesh_config.get("accessLogEncoding", ""),
            }
        )
        mesh_config = MeshConfig(
            trust_domain=raw_mesh_config.get("trustDomain") or DEFAULT_TRUST_DOMAIN,
            proxy_config=ProxyConfig(access_logging=access_logging) if access_logging else None,
        )

        components = self._enabled_components(spec.get("components") or {})
        if companion is not None:
            for component in self._enabled_components((companion.get("spec") or {}).get("components") or {}):
                if component not in components:
                    components.append(component)

        tag = spec.get("tag")
        control_plane = ControlPlane(
            namespace=namespace,
            version=str(tag) if tag else "",
            revision=spec.get("revision", ""),
            profiles=[spec.get("profile") or self.DEFAULT_PROFILE],
            components=components,
        )

        return Mesh.discovered(
            cluster,
            namespace,
            name,
            object_namespace=metadata.get("namespace"),
            provider=MeshProvider.UPSTREAM_ISTIO,
            control_plane=control_plane,
            mesh_config=mesh_config,
            member_namespaces=list(member_namespaces),
        )

    def _enabled_components(self, components: dict[str, Any]) -> list[str]:
        enabled = [
            logical
            for logical, key in self.CONTROL_PLANE_COMPONENTS.items()
            if (components.get(key) or {}).get("enabled")
        ]
        for logical, key in ((self.INGRESS_COMPONENT, "ingressGateways"), (self.EGRESS_COMPONENT, "egressGateways")):
            for gateway in components.get(key) or []:
                if gateway.get("enabled") and gateway.get("name") != self.EASTWEST_GATEWAY:
                    enabled.append(logical)
                    break
        return enabled

    def _base_spec(self, control_plane: ControlPlane, profile: str) -> dict[str, Any]:
        spec: dict[str, Any] = {"profile": profile, "namespace": control_plane.namespace}
        if control_plane.version:
            spec["tag"] = control_plane.version
        if control_plane.revision:
            spec["revision"] = control_plane.revision
        return spec

    def _mesh_config(self, mesh: Mesh) -> dict[str, Any]:
        config: dict[str, Any] = {}
        trust_domain = mesh.trust_domain or (mesh.mesh_config.trust_domain if mesh.mesh_config else "")
        if trust_domain:
            config["trustDomain"] = trust_domain
        access_logging = mesh.mesh_config.access_logging if mesh.mesh_config else None
        if access_logging is not None:
            if access_logging.file:
                config["accessLogFile"] = access_logging.file
            if access_logging.format:
                config["accessLogFormat"] = access_logging.format
            if access_logging.encoding:
                config["accessLogEncoding"] = access_logging.encoding
        return config

    def _gateway(self, name: str) -> dict[str, Any]:
        return {"name": name, "enabled": True, "k8s": {"imagePullPolicy": "IfNotPresent"}}

    def _eastwest_gateway(self) -> dict[str, Any]:
        gateway = self._gateway(self.EASTWEST_GATEWAY)
        gateway["label"] = dict(self.EASTWEST_SELECTOR)
        gateway["k8s"]["service"] = {
            "type": "LoadBalancer",
            "ports": [
                {"name": port_name, "port": port, "targetPort": target}
                for port_name, port, target in self.EASTWEST_PORTS
            ],
        }
        return gateway

    def _cross_network_gateway(self, owner: str, namespace: str) -> dict[str, Any]:
        return {
            "apiVersion": ISTIO_GATEWAY.api_version,
            "kind": ISTIO_GATEWAY.kind,
            "metadata": {
                "name": CROSS_NETWORK_GATEWAY,
                "namespace": namespace,
                "labels": {GATEWAY_OWNER_LABEL: owner},
            },
            "spec": {
                "selector": dict(self.EASTWEST_SELECTOR),
                "servers": [
                    {
                        "hosts": list(self.CROSS_NETWORK_HOSTS),
                        "port": {"name": "tls", "number": self.CROSS_NETWORK_PORT, "protocol": "TLS"},
                        "tls": {"mode": "AUTO_PASSTHROUGH"},
                    }
                ],
            },
        }

    def _operator(self, name: str, namespace: str, spec: dict[str, Any]) -> dict[str, Any]:
        return {
            "apiVersion": ISTIO_OPERATOR.api_version,
            "kind": ISTIO_OPERATOR.kind,
            "metadata": {"name": name, "namespace": namespace},
            "spec": copy.deepcopy(spec),
        }
