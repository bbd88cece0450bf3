"""Logical mesh models."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from meshloom.core.constants import (
    DEFAULT_TRUST_DOMAIN,
    DISCOVERED_FROM_ANNOTATION,
    DISCOVERY_LABEL,
    FEDERATION_OWNER_ANNOTATION,
    MESH_API_VERSION,
    PEER_OWNERS_ANNOTATION,
    TRUE,
)
from meshloom.core.errors import MissingFieldError, ValidationError
from meshloom.core.models.base import Resource


class MeshProvider(Enum):
    """Physical mesh technologies a logical mesh can be backed by."""

    UPSTREAM_ISTIO = "Upstream Istio"
    OPENSHIFT = "Openshift Service Mesh"

    @classmethod
    def parse(cls, value: str | None) -> "MeshProvider | None":
        if not value:
            return None
        for provider in cls:
            if provider.value == value:
                return provider
        raise ValidationError(f"unknown mesh provider {value!r}")


@dataclass(frozen=True)
class Peer:
    """Weak reference to another mesh by its (cluster, name) key."""

    name: str
    cluster: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Peer":
        return cls(name=data.get("name", ""), cluster=data.get("cluster", ""))

    @property
    def key(self) -> str:
        return f"{self.cluster}/{self.name}"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "cluster": self.cluster}


@dataclass(frozen=True)
class AccessLogging:
    """Proxy access log settings; at least one field must be set."""

    file: str = ""
    format: str = ""
    encoding: str = ""

    def __post_init__(self) -> None:
        if not (self.file or self.format or self.encoding):
            raise ValidationError("accessLogging requires at least one of file, format or encoding")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AccessLogging | None":
        """Decode access logging, treating an all-empty value as absent."""
        data = data or {}
        file, fmt, encoding = data.get("file", ""), data.get("format", ""), data.get("encoding", "")
        if not (file or fmt or encoding):
            return None
        return cls(file=file, format=fmt, encoding=encoding)

    def to_dict(self) -> dict[str, str]:
        data = {"file": self.file, "format": self.format, "encoding": self.encoding}
        return {k: v for k, v in data.items() if v}


@dataclass
class ProxyConfig:
    access_logging: AccessLogging | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProxyConfig | None":
        if data is None:
            return None
        return cls(access_logging=AccessLogging.from_dict(data.get("accessLogging")))

    def to_dict(self) -> dict[str, Any]:
        if self.access_logging is None:
            return {}
        return {"accessLogging": self.access_logging.to_dict()}


@dataclass
class MeshConfig:
    trust_domain: str = ""
    proxy_config: ProxyConfig | None = None

    @property
    def access_logging(self) -> AccessLogging | None:
        return self.proxy_config.access_logging if self.proxy_config else None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MeshConfig | None":
        if data is None:
            return None
        return cls(
            trust_domain=data.get("trustDomain", ""),
            proxy_config=ProxyConfig.from_dict(data.get("proxyConfig")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.trust_domain:
            data["trustDomain"] = self.trust_domain
        if self.proxy_config is not None:
            data["proxyConfig"] = self.proxy_config.to_dict()
        return data


@dataclass
class ControlPlane:
    """Desired control plane of a mesh, including its federation edges."""

    namespace: str = ""
    version: str = ""
    revision: str = ""
    profiles: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)
    peers: list[Peer] = field(default_factory=list)

    def add_peer(self, peer: Peer) -> bool:
        """Append a peer unless already present, returning True if added."""
        if peer in self.peers:
            return False
        self.peers.append(peer)
        return True

    def remove_peer(self, peer: Peer) -> bool:
        """Remove a peer, returning True if it was present."""
        if peer not in self.peers:
            return False
        self.peers = [p for p in self.peers if p != peer]
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ControlPlane | None":
        if data is None:
            return None
        return cls(
            namespace=data.get("namespace", ""),
            version=data.get("version", ""),
            revision=data.get("revision", ""),
            profiles=list(data.get("profiles") or []),
            components=list(data.get("components") or []),
            peers=[Peer.from_dict(p) for p in data.get("peers") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"namespace": self.namespace}
        if self.version:
            data["version"] = self.version
        if self.revision:
            data["revision"] = self.revision
        if self.profiles:
            data["profiles"] = list(self.profiles)
        if self.components:
            data["components"] = list(self.components)
        if self.peers:
            data["peers"] = [p.to_dict() for p in self.peers]
        return data


@dataclass
class Mesh(Resource):
    """Vendor-neutral description of one service mesh instance.

    Meshes live in the hub namespace named after the cluster they run on.
    """

    KIND = "Mesh"

    provider: MeshProvider | None = None
    cluster: str = ""
    control_plane: ControlPlane | None = None
    mesh_config: MeshConfig | None = None
    member_namespaces: list[str] = field(default_factory=list)
    trust_domain: str = ""

    # Copied from the physical control plane on discovery
    readiness: dict[str, Any] = field(default_factory=dict)

    @property
    def is_discovered(self) -> bool:
        return self.labels.get(DISCOVERY_LABEL) == TRUE

    @property
    def effective_trust_domain(self) -> str:
        if self.trust_domain:
            return self.trust_domain
        if self.mesh_config and self.mesh_config.trust_domain:
            return self.mesh_config.trust_domain
        return DEFAULT_TRUST_DOMAIN

    @property
    def peers(self) -> list[Peer]:
        return self.control_plane.peers if self.control_plane else []

    def as_peer(self) -> Peer:
        """Reference to this mesh as seen from another mesh's peer list."""
        return Peer(name=self.name, cluster=self.namespace)

    @property
    def peer_owners(self) -> dict[str, str]:
        """Federation (``namespace/name``) that established each peering, keyed by ``Peer.key``."""
        raw = self.annotations.get(PEER_OWNERS_ANNOTATION)
        if not raw:
            return {}
        try:
            owners = json.loads(raw)
        except ValueError as e:
            raise ValidationError(f"malformed {PEER_OWNERS_ANNOTATION} annotation on mesh {self.get_full_name()}") from e
        return dict(owners) if isinstance(owners, dict) else {}

    def owner_of(self, peer: Peer) -> str | None:
        """Federation that established the peering with ``peer``.

        Peerings recorded before per-peer ownership existed belong to the
        mesh's federation owner.
        """
        return self.peer_owners.get(peer.key, self.annotations.get(FEDERATION_OWNER_ANNOTATION))

    def record_peer_owner(self, peer: Peer, owner: str | None) -> bool:
        """Set or clear the owning federation of one peering, returning True if changed."""
        owners = self.peer_owners
        if owners.get(peer.key) == owner:
            return False
        if owner is None:
            owners.pop(peer.key, None)
        else:
            owners[peer.key] = owner
        if owners:
            self.annotations[PEER_OWNERS_ANNOTATION] = json.dumps(owners, sort_keys=True)
        else:
            self.annotations.pop(PEER_OWNERS_ANNOTATION, None)
        return True

    def refresh_federation_owner(self) -> bool:
        """
        Keep the federation-owner annotation on a federation that still owns a peering.

        The annotation selects the shared CA the mesh's intermediate is signed
        with, so it only moves when its federation no longer owns any peer.
        """
        current = self.annotations.get(FEDERATION_OWNER_ANNOTATION)
        owners = {owner for owner in (self.owner_of(peer) for peer in self.peers) if owner}
        if current in owners:
            return False
        if owners:
            self.annotations[FEDERATION_OWNER_ANNOTATION] = sorted(owners)[0]
            return True
        if current is None:
            return False
        del self.annotations[FEDERATION_OWNER_ANNOTATION]
        return True

    def validate(self) -> None:
        """Check the fields every physical translation needs."""
        if not self.cluster:
            raise MissingFieldError("cluster")
        if self.control_plane is None:
            raise MissingFieldError("controlPlane")
        if not self.control_plane.namespace:
            raise MissingFieldError("controlPlane namespace")

    def physical_name(self) -> str:
        """Name of the physical control-plane object backing this mesh.

        Discovered meshes record their physical key in an annotation; older
        objects without it fall back to stripping the synthetic
        ``<cluster>-<namespace>-`` prefix.
        """
        if not self.is_discovered:
            return self.name
        if self.discovered_from is not None:
            return self.discovered_from[1]
        assert self.control_plane is not None
        return self.name.removeprefix(f"{self.cluster}-{self.control_plane.namespace}-")

    @property
    def discovered_from(self) -> tuple[str, str] | None:
        """Namespace and name of the physical object a discovered mesh came from."""
        source = self.annotations.get(DISCOVERED_FROM_ANNOTATION, "")
        if "/" not in source:
            return None
        namespace, name = source.split("/", 1)
        return namespace, name

    @classmethod
    def discovered(
        cls,
        cluster: str,
        physical_namespace: str,
        physical_name: str,
        object_namespace: str | None = None,
        **kwargs: Any,
    ) -> "Mesh":
        """Build the discovered logical mesh for a physical control plane.

        ``physical_namespace`` is the control-plane namespace used for naming;
        ``object_namespace`` is where the physical object itself lives when that
        differs.
        """
        source = f"{object_namespace or physical_namespace}/{physical_name}"
        return cls(
            name=discovered_mesh_name(cluster, physical_namespace, physical_name),
            namespace=cluster,
            labels={DISCOVERY_LABEL: TRUE},
            annotations={DISCOVERED_FROM_ANNOTATION: source},
            cluster=cluster,
            **kwargs,
        )

    @classmethod
    def from_dict(cls, k8s_object: dict[str, Any]) -> "Mesh":
        spec = k8s_object.get("spec", {})
        status = k8s_object.get("status") or {}
        return cls(
            **cls.metadata_kwargs(k8s_object),
            provider=MeshProvider.parse(spec.get("meshProvider")),
            cluster=spec.get("cluster", ""),
            control_plane=ControlPlane.from_dict(spec.get("controlPlane")),
            mesh_config=MeshConfig.from_dict(spec.get("meshConfig")),
            member_namespaces=list((spec.get("meshMemberRoll") or [])),
            trust_domain=spec.get("trustDomain", ""),
            readiness=dict(status.get("readiness") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        spec: dict[str, Any] = {"cluster": self.cluster}
        if self.provider is not None:
            spec["meshProvider"] = self.provider.value
        if self.control_plane is not None:
            spec["controlPlane"] = self.control_plane.to_dict()
        if self.mesh_config is not None:
            spec["meshConfig"] = self.mesh_config.to_dict()
        if self.member_namespaces:
            spec["meshMemberRoll"] = list(self.member_namespaces)
        if self.trust_domain:
            spec["trustDomain"] = self.trust_domain

        manifest: dict[str, Any] = {
            "apiVersion": MESH_API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata_dict(),
            "spec": spec,
        }
        if self.readiness:
            manifest["status"] = {"readiness": self.readiness}
        return manifest


def discovered_mesh_name(cluster: str, namespace: str, name: str) -> str:
    """Name of the logical mesh synthesized for a discovered physical object."""
    return f"{cluster}-{namespace}-{name}"
