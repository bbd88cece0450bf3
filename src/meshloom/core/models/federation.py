"""MeshFederation model."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from meshloom.core.constants import MESH_API_VERSION
from meshloom.core.errors import InvalidPeerPairError, InvalidTrustTypeError
from meshloom.core.models.base import Resource
from meshloom.core.models.mesh import MeshProvider, Peer


class TrustType(Enum):
    """How two federated meshes come to trust each other."""

    COMPLETE = "Complete"  # Shared root CA
    LIMITED = "Limited"  # Certificates exchanged at the gateway boundary

    @property
    def required_provider(self) -> MeshProvider:
        """Provider both meshes of a pair must use for this trust type."""
        if self is TrustType.COMPLETE:
            return MeshProvider.UPSTREAM_ISTIO
        return MeshProvider.OPENSHIFT


@dataclass
class MeshPeer:
    """A pair of meshes that should trust each other."""

    peers: list[Peer] = field(default_factory=list)

    def validate(self) -> None:
        if len(self.peers) != 2:
            raise InvalidPeerPairError(f"mesh peer entry must list exactly 2 peers, got {len(self.peers)}")
        first, second = self.peers
        if not (first.name and first.cluster and second.name and second.cluster):
            raise InvalidPeerPairError("mesh peer entries need both name and cluster")
        if first == second:
            raise InvalidPeerPairError(f"mesh peer entry references {first.cluster}/{first.name} twice")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MeshPeer":
        return cls(peers=[Peer.from_dict(p) for p in data.get("peers") or []])

    def to_dict(self) -> dict[str, Any]:
        return {"peers": [p.to_dict() for p in self.peers]}


@dataclass
class MeshFederation(Resource):
    """Declares which meshes federate and with which trust strategy."""

    KIND = "MeshFederation"

    mesh_peers: list[MeshPeer] = field(default_factory=list)
    trust_type: TrustType = TrustType.COMPLETE

    @property
    def owner_reference(self) -> str:
        """Value stored in the federation-owner annotation."""
        return f"{self.namespace}/{self.name}"

    @property
    def shared_ca_name(self) -> str:
        return f"{self.name}-sharedca"

    def validate(self) -> None:
        for mesh_peer in self.mesh_peers:
            mesh_peer.validate()

    def declared_pairs(self) -> set[frozenset[Peer]]:
        return {frozenset(mp.peers) for mp in self.mesh_peers if len(mp.peers) == 2}

    @classmethod
    def from_dict(cls, k8s_object: dict[str, Any]) -> "MeshFederation":
        spec = k8s_object.get("spec", {})
        trust_value = (spec.get("trustConfig") or {}).get("trustType") or TrustType.COMPLETE.value
        try:
            trust_type = TrustType(trust_value)
        except ValueError as e:
            raise InvalidTrustTypeError(f"invalid trust type {trust_value!r}") from e
        return cls(
            **cls.metadata_kwargs(k8s_object),
            mesh_peers=[MeshPeer.from_dict(mp) for mp in spec.get("meshPeers") or []],
            trust_type=trust_type,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": MESH_API_VERSION,
            "kind": self.KIND,
            "metadata": self.metadata_dict(),
            "spec": {
                "meshPeers": [mp.to_dict() for mp in self.mesh_peers],
                "trustConfig": {"trustType": self.trust_type.value},
            },
        }
