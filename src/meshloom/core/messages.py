"""Federation protocol messages.

Hub and spoke exchange federation state through ordinary secrets and config
maps whose names carry the message framing. Names are decoded once, at the
watch boundary, into one of the message types below; controllers then
dispatch on the type instead of re-parsing strings.

Framing:
    ``<local>-ep4-<peer>``        endpoint message (local first)
    ``<peer>-to-<local>``         federation configuration (peer first)
    ``<owner>-csr`` etc.          certificate artifact suffixes
    ``<namespace>-mesh-ca``       republished mesh root certificate

Separators are matched exactly once; a name that splits into more than two
parts is ambiguous and rejected.
"""

from dataclasses import dataclass
from enum import Enum

from meshloom.core.errors import ProtocolError

ENDPOINT_SEPARATOR = "-ep4-"
FEDERATION_CONFIG_SEPARATOR = "-to-"
MESH_CA_SUFFIX = "-mesh-ca"


class ArtifactKind(Enum):
    """Certificate artifacts, valued by their name suffix."""

    CSR = "-csr"
    PRIVATE_KEY = "-privatekey"
    INTERMEDIATE_CA = "-intermediateca"
    SHARED_CA = "-sharedca"


@dataclass(frozen=True)
class EndpointMessage:
    """A spoke's ingress gateway for ``peer`` is reachable."""

    local: str
    peer: str

    @property
    def name(self) -> str:
        return f"{self.local}{ENDPOINT_SEPARATOR}{self.peer}"


@dataclass(frozen=True)
class FederationConfigMessage:
    """Trust bootstrap payload describing ``local`` for the ``peer`` mesh."""

    peer: str
    local: str

    @property
    def name(self) -> str:
        return f"{self.peer}{FEDERATION_CONFIG_SEPARATOR}{self.local}"


@dataclass(frozen=True)
class CertificateArtifact:
    kind: ArtifactKind
    owner: str

    @property
    def name(self) -> str:
        return f"{self.owner}{self.kind.value}"


@dataclass(frozen=True)
class MeshCAMessage:
    """Root certificate of the mesh running in ``namespace``."""

    namespace: str

    @property
    def name(self) -> str:
        return f"{self.namespace}{MESH_CA_SUFFIX}"


FederationMessage = EndpointMessage | FederationConfigMessage | CertificateArtifact | MeshCAMessage


def _split_once(name: str, separator: str) -> tuple[str, str]:
    parts = name.split(separator)
    if len(parts) != 2 or not all(parts):
        raise ProtocolError(f"cannot split {name!r} on {separator!r} into exactly two names")
    return parts[0], parts[1]


def decode_message(name: str) -> FederationMessage | None:
    """Decode an object name into a federation message.

    Returns None when the name carries no federation framing at all.

    Raises:
        ProtocolError: The name carries framing but is ambiguous.
    """
    for kind in ArtifactKind:
        if name.endswith(kind.value) and len(name) > len(kind.value):
            return CertificateArtifact(kind=kind, owner=name.removesuffix(kind.value))
    if name.endswith(MESH_CA_SUFFIX) and len(name) > len(MESH_CA_SUFFIX):
        return MeshCAMessage(namespace=name.removesuffix(MESH_CA_SUFFIX))
    if ENDPOINT_SEPARATOR in name:
        local, peer = _split_once(name, ENDPOINT_SEPARATOR)
        return EndpointMessage(local=local, peer=peer)
    if FEDERATION_CONFIG_SEPARATOR in name:
        peer, local = _split_once(name, FEDERATION_CONFIG_SEPARATOR)
        return FederationConfigMessage(peer=peer, local=local)
    return None
