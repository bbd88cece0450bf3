"""Exception hierarchy."""


class MeshloomError(Exception):
    """Base class for all meshloom errors."""


class ValidationError(MeshloomError):
    """A logical object is missing data or is malformed."""


class MissingFieldError(ValidationError):
    """A required field of the logical model is empty."""

    def __init__(self, field: str, kind: str = "mesh"):
        self.field = field
        super().__init__(f"{field} field in {kind} object is empty")


class InvalidPeerPairError(ValidationError):
    """A MeshPeer entry does not reference two distinct meshes."""


class InvalidTrustTypeError(ValidationError):
    """A MeshFederation names an unknown trust type."""


class NotFoundError(MeshloomError):
    """The requested object does not exist."""

    def __init__(self, kind: str, namespace: str | None, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {where} not found")


class ConflictError(MeshloomError):
    """A write lost an optimistic concurrency race."""


class ReadinessTimeoutError(MeshloomError, TimeoutError):
    """Bounded polling gave up waiting for an external readiness signal."""


class ProtocolError(MeshloomError):
    """A federation message or certificate artifact is malformed."""
