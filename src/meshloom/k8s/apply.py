"""Helpers for idempotent writes and manifest construction."""

import base64
import copy
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from meshloom.core.errors import ConflictError
from meshloom.core.kinds import CONFIG_MAP, NAMESPACE, SECRET

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Top-level fields replaced wholesale on apply
PAYLOAD_FIELDS = ("spec", "data", "binaryData", "type")


def merge_for_apply(existing: dict[str, Any], desired: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """
    Merge a desired manifest into an existing object.

    Labels and annotations of the desired manifest are added to (never
    removed from) the existing ones; payload fields are replaced.

    Returns:
        The merged object and whether it differs from ``existing``.
    """
    merged = copy.deepcopy(existing)
    metadata = merged.setdefault("metadata", {})
    desired_metadata = desired.get("metadata", {})
    changed = False

    for field in ("labels", "annotations"):
        wanted = desired_metadata.get(field) or {}
        current = metadata.get(field) or {}
        if any(current.get(key) != value for key, value in wanted.items()):
            metadata[field] = {**current, **wanted}
            changed = True

    for field in PAYLOAD_FIELDS:
        if field in desired and merged.get(field) != desired[field]:
            merged[field] = copy.deepcopy(desired[field])
            changed = True

    return merged, changed


async def retry_on_conflict(operation: Callable[[], Awaitable[T]], attempts: int = 5) -> T:
    """Run a read-modify-write operation, retrying when it loses a write race."""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConflictError:
            if attempt == attempts:
                raise
            logger.debug("Write conflict, retrying (%d/%d)", attempt, attempts)
    raise AssertionError("unreachable")


def _metadata(name: str, namespace: str | None, labels: dict[str, str] | None, annotations: dict[str, str] | None):
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    if annotations:
        metadata["annotations"] = dict(annotations)
    return metadata


def secret_manifest(
    name: str,
    namespace: str,
    data: dict[str, bytes],
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build an Opaque secret, base64-encoding its values."""
    return {
        "apiVersion": SECRET.api_version,
        "kind": SECRET.kind,
        "metadata": _metadata(name, namespace, labels, annotations),
        "type": "Opaque",
        "data": {key: base64.b64encode(value).decode() for key, value in data.items()},
    }


def secret_data(secret: dict[str, Any]) -> dict[str, bytes]:
    """Decode the data of a secret."""
    return {key: base64.b64decode(value) for key, value in (secret.get("data") or {}).items()}


def config_map_manifest(
    name: str,
    namespace: str,
    data: dict[str, str],
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    return {
        "apiVersion": CONFIG_MAP.api_version,
        "kind": CONFIG_MAP.kind,
        "metadata": _metadata(name, namespace, labels, annotations),
        "data": dict(data),
    }


def namespace_manifest(name: str) -> dict[str, Any]:
    return {"apiVersion": NAMESPACE.api_version, "kind": NAMESPACE.kind, "metadata": {"name": name}}
