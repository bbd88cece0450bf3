"""Kubernetes client implementation."""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from collections.abc import Callable
from typing import Any, AsyncIterator, ClassVar

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

from meshloom.core.errors import ConflictError, NotFoundError
from meshloom.core.interfaces import ObjectStore, WatchEvent
from meshloom.core.kinds import ResourceKind, kind_of
from meshloom.k8s.apply import merge_for_apply

logger = logging.getLogger(__name__)


class K8sClient(ObjectStore):
    """Object store backed by one Kubernetes cluster."""

    # Kind -> (API, resource name used in generated client method names)
    CORE_RESOURCES: ClassVar[dict[str, tuple[str, str]]] = {
        "Namespace": ("core", "namespace"),
        "ConfigMap": ("core", "config_map"),
        "Secret": ("core", "secret"),
        "Service": ("core", "service"),
        "Pod": ("core", "pod"),
        "Deployment": ("apps", "deployment"),
    }

    # Server-side watch timeout; the runner re-establishes closed watches
    WATCH_TIMEOUT_SECONDS = 300

    def __init__(self, kubeconfig_path: str | None = None, context: str | None = None):
        """Initialize Kubernetes client."""
        self.kubeconfig_path = kubeconfig_path
        self.context = context
        self._api_client: client.ApiClient | None = None
        self._core_v1: client.CoreV1Api | None = None
        self._custom_objects: client.CustomObjectsApi | None = None
        self._apps_v1: client.AppsV1Api | None = None

    async def _ensure_connected(self) -> None:
        """Ensure client is connected."""
        if self._api_client is None:
            try:
                # Each store gets its own ApiClient so hub and spoke can coexist
                if self.kubeconfig_path:
                    api_client = config.new_client_from_config(config_file=self.kubeconfig_path, context=self.context)
                else:
                    try:
                        configuration = client.Configuration()
                        config.load_incluster_config(client_configuration=configuration)
                        api_client = client.ApiClient(configuration)
                    except config.ConfigException:
                        api_client = config.new_client_from_config(context=self.context)

                self._api_client = api_client
                self._core_v1 = client.CoreV1Api(api_client)
                self._custom_objects = client.CustomObjectsApi(api_client)
                self._apps_v1 = client.AppsV1Api(api_client)

            except Exception as e:
                raise ConnectionError(f"Failed to connect to Kubernetes cluster: {e}") from e

    def is_connected(self) -> bool:
        """Check if client is connected to cluster."""
        return self._api_client is not None

    async def get(self, kind: ResourceKind, namespace: str | None, name: str) -> dict[str, Any]:
        await self._ensure_connected()
        try:
            if kind.is_core:
                method, kwargs = self._core_method(kind, "read", namespace)
                obj = await self._call(method, name=name, **kwargs)
            else:
                method, kwargs = self._custom_method(kind, "get", namespace)
                obj = await self._call(method, name=name, **kwargs)
        except ApiException as e:
            raise self._translate_error(e, "get", kind, namespace, name) from e
        return self._with_type(self._serialize(obj), kind)

    async def list(
        self, kind: ResourceKind, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        await self._ensure_connected()
        if label_selector:
            selector: dict[str, Any] = {"label_selector": label_selector}
        else:
            selector = {}
        try:
            if kind.is_core:
                method, kwargs = self._core_method(kind, "list", namespace)
            else:
                method, kwargs = self._custom_method(kind, "list", namespace)
            response = self._serialize(await self._call(method, **kwargs, **selector))
        except ApiException as e:
            if e.status == 404:
                # Resource type not installed on this cluster
                return []
            raise RuntimeError(f"Failed to list {kind.kind} resources: {e}") from e

        items = response.get("items", [])
        return [self._with_type(item, kind) for item in items] if isinstance(items, list) else []

    async def apply(self, desired: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        kind = kind_of(desired)
        metadata = desired.get("metadata", {})
        namespace, name = metadata.get("namespace"), metadata["name"]

        try:
            existing = await self.get(kind, namespace, name)
        except NotFoundError:
            created = await self._create(kind, namespace, desired)
            logger.info("Created %s %s", kind.kind, self._key(namespace, name))
            return created, True

        merged, changed = merge_for_apply(existing, desired)
        if not changed:
            return existing, False

        updated = await self.update(merged)
        logger.info("Updated %s %s", kind.kind, self._key(namespace, name))
        return updated, True

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        await self._ensure_connected()
        kind = kind_of(obj)
        metadata = obj.get("metadata", {})
        namespace, name = metadata.get("namespace"), metadata["name"]
        try:
            if kind.is_core:
                method, kwargs = self._core_method(kind, "replace", namespace)
            else:
                method, kwargs = self._custom_method(kind, "replace", namespace)
            updated = await self._call(method, name=name, body=obj, **kwargs)
        except ApiException as e:
            raise self._translate_error(e, "update", kind, namespace, name) from e
        return self._with_type(self._serialize(updated), kind)

    async def delete(self, kind: ResourceKind, namespace: str | None, name: str) -> bool:
        await self._ensure_connected()
        try:
            if kind.is_core:
                method, kwargs = self._core_method(kind, "delete", namespace)
            else:
                method, kwargs = self._custom_method(kind, "delete", namespace)
            await self._call(method, name=name, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return False
            raise self._translate_error(e, "delete", kind, namespace, name) from e
        logger.info("Deleted %s %s", kind.kind, self._key(namespace, name))
        return True

    async def delete_collection(self, kind: ResourceKind, namespace: str, label_selector: str) -> int:
        deleted = 0
        for item in await self.list(kind, namespace, label_selector):
            if await self.delete(kind, namespace, item["metadata"]["name"]):
                deleted += 1
        return deleted

    async def watch(self, kind: ResourceKind, namespace: str | None = None) -> AsyncIterator[WatchEvent]:
        """Stream change events until the server closes the watch."""
        await self._ensure_connected()

        if kind.is_core:
            method, kwargs = self._core_method(kind, "list", namespace)
        else:
            method, kwargs = self._custom_method(kind, "list", namespace)

        w = watch.Watch()
        loop = asyncio.get_running_loop()

        # One dedicated thread per watch for the blocking stream
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"meshloom-watch-{kind.plural}")
        try:
            stream_iter = await loop.run_in_executor(
                executor, functools.partial(w.stream, method, timeout_seconds=self.WATCH_TIMEOUT_SECONDS, **kwargs)
            )
            while True:
                event = await loop.run_in_executor(executor, next, stream_iter, None)
                if event is None:
                    break
                yield WatchEvent(type=event["type"], object=self._with_type(self._serialize(event["object"]), kind))
        except ApiException as e:
            raise RuntimeError(f"Failed to watch {kind.kind} resources: {e}") from e
        finally:
            w.stop()
            executor.shutdown(wait=False, cancel_futures=True)

    async def _create(self, kind: ResourceKind, namespace: str | None, body: dict[str, Any]) -> dict[str, Any]:
        await self._ensure_connected()
        try:
            if kind.is_core:
                method, kwargs = self._core_method(kind, "create", namespace)
            else:
                method, kwargs = self._custom_method(kind, "create", namespace)
            created = await self._call(method, body=body, **kwargs)
        except ApiException as e:
            raise self._translate_error(e, "create", kind, namespace, body["metadata"]["name"]) from e
        return self._with_type(self._serialize(created), kind)

    def _core_method(self, kind: ResourceKind, verb: str, namespace: str | None) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Resolve a generated client method such as ``list_namespaced_config_map``."""
        api_name, resource = self.CORE_RESOURCES[kind.kind]
        api = self._core_v1 if api_name == "core" else self._apps_v1
        assert api is not None

        if not kind.namespaced:
            return getattr(api, f"{verb}_{resource}"), {}
        if namespace:
            return getattr(api, f"{verb}_namespaced_{resource}"), {"namespace": namespace}
        if verb == "list":
            return getattr(api, f"list_{resource}_for_all_namespaces"), {}
        raise ValueError(f"{kind.kind} {verb} requires a namespace")

    def _custom_method(self, kind: ResourceKind, verb: str, namespace: str | None) -> tuple[Callable[..., Any], dict[str, Any]]:
        assert self._custom_objects is not None
        kwargs: dict[str, Any] = {"group": kind.group, "version": kind.version, "plural": kind.plural}
        if kind.namespaced and namespace:
            kwargs["namespace"] = namespace
            return getattr(self._custom_objects, f"{verb}_namespaced_custom_object"), kwargs
        return getattr(self._custom_objects, f"{verb}_cluster_custom_object"), kwargs

    async def _call(self, method: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(method, **kwargs))

    def _serialize(self, obj: Any) -> dict[str, Any]:
        """Convert generated client models to camelCase dictionaries."""
        if isinstance(obj, dict):
            return obj
        assert self._api_client is not None
        return self._api_client.sanitize_for_serialization(obj)

    @staticmethod
    def _with_type(obj: dict[str, Any], kind: ResourceKind) -> dict[str, Any]:
        # List items come back without apiVersion and kind
        obj.setdefault("apiVersion", kind.api_version)
        obj.setdefault("kind", kind.kind)
        return obj

    @staticmethod
    def _key(namespace: str | None, name: str) -> str:
        return f"{namespace}/{name}" if namespace else name

    @staticmethod
    def _translate_error(
        error: ApiException, verb: str, kind: ResourceKind, namespace: str | None, name: str
    ) -> Exception:
        if error.status == 404:
            return NotFoundError(kind.kind, namespace, name)
        if error.status == 409:
            return ConflictError(f"Conflict on {verb} {kind.kind} {K8sClient._key(namespace, name)}: {error.reason}")
        return RuntimeError(f"Failed to {verb} {kind.kind} {K8sClient._key(namespace, name)}: {error}")
