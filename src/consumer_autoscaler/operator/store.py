"""
Resource store client.

``ResourceStore`` is the contract the reconciliation engine consumes: read,
list, create, update and watch declarative objects as Kubernetes JSON
dictionaries. ``KubernetesResourceStore`` implements it on top of the official
Kubernetes client. Every kind the operator touches lives in a named API
group, so a single ``CustomObjectsApi`` covers all of them; pods are listed
through ``CoreV1Api``.

The client is synchronous, so each call runs in the default executor and
watch streams run on one thread per kind, feeding an asyncio queue.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidSpecError,
    ReconcileError,
    StoreUnavailableError,
)
from .models import ChangeType, ResourceKey, ResourceKind, WatchEvent

logger = logging.getLogger(__name__)


class ResourceStore(ABC):
    """Abstract resource store."""

    @abstractmethod
    async def get(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        """Return the object, or None if it does not exist."""

    @abstractmethod
    async def list(self, kind: ResourceKind, namespace: str | None = None) -> list[dict[str, Any]]:
        """List objects of a kind, in one namespace or cluster-wide."""

    @abstractmethod
    async def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        """Create an object. Raises AlreadyExistsError on key collision."""

    @abstractmethod
    async def update(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        """Replace an object. Raises ConflictError if its resourceVersion is stale."""

    @abstractmethod
    async def update_status(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        """Replace the status subresource of an object."""

    @abstractmethod
    async def list_pod_names(self, namespace: str, labels: dict[str, str]) -> list[str]:
        """Names of non-terminating pods matching every label."""

    @abstractmethod
    def watch(self, kinds: Iterable[ResourceKind], namespace: str | None = None) -> AsyncIterator[WatchEvent]:
        """Stream change notifications for the given kinds."""


def translate_api_exception(exc: ApiException, operation: str, kind: ResourceKind, key: ResourceKey) -> ReconcileError:
    """Map a Kubernetes API failure onto the reconcile error taxonomy."""
    detail = f"{operation} {kind.value} {key} failed: {exc.status} {exc.reason}"
    if exc.status == 409:
        if operation == "create":
            return AlreadyExistsError(detail)
        return ConflictError(detail)
    if exc.status == 404:
        # the object vanished between read and write
        return ConflictError(detail)
    if exc.status in (400, 422):
        return InvalidSpecError(detail)
    return StoreUnavailableError(detail)


class KubernetesResourceStore(ResourceStore):
    """ResourceStore backed by the Kubernetes API server."""

    def __init__(
        self,
        kubeconfig_path: str | None = None,
        in_cluster: bool | None = None,
        watch_timeout_seconds: int = 300,
        custom_objects_api: client.CustomObjectsApi | None = None,
        core_v1_api: client.CoreV1Api | None = None,
    ):
        if custom_objects_api is None or core_v1_api is None:
            self._load_config(kubeconfig_path, in_cluster)

        self.custom_objects_api = custom_objects_api or client.CustomObjectsApi()
        self.core_v1 = core_v1_api or client.CoreV1Api()
        self.watch_timeout_seconds = watch_timeout_seconds

    @staticmethod
    def _load_config(kubeconfig_path: str | None, in_cluster: bool | None) -> None:
        if kubeconfig_path:
            config.load_kube_config(config_file=kubeconfig_path)
        elif in_cluster:
            config.load_incluster_config()
        elif in_cluster is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()
        else:
            config.load_kube_config()

    async def _call(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, **kwargs))

    async def _request(
        self,
        operation: str,
        kind: ResourceKind,
        key: ResourceKey,
        func: Callable[..., Any],
        missing_ok: bool = False,
        **kwargs: Any,
    ) -> Any:
        coordinates = kind.coordinates
        try:
            return await self._call(
                func,
                group=coordinates.group,
                version=coordinates.version,
                plural=coordinates.plural,
                **kwargs,
            )
        except ApiException as e:
            if missing_ok and e.status == 404:
                return None
            raise translate_api_exception(e, operation, kind, key) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StoreUnavailableError(f"{operation} {kind.value} {key} failed: {e}") from e

    async def get(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        return await self._request(
            "get",
            kind,
            key,
            self.custom_objects_api.get_namespaced_custom_object,
            missing_ok=True,
            namespace=key.namespace,
            name=key.name,
        )

    async def list(self, kind: ResourceKind, namespace: str | None = None) -> list[dict[str, Any]]:
        scope = ResourceKey(namespace or "*", "*")
        if namespace:
            response = await self._request(
                "list", kind, scope, self.custom_objects_api.list_namespaced_custom_object, namespace=namespace
            )
        else:
            response = await self._request("list", kind, scope, self.custom_objects_api.list_cluster_custom_object)
        return response.get("items", [])

    async def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_object(body)
        created = await self._request(
            "create",
            kind,
            key,
            self.custom_objects_api.create_namespaced_custom_object,
            namespace=key.namespace,
            body=body,
        )
        logger.info(f"Created {kind.value} {key}")
        return created

    async def update(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_object(body)
        updated = await self._request(
            "update",
            kind,
            key,
            self.custom_objects_api.replace_namespaced_custom_object,
            namespace=key.namespace,
            name=key.name,
            body=body,
        )
        logger.info(f"Updated {kind.value} {key}")
        return updated

    async def update_status(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_object(body)
        return await self._request(
            "update_status",
            kind,
            key,
            self.custom_objects_api.replace_namespaced_custom_object_status,
            namespace=key.namespace,
            name=key.name,
            body=body,
        )

    async def list_pod_names(self, namespace: str, labels: dict[str, str]) -> list[str]:
        selector = ",".join(f"{name}={value}" for name, value in sorted(labels.items()))
        try:
            pods = await self._call(self.core_v1.list_namespaced_pod, namespace=namespace, label_selector=selector)
        except ApiException as e:
            raise StoreUnavailableError(f"list pods {namespace} {selector} failed: {e.status} {e.reason}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StoreUnavailableError(f"list pods {namespace} {selector} failed: {e}") from e
        return sorted(pod.metadata.name for pod in pods.items if pod.metadata.deletion_timestamp is None)

    async def watch(self, kinds: Iterable[ResourceKind], namespace: str | None = None) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        watchers: list[watch.Watch] = []

        for kind in kinds:
            watcher = watch.Watch()
            watchers.append(watcher)
            threading.Thread(
                target=self._watch_kind,
                args=(kind, namespace, watcher, loop, events, stop),
                name=f"watch-{kind.coordinates.plural}",
                daemon=True,
            ).start()

        try:
            while True:
                event = await events.get()
                yield event
        finally:
            stop.set()
            for watcher in watchers:
                watcher.stop()

    def _list_call(self, kind: ResourceKind, namespace: str | None) -> tuple[Callable[..., Any], dict[str, Any]]:
        coordinates = kind.coordinates
        arguments = {"group": coordinates.group, "version": coordinates.version, "plural": coordinates.plural}
        if namespace:
            return self.custom_objects_api.list_namespaced_custom_object, {**arguments, "namespace": namespace}
        return self.custom_objects_api.list_cluster_custom_object, arguments

    def _watch_kind(
        self,
        kind: ResourceKind,
        namespace: str | None,
        watcher: watch.Watch,
        loop: asyncio.AbstractEventLoop,
        events: asyncio.Queue,
        stop: threading.Event,
    ) -> None:
        """Stream one kind until stopped, resuming from the last resourceVersion."""
        resource_version: str | None = None
        list_function, list_arguments = self._list_call(kind, namespace)

        while not stop.is_set():
            try:
                kwargs: dict[str, Any] = {**list_arguments, "timeout_seconds": self.watch_timeout_seconds}
                if resource_version:
                    kwargs["resource_version"] = resource_version

                for raw in watcher.stream(list_function, **kwargs):
                    if stop.is_set():
                        break

                    event_type = raw.get("type")
                    obj = raw.get("object") or {}

                    if event_type == "ERROR":
                        if obj.get("code") == 410:
                            logger.info(f"Watch for {kind.value} expired; relisting")
                            resource_version = None
                        else:
                            logger.warning(f"Watch error for {kind.value}: {obj.get('message')}")
                        break

                    resource_version = obj.get("metadata", {}).get("resourceVersion", resource_version)
                    if event_type == "BOOKMARK":
                        continue

                    try:
                        change_type = ChangeType(event_type)
                    except ValueError:
                        logger.debug(f"Ignoring watch event type {event_type} for {kind.value}")
                        continue

                    loop.call_soon_threadsafe(events.put_nowait, WatchEvent(kind, change_type, obj))

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"Watch for {kind.value} expired; relisting")
                    resource_version = None
                else:
                    logger.warning(f"Watch for {kind.value} failed: {e.status} {e.reason}")
                    stop.wait(5)
            except Exception as e:
                if stop.is_set():
                    break
                logger.warning(f"Watch for {kind.value} disconnected: {e}")
                stop.wait(5)
