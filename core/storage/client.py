"""
Kubernetes object store for deployment-sync.

Adapts the official ``kubernetes`` client to the ``ObjectStore`` contract:
Deployments through ``AppsV1Api``, DeploymentSync intents through
``CustomObjectsApi``. The client is blocking, so every call runs in a worker
thread bounded by the caller's deadline.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from ..errors import StoreError, StoreErrorKind
from ..models.config import ControllerSettings
from ..models.resources import ObjectKey
from .base import ObjectStore, ResourceKind, WatchEvent, WatchEventType
from .deadline import Deadline

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 300


def classify_api_exception(error: ApiException, key: Optional[ObjectKey] = None) -> StoreError:
    """Map an HTTP status from the API server onto a ``StoreErrorKind``"""
    if error.status == 404:
        kind = StoreErrorKind.NOT_FOUND
    elif error.status == 409:
        kind = StoreErrorKind.CONFLICT
    else:
        kind = StoreErrorKind.OTHER
    reason = error.reason or "API error"
    return StoreError(kind, f"{reason} (HTTP {error.status}) for {key}", key)


def load_kube_config(settings: ControllerSettings) -> client.ApiClient:
    """Load in-cluster or kubeconfig credentials and return an API client"""
    if settings.in_cluster:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    else:
        config.load_kube_config(
            config_file=str(settings.kubeconfig) if settings.kubeconfig else None,
            context=settings.context
        )
        logger.info(f"Loaded kubeconfig (context={settings.context or 'current'})")
    return client.ApiClient()


class KubernetesObjectStore(ObjectStore):
    """
    Object store backed by a Kubernetes API server.

    Objects cross this boundary as plain dicts with wire (camelCase) field
    names, as produced by ``ApiClient.sanitize_for_serialization``.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        group: str,
        version: str,
        plural: str,
        watch_namespace: Optional[str] = None
    ):
        self.api_client = api_client
        self.apps = client.AppsV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self.group = group
        self.version = version
        self.plural = plural
        self.watch_namespace = watch_namespace

        logger.info(
            f"Initialized KubernetesObjectStore for {plural}.{group}/{version} "
            f"(namespace={watch_namespace or '*'})"
        )

    @classmethod
    def from_settings(cls, settings: ControllerSettings) -> 'KubernetesObjectStore':
        return cls(
            api_client=load_kube_config(settings),
            group=settings.intent_group,
            version=settings.intent_version,
            plural=settings.intent_plural,
            watch_namespace=settings.watch_namespace
        )

    async def get(self, kind: ResourceKind, key: ObjectKey, deadline: Deadline) -> Dict[str, Any]:
        if kind == ResourceKind.DEPLOYMENT:
            call = lambda timeout: self.apps.read_namespaced_deployment(
                key.name, key.namespace, _request_timeout=timeout
            )
        else:
            call = lambda timeout: self.custom.get_namespaced_custom_object(
                self.group, self.version, key.namespace, self.plural, key.name,
                _request_timeout=timeout
            )
        return await self._call(call, key, deadline)

    async def create(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        key = self._key_of(obj)
        if kind == ResourceKind.DEPLOYMENT:
            call = lambda timeout: self.apps.create_namespaced_deployment(
                key.namespace, obj, _request_timeout=timeout
            )
        else:
            call = lambda timeout: self.custom.create_namespaced_custom_object(
                self.group, self.version, key.namespace, self.plural, obj,
                _request_timeout=timeout
            )
        return await self._call(call, key, deadline)

    async def update(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        key = self._key_of(obj)
        if kind == ResourceKind.DEPLOYMENT:
            call = lambda timeout: self.apps.replace_namespaced_deployment(
                key.name, key.namespace, obj, _request_timeout=timeout
            )
        else:
            call = lambda timeout: self.custom.replace_namespaced_custom_object(
                self.group, self.version, key.namespace, self.plural, key.name, obj,
                _request_timeout=timeout
            )
        return await self._call(call, key, deadline)

    async def update_status(self, kind: ResourceKind, obj: Dict[str, Any], deadline: Deadline) -> Dict[str, Any]:
        key = self._key_of(obj)
        if kind == ResourceKind.DEPLOYMENT:
            call = lambda timeout: self.apps.replace_namespaced_deployment_status(
                key.name, key.namespace, obj, _request_timeout=timeout
            )
        else:
            call = lambda timeout: self.custom.replace_namespaced_custom_object_status(
                self.group, self.version, key.namespace, self.plural, key.name, obj,
                _request_timeout=timeout
            )
        return await self._call(call, key, deadline)

    async def list_keys(self, kind: ResourceKind, deadline: Deadline) -> List[ObjectKey]:
        result = await self._call(
            lambda timeout: self._list_func(kind)(_request_timeout=timeout),
            None,
            deadline
        )
        return [
            ObjectKey(namespace=item["metadata"]["namespace"], name=item["metadata"]["name"])
            for item in result.get("items", [])
        ]

    async def watch(self, kind: ResourceKind) -> AsyncIterator[WatchEvent]:
        """
        Stream events from the API server.

        The blocking watch runs in a daemon thread and hands events to the
        event loop; the stream reconnects after each server-side timeout.
        Errors from the stream are raised to the consumer.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stopped = threading.Event()
        watcher = watch.Watch()

        def pump() -> None:
            try:
                while not stopped.is_set():
                    for raw in watcher.stream(self._list_func(kind), timeout_seconds=WATCH_TIMEOUT_SECONDS):
                        if stopped.is_set():
                            break
                        event = self._to_watch_event(kind, raw)
                        if event is not None:
                            loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as e:
                loop.call_soon_threadsafe(queue.put_nowait, e)

        thread = threading.Thread(target=pump, name=f"watch-{kind.value}", daemon=True)
        thread.start()
        logger.info(f"Started watch stream for {kind.value}")

        try:
            while True:
                item = await queue.get()
                if isinstance(item, ApiException):
                    raise classify_api_exception(item)
                if isinstance(item, Exception):
                    raise StoreError(StoreErrorKind.OTHER, f"watch stream failed: {item}")
                yield item
        finally:
            stopped.set()
            watcher.stop()
            logger.info(f"Stopped watch stream for {kind.value}")

    async def close(self) -> None:
        await asyncio.to_thread(self.api_client.close)
        logger.info("Closed Kubernetes API client")

    # Internals

    def _list_func(self, kind: ResourceKind) -> Callable[..., Any]:
        if kind == ResourceKind.DEPLOYMENT:
            if self.watch_namespace:
                return lambda **kw: self.apps.list_namespaced_deployment(self.watch_namespace, **kw)
            return self.apps.list_deployment_for_all_namespaces
        if self.watch_namespace:
            return lambda **kw: self.custom.list_namespaced_custom_object(
                self.group, self.version, self.watch_namespace, self.plural, **kw
            )
        return lambda **kw: self.custom.list_cluster_custom_object(
            self.group, self.version, self.plural, **kw
        )

    async def _call(
        self,
        call: Callable[[Optional[float]], Any],
        key: Optional[ObjectKey],
        deadline: Deadline
    ) -> Dict[str, Any]:
        try:
            result = await deadline.run(
                asyncio.to_thread(call, deadline.remaining()),
                key
            )
        except ApiException as e:
            raise classify_api_exception(e, key) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StoreError(StoreErrorKind.OTHER, f"transport error for {key}: {e}", key) from e
        return self.api_client.sanitize_for_serialization(result)

    def _to_watch_event(self, kind: ResourceKind, raw: Dict[str, Any]) -> Optional[WatchEvent]:
        try:
            event_type = WatchEventType(raw["type"])
        except ValueError:
            # BOOKMARK and ERROR events carry no object key
            logger.debug(f"Ignoring {raw.get('type')} watch event")
            return None
        obj = raw["object"]
        if not isinstance(obj, dict):
            obj = self.api_client.sanitize_for_serialization(obj)
        meta = obj.get("metadata", {})
        return WatchEvent(
            type=event_type,
            kind=kind,
            key=ObjectKey(namespace=meta["namespace"], name=meta["name"]),
            generation=meta.get("generation")
        )

    @staticmethod
    def _key_of(obj: Dict[str, Any]) -> ObjectKey:
        meta = obj.get("metadata") or {}
        try:
            return ObjectKey(namespace=meta["namespace"], name=meta["name"])
        except (KeyError, ValueError) as e:
            raise StoreError(StoreErrorKind.OTHER, f"object has no usable namespace/name: {e}")
