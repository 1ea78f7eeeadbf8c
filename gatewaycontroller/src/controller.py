from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Hashable, Sequence
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from gatewaycontroller.src.api import (
    GATEWAY,
    WRAPPED_GATEWAY,
    ObjectKey,
    ReconcileKey,
    ResourceKind,
    metadata_of,
    namespace_of,
    object_key,
)
from gatewaycontroller.src.config import ControllerConfig
from gatewaycontroller.src.gateway import WrappedGatewayReconciler
from gatewaycontroller.src.kube import ConflictError, ResourceStore, StoreError
from gatewaycontroller.src.metrics import METRICS
from gatewaycontroller.src.route import RouteReconciler
from gatewaycontroller.src.workqueue import (
    ReconcileCancelled,
    ReconcileContext,
    ReconcileDeadlineExceeded,
    WorkQueue,
)

EventHandler = Callable[[str, dict[str, Any], dict[str, Any] | None], None]

# Metadata fields whose change means a WrappedGateway needs another pass.
# Anything else (notably status) is the controller's own write echoing back.
_TRIGGER_METADATA_FIELDS = (
    "generation",
    "labels",
    "annotations",
    "finalizers",
    "deletionTimestamp",
)


def is_status_only_change(old: dict[str, Any] | None, new: dict[str, Any]) -> bool:
    if old is None:
        return False
    old_meta, new_meta = metadata_of(old), metadata_of(new)
    return all(old_meta.get(f) == new_meta.get(f) for f in _TRIGGER_METADATA_FIELDS)


def controller_owner(obj: dict[str, Any], owner_kind: ResourceKind) -> ObjectKey | None:
    """Return the key of *obj*'s controlling owner if it is of *owner_kind*."""
    for ref in metadata_of(obj).get("ownerReferences") or []:
        if not ref.get("controller"):
            continue
        if ref.get("kind") != owner_kind.kind:
            continue
        if str(ref.get("apiVersion", "")).split("/")[0] != owner_kind.group:
            continue
        return ObjectKey(namespace_of(obj), ref.get("name", ""))
    return None


class Informer:
    """List-then-watch loop for one resource kind.

    Keeps a last-seen copy of every object so handlers can compare old and
    new state.  The copy is only used for event filtering; reconcilers always
    read fresh state from the API server.

    1. Lists the kind (retrying with jittered exponential backoff) and hands
       every object to the handler, then marks itself synced.
    2. Watches from the list's ``resourceVersion``.
    3. On ``410 Gone`` or when the resync interval has elapsed, re-lists;
       objects missing from the new list are reported as ``DELETED``.
    4. ``401`` / ``403`` stop the loop: those are RBAC problems, not
       transient failures.
    """

    def __init__(
        self,
        store: ResourceStore,
        kind: ResourceKind,
        handler: EventHandler,
        namespace: str | None = None,
        resync_seconds: float = 300,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.kind = kind
        self.handler = handler
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()
        self.resource_version: str | None = None
        self._cache: dict[ObjectKey, dict[str, Any]] = {}
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = object_key(obj)
        old = self._cache.get(key)
        if event_type == "DELETED":
            self._cache.pop(key, None)
        else:
            self._cache[key] = obj
        self.handler(event_type, obj, old)

    def relist(self) -> str | None:
        """Refresh the cache from a full list and return its resourceVersion."""
        response = self.store.list_raw(self.kind, namespace=self.namespace)
        items = response.get("items") or []
        seen: set[ObjectKey] = set()
        for item in items:
            item.setdefault("apiVersion", self.kind.api_version)
            item.setdefault("kind", self.kind.kind)
            key = object_key(item)
            seen.add(key)
            event_type = "ADDED" if key not in self._cache else "SYNC"
            self.handle_event(event_type, item)
        for key in [k for k in self._cache if k not in seen]:
            self.handle_event("DELETED", self._cache[key])
        return (response.get("metadata") or {}).get("resourceVersion")

    def request_stop(self) -> None:
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _list_function(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        api: CustomObjectsApi = self.store.api
        kwargs: dict[str, Any] = {
            "group": self.kind.group,
            "version": self.kind.version,
            "plural": self.kind.plural,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
            return api.list_namespaced_custom_object, kwargs
        return api.list_cluster_custom_object, kwargs

    def _backoff(self, stop: threading.Event, seconds: float) -> float:
        jittered = seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(seconds * 2, 30)

    def _initial_list(self, stop: threading.Event) -> bool:
        backoff_seconds = 1.0
        while not stop.is_set():
            try:
                self.resource_version = self.relist()
                self.synced.set()
                self.logger.info(
                    "Synced %s informer at resourceVersion %s",
                    self.kind.kind,
                    self.resource_version,
                )
                return True
            except StoreError as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind.plural,
                        exc.status,
                    )
                    return False
                self.logger.exception("Initial %s list failed", self.kind.plural)
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind.plural)
            METRICS.watch_errors_total.labels(kind=self.kind.kind).inc()
            backoff_seconds = self._backoff(stop, backoff_seconds)
        return False

    def run(self, stop: threading.Event) -> None:
        if not self._initial_list(stop):
            return
        resource_version = self.resource_version
        last_list = time.monotonic()
        backoff_seconds = 1.0
        stream_count = 0

        while not stop.is_set():
            if time.monotonic() - last_list >= self.resync_seconds:
                try:
                    resource_version = self.relist()
                    last_list = time.monotonic()
                    self.logger.debug("Resynced %s informer", self.kind.kind)
                except StoreError:
                    self.logger.exception("Periodic %s re-list failed", self.kind.plural)
                    METRICS.watch_errors_total.labels(kind=self.kind.kind).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.kind).inc()
                stream_count += 1
                list_fn, kwargs = self._list_function()
                timeout_seconds = max(
                    1,
                    min(
                        self.watch_timeout_seconds,
                        int(self.resync_seconds - (time.monotonic() - last_list)) + 1,
                    ),
                )
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                    **kwargs,
                )
                for event in stream:
                    if stop.is_set():
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or obj or {}
                        raise ApiException(status=raw.get("code"), reason=raw.get("message"))
                    if not isinstance(obj, dict):
                        continue
                    rv = metadata_of(obj).get("resourceVersion")
                    if rv:
                        resource_version = rv
                    if event_type == "BOOKMARK":
                        continue
                    obj.setdefault("apiVersion", self.kind.api_version)
                    obj.setdefault("kind", self.kind.kind)
                    self.handle_event(event_type, obj)
                backoff_seconds = 1.0
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("%s watch expired, re-listing", self.kind.kind)
                    last_list = float("-inf")
                    continue
                METRICS.watch_errors_total.labels(kind=self.kind.kind).inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind.plural,
                        exc.status,
                    )
                    self.synced.clear()
                    return
                self.logger.exception("Kubernetes API watch error for %s", self.kind.plural)
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind.plural)
                METRICS.watch_errors_total.labels(kind=self.kind.kind).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class GatewayController:
    """Composition root: informers feeding two work queues drained by workers.

    WrappedGateway events and events on Gateways it owns go to the gateway
    queue; route events go to the route queue.  Each queue has its own
    worker pool, and the queue guarantees a key is never reconciled by two
    workers at once.
    """

    def __init__(
        self,
        store: ResourceStore,
        wrapped_gateway_reconciler: WrappedGatewayReconciler,
        route_reconciler: RouteReconciler,
        route_kinds: Sequence[ResourceKind],
        namespace: str | None = None,
        workers: int = 2,
        resync_seconds: float = 300,
        reconcile_timeout_seconds: float | None = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.wrapped_gateway_reconciler = wrapped_gateway_reconciler
        self.route_reconciler = route_reconciler
        self.workers = workers
        self.reconcile_timeout_seconds = reconcile_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.gateway_queue = WorkQueue(wrapped_gateway_reconciler.name)
        self.route_queue = WorkQueue(route_reconciler.name)

        def informer(kind: ResourceKind, handler: EventHandler) -> Informer:
            return Informer(
                store=store,
                kind=kind,
                handler=handler,
                namespace=namespace,
                resync_seconds=resync_seconds,
                logger=self.logger,
            )

        self.informers = [
            informer(WRAPPED_GATEWAY, self.on_wrapped_gateway_event),
            informer(GATEWAY, self.on_gateway_event),
            *[informer(kind, self._route_handler(kind)) for kind in route_kinds],
        ]
        self.ready = threading.Event()
        self._stop = threading.Event()

    def on_wrapped_gateway_event(
        self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None
    ) -> None:
        if event_type == "MODIFIED" and is_status_only_change(old, obj):
            return
        self.gateway_queue.add(object_key(obj))

    def on_gateway_event(
        self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None
    ) -> None:
        owner = controller_owner(obj, WRAPPED_GATEWAY)
        if owner is not None:
            self.gateway_queue.add(owner)

    def _route_handler(self, kind: ResourceKind) -> EventHandler:
        def handle(event_type: str, obj: dict[str, Any], old: dict[str, Any] | None) -> None:
            key = object_key(obj)
            self.route_queue.add(ReconcileKey(kind, key.namespace, key.name))

        return handle

    def process_next_item(
        self,
        queue: WorkQueue,
        reconcile: Callable[[Any, ReconcileContext], None],
        timeout: float | None = 1.0,
    ) -> bool:
        """Reconcile one key from *queue*; returns False if none was available."""
        key: Hashable | None = queue.get(timeout=timeout)
        if key is None:
            return False

        started = time.monotonic()
        ctx = ReconcileContext(self._stop, self.reconcile_timeout_seconds)
        result = "success"
        try:
            reconcile(key, ctx)
            queue.forget(key)
        except ReconcileDeadlineExceeded:
            result = "timeout"
            delay = queue.add_rate_limited(key)
            self.logger.warning(
                "Reconcile of %s exceeded %ss; retrying in %.1fs",
                key,
                self.reconcile_timeout_seconds,
                delay,
            )
        except ReconcileCancelled:
            result = "cancelled"
            self.logger.info("Reconcile of %s cancelled; requeueing", key)
            queue.add(key)
        except ConflictError as exc:
            result = "conflict"
            delay = queue.add_rate_limited(key)
            self.logger.info("Conflict reconciling %s (%s); retrying in %.1fs", key, exc, delay)
        except Exception:
            result = "error"
            delay = queue.add_rate_limited(key)
            self.logger.exception("Reconcile of %s failed; retrying in %.1fs", key, delay)
        finally:
            queue.done(key)
            METRICS.reconcile_total.labels(controller=queue.name, result=result).inc()
            METRICS.reconcile_duration_seconds.labels(controller=queue.name).observe(
                time.monotonic() - started
            )
        return True

    def _run_worker(
        self, queue: WorkQueue, reconcile: Callable[[Any, ReconcileContext], None]
    ) -> None:
        while not self._stop.is_set() and not queue.shutting_down:
            self.process_next_item(queue, reconcile)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._stop.set()
        for informer in self.informers:
            informer.request_stop()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._stop.clear()
        self.gateway_queue = WorkQueue(self.wrapped_gateway_reconciler.name)
        self.route_queue = WorkQueue(self.route_reconciler.name)

        threads = [
            threading.Thread(
                target=informer.run,
                args=(self._stop,),
                name=f"informer-{informer.kind.plural}",
                daemon=True,
            )
            for informer in self.informers
        ]
        for queue, reconcile in (
            (self.gateway_queue, self.wrapped_gateway_reconciler.reconcile),
            (self.route_queue, self.route_reconciler.reconcile),
        ):
            threads.extend(
                threading.Thread(
                    target=self._run_worker,
                    args=(queue, reconcile),
                    name=f"worker-{queue.name}-{index}",
                    daemon=True,
                )
                for index in range(self.workers)
            )
        for thread in threads:
            thread.start()
        self.logger.info(
            "Started %d informer(s) and %d worker(s) per reconciler",
            len(self.informers),
            self.workers,
        )

        while not stop.is_set() and not self._stop.is_set():
            if all(informer.synced.is_set() for informer in self.informers):
                self.ready.set()
            else:
                self.ready.clear()
            stop.wait(timeout=0.5)

        self.request_stop()
        self.gateway_queue.shutdown()
        self.route_queue.shutdown()
        for thread in threads:
            thread.join(timeout=5)
            if thread.is_alive():
                self.logger.warning("Thread %s did not stop within 5s", thread.name)
        self.ready.clear()
        self.logger.info("Controller stopped")


def build_controller(config: ControllerConfig, store: ResourceStore) -> GatewayController:
    """Wire both reconcilers and their informers from *config*."""
    return GatewayController(
        store=store,
        wrapped_gateway_reconciler=WrappedGatewayReconciler(
            store,
            route_kinds=config.route_kinds,
            namespace=config.watch_namespace,
        ),
        route_reconciler=RouteReconciler(store),
        route_kinds=config.route_kinds,
        namespace=config.watch_namespace,
        workers=config.workers,
        resync_seconds=config.resync_seconds,
        reconcile_timeout_seconds=config.reconcile_timeout_seconds,
    )
