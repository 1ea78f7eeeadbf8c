from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from gatewaycontroller.src.api import (
    WRAPPED_GATEWAY,
    LifecycleState,
    ObjectKey,
    ParentRef,
    ReconcileKey,
    Route,
    UnsupportedRouteKind,
    add_finalizer,
    has_finalizer,
    lifecycle_state,
    remove_finalizer,
    utc_now_rfc3339,
)
from gatewaycontroller.src.index import (
    read_previous_parent_refs,
    touch_child_modified,
    write_previous_parent_refs,
)
from gatewaycontroller.src.kube import NotFoundError, ResourceStore
from gatewaycontroller.src.metrics import METRICS
from gatewaycontroller.src.workqueue import ReconcileContext


def _child_modified_now() -> str:
    return utc_now_rfc3339(fractional=True)


def resolve_gateway_keys(route: Route, refs: Iterable[ParentRef]) -> list[ObjectKey]:
    """Map parent references to distinct gateway keys, keeping first-seen order."""
    keys: list[ObjectKey] = []
    for ref in refs:
        key = ref.resolve(route.namespace)
        if key is not None and key not in keys:
            keys.append(key)
    return keys


class RouteReconciler:
    """Keeps WrappedGateways informed about the routes attached to them.

    There is no index from a gateway to the routes that reference it, so each
    route remembers the parent references it had when last seen (see
    :mod:`gatewaycontroller.src.index`).  When the references change, every
    WrappedGateway named by the old *or* the new set gets its
    ``child-modified-at`` annotation bumped, which re-queues it through its
    own watch.  The finalizer gives deleted routes the same last chance to
    notify their former gateways.
    """

    name = "route"

    def __init__(
        self,
        store: ResourceStore,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = _child_modified_now,
    ) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def reconcile(self, key: ReconcileKey, ctx: ReconcileContext | None = None) -> None:
        ctx = ctx or ReconcileContext.background()
        try:
            obj = self.store.get(key.kind, key.namespace, key.name, ctx)
        except NotFoundError:
            self.logger.debug("%s no longer exists", key)
            return

        try:
            route = Route.from_object(obj, key.kind)
        except UnsupportedRouteKind as exc:
            self.logger.error("Skipping %s: %s", key, exc)
            return

        deleting = lifecycle_state(obj) is LifecycleState.PENDING_DELETION
        try:
            current = route.parent_refs()
        except ValueError as exc:
            if not deleting:
                self.logger.error("Skipping %s with malformed parentRefs: %s", key, exc)
                return
            self.logger.warning(
                "%s has malformed parentRefs; releasing it with its recorded references: %s",
                key,
                exc,
            )
            current = []

        if deleting:
            self._finalize(key, route, current, ctx)
            return

        if not has_finalizer(obj):
            obj = self.store.mutate(route.kind, obj, add_finalizer, ctx)
            if obj is None:
                return
            route = Route(kind=route.kind, obj=obj)
            current = route.parent_refs()

        previous = read_previous_parent_refs(obj)
        if previous == current:
            self.logger.debug("Parent references of %s unchanged", key)
            return

        notified = self.notify_gateways(route, previous + current, ctx)
        self.logger.info(
            "Parent references of %s changed; notified %d gateway(s)", key, len(notified)
        )

        def record(target: dict[str, Any]) -> bool:
            write_previous_parent_refs(target, current)
            return True

        self.store.mutate(route.kind, obj, record, ctx)

    def _finalize(
        self,
        key: ReconcileKey,
        route: Route,
        current: list[ParentRef],
        ctx: ReconcileContext,
    ) -> None:
        if not has_finalizer(route.obj):
            return
        # Current refs are included in case the route is deleted before its
        # first baseline was recorded.
        previous = read_previous_parent_refs(route.obj)
        notified = self.notify_gateways(route, previous + current, ctx)
        self.store.mutate(route.kind, route.obj, remove_finalizer, ctx)
        self.logger.info(
            "Removed finalizer from %s after notifying %d gateway(s)", key, len(notified)
        )

    def notify_gateways(
        self,
        route: Route,
        refs: Iterable[ParentRef],
        ctx: ReconcileContext | None = None,
    ) -> list[ObjectKey]:
        """Bump ``child-modified-at`` on each WrappedGateway named by *refs*.

        Gateways that no longer exist are skipped.  Returns the keys that were
        actually touched.
        """
        notified: list[ObjectKey] = []
        timestamp = self.now_fn()

        def touch(target: dict[str, Any]) -> bool:
            touch_child_modified(target, timestamp)
            return True

        for key in resolve_gateway_keys(route, refs):
            try:
                wrapped = self.store.get(WRAPPED_GATEWAY, key.namespace, key.name, ctx)
            except NotFoundError:
                self.logger.debug("WrappedGateway %s not found; nothing to notify", key)
                continue
            if self.store.mutate(WRAPPED_GATEWAY, wrapped, touch, ctx) is None:
                continue
            METRICS.gateway_notifications_total.inc()
            notified.append(key)
        return notified
