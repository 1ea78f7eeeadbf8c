from __future__ import annotations

import contextlib
import copy
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from gatewaycontroller.src.api import (
    ANNOTATION_PREFIX,
    GATEWAY,
    NAMESPACE_NAME_LABEL,
    REASON_FINALIZER_FAILED,
    REASON_GATEWAY_FETCH_FAILED,
    REASON_GATEWAY_STATUS_FAILED,
    REASON_GATEWAY_SYNC_FAILED,
    REASON_RECONCILIATION_SUCCEEDED,
    REASON_ROUTES_FETCH_FAILED,
    ROUTE_KINDS,
    WRAPPED_GATEWAY,
    LifecycleState,
    ObjectKey,
    ResourceKind,
    Route,
    UnsupportedRouteKind,
    add_finalizer,
    has_finalizer,
    lifecycle_state,
    metadata_of,
    remove_finalizer,
    set_condition,
    utc_now_rfc3339,
)
from gatewaycontroller.src.kube import NotFoundError, ResourceStore, StoreError
from gatewaycontroller.src.metrics import METRICS
from gatewaycontroller.src.workqueue import ReconcileCancelled, ReconcileContext

# Copied from the WrappedGateway spec verbatim when present.
PASSTHROUGH_SPEC_FIELDS = ("addresses", "backendTLS", "gatewayClassName", "infrastructure")

# Annotations that describe the WrappedGateway itself and must not be
# propagated to the derived Gateway.
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

# Values the Gateway API CRD schema fills in when a Gateway is written.
DEFAULT_ADDRESS_TYPE = "IPAddress"
DEFAULT_LISTENER_TLS_MODE = "Terminate"
DEFAULT_ALLOWED_NAMESPACES_FROM = "Same"

# Metadata the controller sets on the Gateway; everything else is left to others.
OWNED_METADATA_FIELDS = ("labels", "annotations", "ownerReferences")


@dataclass
class HostnameSources:
    """Routes that asked for one hostname, reduced to what a listener needs."""

    hostname: str
    namespaces: set[str] = field(default_factory=set)
    kinds: set[tuple[str, str]] = field(default_factory=set)


def collect_hostnames(routes: Iterable[Route]) -> list[HostnameSources]:
    """Group route hostnames, sorted lexicographically for stable listener names."""
    by_hostname: dict[str, HostnameSources] = {}
    for route in routes:
        for hostname in route.hostnames():
            sources = by_hostname.setdefault(hostname, HostnameSources(hostname=hostname))
            sources.namespaces.add(route.namespace)
            sources.kinds.add((route.kind.group, route.kind.kind))
    return [by_hostname[hostname] for hostname in sorted(by_hostname)]


def _allowed_routes(sources: HostnameSources) -> dict[str, Any]:
    namespaces = sorted(sources.namespaces)
    if len(namespaces) == 1:
        selector: dict[str, Any] = {"matchLabels": {NAMESPACE_NAME_LABEL: namespaces[0]}}
    else:
        selector = {
            "matchExpressions": [
                {"key": NAMESPACE_NAME_LABEL, "operator": "In", "values": namespaces}
            ]
        }
    return {
        "namespaces": {"from": "Selector", "selector": selector},
        "kinds": [{"group": group, "kind": kind} for group, kind in sorted(sources.kinds)],
    }


def build_listeners(
    template: dict[str, Any], hostnames: Sequence[HostnameSources]
) -> list[dict[str, Any]]:
    """Expand the listener template once per hostname, named ``listener-<index>``."""
    listeners = []
    for index, sources in enumerate(hostnames):
        listener: dict[str, Any] = {
            "name": f"listener-{index}",
            "hostname": sources.hostname,
            "port": template.get("port"),
            "protocol": template.get("protocol"),
            "allowedRoutes": _allowed_routes(sources),
        }
        if template.get("tls") is not None:
            listener["tls"] = copy.deepcopy(template["tls"])
        listeners.append(listener)
    return listeners


def _owner_reference(wrapped: dict[str, Any]) -> dict[str, Any]:
    metadata = metadata_of(wrapped)
    return {
        "apiVersion": WRAPPED_GATEWAY.api_version,
        "kind": WRAPPED_GATEWAY.kind,
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def build_gateway(
    wrapped: dict[str, Any],
    existing: dict[str, Any] | None,
    hostnames: Sequence[HostnameSources],
) -> dict[str, Any]:
    """Return the desired Gateway, starting from *existing* when there is one.

    Listeners are always recomputed from scratch; nothing from the existing
    listener list is merged.
    """
    wrapped_meta = metadata_of(wrapped)
    if existing is None:
        gateway: dict[str, Any] = {
            "apiVersion": GATEWAY.api_version,
            "kind": GATEWAY.kind,
            "metadata": {
                "name": wrapped_meta.get("name"),
                "namespace": wrapped_meta.get("namespace"),
            },
        }
    else:
        gateway = copy.deepcopy(existing)
    metadata = metadata_of(gateway)

    labels = dict(wrapped_meta.get("labels") or {})
    annotations = {
        key: value
        for key, value in (wrapped_meta.get("annotations") or {}).items()
        if not key.startswith(ANNOTATION_PREFIX) and key != LAST_APPLIED_ANNOTATION
    }
    for key, value in (("labels", labels), ("annotations", annotations)):
        if value:
            metadata[key] = value
        else:
            metadata.pop(key, None)

    owner = _owner_reference(wrapped)
    owners = [
        ref
        for ref in metadata.get("ownerReferences") or []
        if not ref.get("controller") or ref.get("uid") == owner["uid"]
    ]
    if not any(ref.get("uid") == owner["uid"] for ref in owners):
        owners.append(owner)
    metadata["ownerReferences"] = owners

    wrapped_spec = wrapped.get("spec") or {}
    spec: dict[str, Any] = {}
    for name in PASSTHROUGH_SPEC_FIELDS:
        if wrapped_spec.get(name) is not None:
            spec[name] = copy.deepcopy(wrapped_spec[name])
    spec["listeners"] = build_listeners(wrapped_spec.get("listenerTemplate") or {}, hostnames)
    gateway["spec"] = spec
    return gateway


def apply_server_defaults(spec: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a Gateway *spec* with the schema defaults filled in."""
    spec = copy.deepcopy(spec)
    for address in spec.get("addresses") or []:
        if isinstance(address, dict):
            address.setdefault("type", DEFAULT_ADDRESS_TYPE)
    for listener in spec.get("listeners") or []:
        if not isinstance(listener, dict):
            continue
        tls = listener.get("tls")
        if isinstance(tls, dict):
            tls.setdefault("mode", DEFAULT_LISTENER_TLS_MODE)
        allowed = listener.setdefault("allowedRoutes", {})
        if isinstance(allowed, dict):
            namespaces = allowed.setdefault("namespaces", {})
            if isinstance(namespaces, dict):
                namespaces.setdefault("from", DEFAULT_ALLOWED_NAMESPACES_FROM)
    return spec


def gateway_needs_update(existing: dict[str, Any], desired: dict[str, Any]) -> bool:
    """Compare only what the controller writes, ignoring server-side defaulting."""
    existing_meta = metadata_of(existing)
    desired_meta = metadata_of(desired)
    for name in OWNED_METADATA_FIELDS:
        if (existing_meta.get(name) or None) != (desired_meta.get(name) or None):
            return True
    return apply_server_defaults(existing.get("spec") or {}) != apply_server_defaults(
        desired.get("spec") or {}
    )


class WrappedGatewayReconciler:
    """Drives a WrappedGateway's derived Gateway and status toward desired state.

    Every pass re-reads the WrappedGateway, the Gateway and all routes, so it
    is safe to run any number of times for the same key.  Store failures are
    recorded on the ``Ready`` condition with a reason naming the failing phase
    and then re-raised so the work queue retries with backoff.
    """

    name = "wrappedgateway"

    def __init__(
        self,
        store: ResourceStore,
        route_kinds: Sequence[ResourceKind] = ROUTE_KINDS,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.route_kinds = tuple(route_kinds)
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def reconcile(self, key: ObjectKey, ctx: ReconcileContext | None = None) -> None:
        ctx = ctx or ReconcileContext.background()
        try:
            wrapped = self.store.get(WRAPPED_GATEWAY, key.namespace, key.name, ctx)
        except NotFoundError:
            self.logger.debug("WrappedGateway %s no longer exists", key)
            with contextlib.suppress(KeyError):
                METRICS.gateway_listeners.remove(key.namespace, key.name)
            return

        if lifecycle_state(wrapped) is LifecycleState.PENDING_DELETION:
            self._finalize(key, wrapped, ctx)
            return

        if not has_finalizer(wrapped):
            try:
                wrapped = self.store.mutate(WRAPPED_GATEWAY, wrapped, add_finalizer, ctx)
            except StoreError as exc:
                self._record_failure(key, wrapped, REASON_FINALIZER_FAILED, exc, ctx)
                raise
            if wrapped is None:
                return

        try:
            existing = self.store.get(GATEWAY, key.namespace, key.name, ctx)
        except NotFoundError:
            existing = None
        except StoreError as exc:
            self._record_failure(key, wrapped, REASON_GATEWAY_FETCH_FAILED, exc, ctx)
            raise

        try:
            routes = self.discover_routes(key, ctx)
        except StoreError as exc:
            self._record_failure(key, wrapped, REASON_ROUTES_FETCH_FAILED, exc, ctx)
            raise

        hostnames = collect_hostnames(routes)
        desired = build_gateway(wrapped, existing, hostnames)
        try:
            self._sync_gateway(key, existing, desired, ctx)
        except StoreError as exc:
            self._record_failure(key, wrapped, REASON_GATEWAY_SYNC_FAILED, exc, ctx)
            raise
        METRICS.gateway_listeners.labels(key.namespace, key.name).set(len(hostnames))
        self.logger.info(
            "Synced gateway %s (routes=%d, listeners=%d)", key, len(routes), len(hostnames)
        )

        generation = metadata_of(wrapped).get("generation", 0)
        try:
            self._write_status(wrapped, generation, REASON_RECONCILIATION_SUCCEEDED, "", ctx)
        except StoreError as exc:
            self.logger.error("Failed to update WrappedGateway %s status on success: %s", key, exc)
            self._record_failure(key, wrapped, REASON_GATEWAY_STATUS_FAILED, exc, ctx)
            raise

    def discover_routes(self, key: ObjectKey, ctx: ReconcileContext | None = None) -> list[Route]:
        """List every configured route kind and keep the ones attached to *key*."""
        matched: list[Route] = []
        for kind in self.route_kinds:
            for item in self.store.list(kind, namespace=self.namespace, ctx=ctx):
                try:
                    route = Route.from_object(item, kind)
                    if route.references(key):
                        matched.append(route)
                except UnsupportedRouteKind:
                    self.logger.warning("Skipping object of unsupported kind %s", item.get("kind"))
                except ValueError as exc:
                    self.logger.warning(
                        "Skipping %s %s with malformed parentRefs: %s",
                        kind.kind,
                        metadata_of(item).get("name"),
                        exc,
                    )
        return matched

    def _sync_gateway(
        self,
        key: ObjectKey,
        existing: dict[str, Any] | None,
        desired: dict[str, Any],
        ctx: ReconcileContext,
    ) -> None:
        if existing is None:
            self.store.create(GATEWAY, desired, ctx)
            self.logger.info("Created gateway %s", key)
        elif gateway_needs_update(existing, desired):
            self.store.update(GATEWAY, desired, ctx)
            self.logger.info("Updated gateway %s", key)
        else:
            self.logger.debug("Gateway %s already matches desired state", key)

    def _finalize(self, key: ObjectKey, wrapped: dict[str, Any], ctx: ReconcileContext) -> None:
        """Release the finalizer so the store can collect the derived Gateway."""
        if not has_finalizer(wrapped):
            return
        try:
            self.store.mutate(WRAPPED_GATEWAY, wrapped, remove_finalizer, ctx)
        except StoreError as exc:
            self.logger.error("Failed to remove finalizer from WrappedGateway %s: %s", key, exc)
            self._record_failure(key, wrapped, REASON_FINALIZER_FAILED, exc, ctx)
            raise
        self.logger.info("Removed finalizer from WrappedGateway %s", key)

    def _write_status(
        self,
        wrapped: dict[str, Any],
        generation: int,
        reason: str,
        message: str,
        ctx: ReconcileContext,
    ) -> None:
        now = self.now_fn()

        def apply(target: dict[str, Any]) -> bool:
            status = target.get("status")
            if not isinstance(status, dict):
                status = {}
                target["status"] = status
            if reason == REASON_RECONCILIATION_SUCCEEDED:
                status["observedGeneration"] = generation
                status["lastReconciledTime"] = now
            set_condition(target, reason, message, now, observed_generation=generation)
            return True

        self.store.mutate(WRAPPED_GATEWAY, wrapped, apply, ctx, status=True)

    def _record_failure(
        self,
        key: ObjectKey,
        wrapped: dict[str, Any],
        reason: str,
        exc: Exception,
        ctx: ReconcileContext,
    ) -> None:
        """Best-effort write of a non-Ready condition; the caller re-raises *exc*."""
        METRICS.reconcile_failures_total.labels(reason=reason).inc()
        self.logger.error("Reconcile of WrappedGateway %s failed (%s): %s", key, reason, exc)
        generation = metadata_of(wrapped).get("generation", 0)
        try:
            self._write_status(wrapped, generation, reason, str(exc), ctx)
        except (StoreError, ReconcileCancelled) as status_exc:
            self.logger.warning(
                "Could not record %s condition on WrappedGateway %s: %s", reason, key, status_exc
            )
