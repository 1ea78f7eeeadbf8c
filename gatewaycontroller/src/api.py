from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

API_GROUP = "gateway-controller.homelab.io"
GATEWAY_GROUP = "gateway.networking.k8s.io"

ANNOTATION_PREFIX = f"{API_GROUP}/"
ANNOTATION_PREVIOUS_PARENT_REFS = f"{ANNOTATION_PREFIX}previous-parent-refs"
ANNOTATION_CHILD_MODIFIED_AT = f"{ANNOTATION_PREFIX}child-modified-at"

FINALIZER = f"{ANNOTATION_PREFIX}finalizer"

CONDITION_TYPE_READY = "Ready"

REASON_FINALIZER_FAILED = "FinalizerFailed"
REASON_ROUTES_FETCH_FAILED = "RoutesFetchFailed"
REASON_GATEWAY_FETCH_FAILED = "GatewayFetchFailed"
REASON_GATEWAY_STATUS_FAILED = "GatewayStatusFailed"
REASON_GATEWAY_SYNC_FAILED = "GatewaySyncFailed"
REASON_RECONCILIATION_SUCCEEDED = "ReconciliationSucceeded"

DEFAULT_NAMESPACE = "default"
NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"


@dataclass(frozen=True)
class ResourceKind:
    """Group/version/kind/plural coordinates of a custom resource."""

    group: str
    version: str
    kind: str
    plural: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return self.kind


WRAPPED_GATEWAY = ResourceKind(API_GROUP, "v1", "WrappedGateway", "wrappedgateways")
GATEWAY = ResourceKind(GATEWAY_GROUP, "v1", "Gateway", "gateways")
HTTP_ROUTE = ResourceKind(GATEWAY_GROUP, "v1", "HTTPRoute", "httproutes")
GRPC_ROUTE = ResourceKind(GATEWAY_GROUP, "v1", "GRPCRoute", "grpcroutes")
TLS_ROUTE = ResourceKind(GATEWAY_GROUP, "v1alpha2", "TLSRoute", "tlsroutes")

ROUTE_KINDS: tuple[ResourceKind, ...] = (HTTP_ROUTE, TLS_ROUTE, GRPC_ROUTE)
ROUTE_KINDS_BY_NAME: dict[str, ResourceKind] = {kind.kind: kind for kind in ROUTE_KINDS}


def utc_now_rfc3339(*, fractional: bool = False) -> str:
    """Return the current UTC time as RFC 3339 (e.g. ``2024-01-15T08:30:00Z``).

    ``fractional=True`` keeps microseconds, for values whose only purpose is
    to differ from the previous write.
    """
    now = datetime.now(UTC)
    if fractional:
        return now.isoformat(timespec="microseconds").replace("+00:00", "Z")
    return now.replace(microsecond=0).isoformat().replace("+00:00", "Z")


class UnsupportedRouteKind(ValueError):
    """Raised when an object is not one of the known route shapes."""


@dataclass(frozen=True, order=True)
class ObjectKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileKey:
    """Unit of reconciliation work: ``(kind, namespace, name)``."""

    kind: ResourceKind
    namespace: str
    name: str

    @property
    def object_key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.kind.kind}:{self.namespace}/{self.name}"


class LifecycleState(enum.Enum):
    """Finalizer-gated deletion states of a resource."""

    ACTIVE = "Active"
    PENDING_DELETION = "PendingDeletion"
    GONE = "Gone"


def metadata_of(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        obj["metadata"] = metadata
    return metadata


def namespace_of(obj: dict[str, Any]) -> str:
    return metadata_of(obj).get("namespace") or DEFAULT_NAMESPACE


def object_key(obj: dict[str, Any]) -> ObjectKey:
    return ObjectKey(namespace_of(obj), metadata_of(obj).get("name", ""))


def annotations_of(obj: dict[str, Any]) -> dict[str, str]:
    """Return the object's annotation map, creating it when absent."""
    metadata = metadata_of(obj)
    annotations = metadata.get("annotations")
    if not isinstance(annotations, dict):
        annotations = {}
        metadata["annotations"] = annotations
    return annotations


def lifecycle_state(obj: dict[str, Any] | None) -> LifecycleState:
    if obj is None:
        return LifecycleState.GONE
    if metadata_of(obj).get("deletionTimestamp"):
        return LifecycleState.PENDING_DELETION
    return LifecycleState.ACTIVE


def has_finalizer(obj: dict[str, Any], finalizer: str = FINALIZER) -> bool:
    return finalizer in (metadata_of(obj).get("finalizers") or [])


def add_finalizer(obj: dict[str, Any], finalizer: str = FINALIZER) -> bool:
    """Append *finalizer* if missing. Returns True when the object changed."""
    metadata = metadata_of(obj)
    finalizers = list(metadata.get("finalizers") or [])
    if finalizer in finalizers:
        return False
    finalizers.append(finalizer)
    metadata["finalizers"] = finalizers
    return True


def remove_finalizer(obj: dict[str, Any], finalizer: str = FINALIZER) -> bool:
    """Drop every occurrence of *finalizer*. Returns True when the object changed."""
    metadata = metadata_of(obj)
    finalizers = list(metadata.get("finalizers") or [])
    remaining = [f for f in finalizers if f != finalizer]
    if len(remaining) == len(finalizers):
        return False
    metadata["finalizers"] = remaining
    return True


def set_condition(
    obj: dict[str, Any],
    reason: str,
    message: str,
    now: str,
    observed_generation: int | None = None,
) -> None:
    """Upsert the ``Ready`` condition on *obj*'s status.

    The condition is ``True`` only for ``ReconciliationSucceeded``.  As with
    ``meta.SetStatusCondition`` in the Kubernetes libraries, the
    ``lastTransitionTime`` only moves when the boolean status flips.
    """
    status = obj.setdefault("status", {})
    if not isinstance(status, dict):
        status = {}
        obj["status"] = status
    conditions = status.setdefault("conditions", [])

    value = "True" if reason == REASON_RECONCILIATION_SUCCEEDED else "False"
    condition = {
        "type": CONDITION_TYPE_READY,
        "status": value,
        "observedGeneration": (
            metadata_of(obj).get("generation", 0)
            if observed_generation is None
            else observed_generation
        ),
        "reason": reason,
        "message": message,
        "lastTransitionTime": now,
    }
    for index, existing in enumerate(conditions):
        if existing.get("type") != CONDITION_TYPE_READY:
            continue
        if existing.get("status") == value and existing.get("lastTransitionTime"):
            condition["lastTransitionTime"] = existing["lastTransitionTime"]
        conditions[index] = condition
        return
    conditions.append(condition)


def get_condition(
    obj: dict[str, Any], condition_type: str = CONDITION_TYPE_READY
) -> dict[str, Any] | None:
    for condition in (obj.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


@dataclass(frozen=True)
class ParentRef:
    """A route's reference to the gateway it attaches to.

    Optional fields stay ``None`` when the reference omits them so that the
    recorded history round-trips exactly; defaulting only happens in
    :meth:`resolve`.
    """

    name: str
    group: str | None = None
    kind: str | None = None
    namespace: str | None = None
    section_name: str | None = None
    port: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParentRef:
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ValueError(f"invalid parent reference: {data!r}")
        return cls(
            name=data["name"],
            group=data.get("group"),
            kind=data.get("kind"),
            namespace=data.get("namespace"),
            section_name=data.get("sectionName"),
            port=data.get("port"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.group is not None:
            data["group"] = self.group
        if self.kind is not None:
            data["kind"] = self.kind
        if self.namespace is not None:
            data["namespace"] = self.namespace
        data["name"] = self.name
        if self.section_name is not None:
            data["sectionName"] = self.section_name
        if self.port is not None:
            data["port"] = self.port
        return data

    def resolve(self, route_namespace: str) -> ObjectKey | None:
        """Return the referenced gateway key, or None for non-Gateway parents."""
        group = GATEWAY_GROUP if self.group is None else self.group
        kind = GATEWAY.kind if self.kind is None else self.kind
        if group != GATEWAY_GROUP or kind != GATEWAY.kind:
            return None
        return ObjectKey(self.namespace or route_namespace, self.name)


@dataclass(frozen=True)
class Route:
    """Kind-agnostic view of an HTTPRoute, TLSRoute or GRPCRoute.

    The three shapes share the ``spec.parentRefs``/``spec.hostnames`` contract,
    so the reconcilers only ever see these two projections.
    """

    kind: ResourceKind
    obj: dict[str, Any]

    @classmethod
    def from_object(cls, obj: dict[str, Any], kind: ResourceKind | None = None) -> Route:
        kind_name = obj.get("kind") or (kind.kind if kind else None)
        resolved = ROUTE_KINDS_BY_NAME.get(kind_name or "")
        if resolved is None:
            raise UnsupportedRouteKind(f"unsupported route kind: {kind_name!r}")
        return cls(kind=resolved, obj=obj)

    @property
    def namespace(self) -> str:
        return namespace_of(self.obj)

    @property
    def key(self) -> ObjectKey:
        return object_key(self.obj)

    def parent_refs(self) -> list[ParentRef]:
        spec = self.obj.get("spec") or {}
        return [ParentRef.from_dict(ref) for ref in spec.get("parentRefs") or []]

    def hostnames(self) -> list[str]:
        spec = self.obj.get("spec") or {}
        return [h for h in spec.get("hostnames") or [] if isinstance(h, str) and h]

    def references(self, gateway: ObjectKey) -> bool:
        return any(ref.resolve(self.namespace) == gateway for ref in self.parent_refs())
