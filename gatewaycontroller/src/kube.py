from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CustomObjectsApi
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as TransportError

from gatewaycontroller.src.api import ResourceKind, metadata_of, namespace_of
from gatewaycontroller.src.workqueue import ReconcileContext

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

T = TypeVar("T")


class StoreError(Exception):
    """A failed call against the API server."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    """The write was based on a stale ``resourceVersion``."""


class AlreadyExistsError(ConflictError):
    pass


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CustomObjectsApi, CoordinationV1Api]:
    """Return the custom-object and coordination API clients."""
    return client.CustomObjectsApi(), client.CoordinationV1Api()


@contextmanager
def _translate_errors(
    verb: str, kind: ResourceKind, namespace: str | None, name: str
) -> Iterator[None]:
    target = f"{kind.kind} {namespace}/{name}" if namespace else f"{kind.kind} {name}"
    try:
        yield
    except ApiException as exc:
        message = f"{verb} {target}: {exc.status} {exc.reason}"
        if exc.status == 404:
            raise NotFoundError(message, status=404) from exc
        if exc.status == 409:
            if verb == "create":
                raise AlreadyExistsError(message, status=409) from exc
            raise ConflictError(message, status=409) from exc
        raise StoreError(message, status=exc.status) from exc
    except (TransportError, OSError) as exc:
        # Connection failures and read timeouts carry no HTTP status.
        raise StoreError(f"{verb} {target}: {exc}") from exc


class ResourceStore:
    """Typed get/list/create/update access to custom resources.

    Objects are plain dicts in the API server's JSON shape.  Updates are
    conditional: the body carries the ``metadata.resourceVersion`` it was read
    at, so a concurrent writer makes the call fail with :class:`ConflictError`
    instead of being overwritten.
    """

    def __init__(
        self,
        api: CustomObjectsApi,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.api = api
        self.request_timeout_seconds = request_timeout_seconds

    def _timeout(self, ctx: ReconcileContext | None) -> float:
        if ctx is None:
            return self.request_timeout_seconds
        ctx.check()
        return ctx.request_timeout(self.request_timeout_seconds)

    def get(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        ctx: ReconcileContext | None = None,
    ) -> dict[str, Any]:
        timeout = self._timeout(ctx)
        with _translate_errors("get", kind, namespace, name):
            return self.api.get_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                name=name,
                _request_timeout=timeout,
            )

    def list_raw(
        self,
        kind: ResourceKind,
        namespace: str | None = None,
        ctx: ReconcileContext | None = None,
    ) -> dict[str, Any]:
        """Return the full list response, including ``metadata.resourceVersion``."""
        timeout = self._timeout(ctx)
        with _translate_errors("list", kind, namespace, kind.plural):
            if namespace:
                return self.api.list_namespaced_custom_object(
                    group=kind.group,
                    version=kind.version,
                    namespace=namespace,
                    plural=kind.plural,
                    _request_timeout=timeout,
                )
            return self.api.list_cluster_custom_object(
                group=kind.group,
                version=kind.version,
                plural=kind.plural,
                _request_timeout=timeout,
            )

    def list(
        self,
        kind: ResourceKind,
        namespace: str | None = None,
        ctx: ReconcileContext | None = None,
    ) -> list[dict[str, Any]]:
        items = self.list_raw(kind, namespace=namespace, ctx=ctx).get("items") or []
        for item in items:
            # List items may omit apiVersion/kind; route dispatch relies on them.
            item.setdefault("apiVersion", kind.api_version)
            item.setdefault("kind", kind.kind)
        return items

    def create(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        ctx: ReconcileContext | None = None,
    ) -> dict[str, Any]:
        timeout = self._timeout(ctx)
        body = copy.deepcopy(obj)
        body.setdefault("apiVersion", kind.api_version)
        body.setdefault("kind", kind.kind)
        namespace = namespace_of(body)
        with _translate_errors("create", kind, namespace, metadata_of(body).get("name", "")):
            return self.api.create_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                body=body,
                _request_timeout=timeout,
            )

    def update(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        ctx: ReconcileContext | None = None,
    ) -> dict[str, Any]:
        timeout = self._timeout(ctx)
        namespace = namespace_of(obj)
        name = metadata_of(obj).get("name", "")
        with _translate_errors("update", kind, namespace, name):
            return self.api.replace_namespaced_custom_object(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                name=name,
                body=obj,
                _request_timeout=timeout,
            )

    def update_status(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        ctx: ReconcileContext | None = None,
    ) -> dict[str, Any]:
        timeout = self._timeout(ctx)
        namespace = namespace_of(obj)
        name = metadata_of(obj).get("name", "")
        with _translate_errors("update status of", kind, namespace, name):
            return self.api.replace_namespaced_custom_object_status(
                group=kind.group,
                version=kind.version,
                namespace=namespace,
                plural=kind.plural,
                name=name,
                body=obj,
                _request_timeout=timeout,
            )

    def mutate(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        fn: Callable[[dict[str, Any]], bool],
        ctx: ReconcileContext | None = None,
        *,
        status: bool = False,
        attempts: int = 5,
    ) -> dict[str, Any] | None:
        """Apply *fn* to a copy of *obj* and write it back, re-reading on conflict.

        *fn* returns False when it made no change, in which case nothing is
        written.  Returns the stored object, or None if it disappeared between
        attempts.  ``status=True`` writes through the status sub-resource.
        """
        namespace = namespace_of(obj)
        name = metadata_of(obj).get("name", "")
        current: dict[str, Any] | None = obj

        def attempt() -> dict[str, Any] | None:
            nonlocal current
            if current is None:
                try:
                    current = self.get(kind, namespace, name, ctx)
                except NotFoundError:
                    return None
            target = copy.deepcopy(current)
            if not fn(target):
                return current
            writer = self.update_status if status else self.update
            try:
                return writer(kind, target, ctx)
            except ConflictError:
                current = None
                raise
            except NotFoundError:
                return None

        return retry_on_conflict(attempt, attempts=attempts)


def retry_on_conflict(fn: Callable[[], T], attempts: int = 5) -> T:
    """Run a read-modify-write closure, retrying on version conflicts.

    *fn* must re-read the object it modifies on every call; the last
    :class:`ConflictError` propagates once *attempts* are used up.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConflictError:
            if attempt == attempts:
                raise
            LOGGER.debug("Write conflict, retrying with a fresh read (attempt %d)", attempt)
    raise AssertionError("unreachable")
