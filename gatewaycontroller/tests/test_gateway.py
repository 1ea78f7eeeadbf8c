from __future__ import annotations

import logging
import threading
from typing import Any
from unittest.mock import MagicMock

import pytest
from urllib3.exceptions import MaxRetryError

from gatewaycontroller.src.api import (
    ANNOTATION_CHILD_MODIFIED_AT,
    FINALIZER,
    GATEWAY,
    GRPC_ROUTE,
    HTTP_ROUTE,
    NAMESPACE_NAME_LABEL,
    REASON_FINALIZER_FAILED,
    REASON_GATEWAY_FETCH_FAILED,
    REASON_GATEWAY_STATUS_FAILED,
    REASON_GATEWAY_SYNC_FAILED,
    REASON_RECONCILIATION_SUCCEEDED,
    REASON_ROUTES_FETCH_FAILED,
    TLS_ROUTE,
    WRAPPED_GATEWAY,
    ObjectKey,
    Route,
    get_condition,
)
from gatewaycontroller.src.gateway import (
    LAST_APPLIED_ANNOTATION,
    WrappedGatewayReconciler,
    build_gateway,
    build_listeners,
    collect_hostnames,
)
from gatewaycontroller.src.kube import ConflictError, ResourceStore, StoreError
from gatewaycontroller.src.metrics import METRICS
from gatewaycontroller.src.workqueue import ReconcileCancelled, ReconcileContext
from gatewaycontroller.tests.fakes import (
    FakeStore,
    gateway_listeners,
    make_route,
    make_wrapped_gateway,
)

KEY = ObjectKey("default", "gw")
NOW = "2024-01-01T00:00:00Z"


def _reconciler(store: FakeStore, **kwargs: Any) -> WrappedGatewayReconciler:
    return WrappedGatewayReconciler(store, now_fn=lambda: NOW, **kwargs)


def _ready(store: FakeStore) -> dict[str, Any]:
    wrapped = store.stored(WRAPPED_GATEWAY, "default", "gw")
    assert wrapped is not None
    condition = get_condition(wrapped)
    assert condition is not None
    return condition


def _route(
    name: str, hostnames: list[str], namespace: str = "default", **kwargs: Any
) -> dict[str, Any]:
    kwargs.setdefault("parent_refs", [{"name": "gw", "namespace": "default"}])
    return make_route(name, namespace, hostnames=hostnames, **kwargs)


class TestListenerSynthesis:
    def test_hostnames_sorted_regardless_of_discovery_order(self) -> None:
        forward = [
            Route.from_object(_route("r1", ["b.example.com"])),
            Route.from_object(_route("r2", ["a.example.com"])),
        ]

        for routes in (forward, list(reversed(forward))):
            template = {"port": 443, "protocol": "HTTPS"}
            listeners = build_listeners(template, collect_hostnames(routes))
            assert [listener["hostname"] for listener in listeners] == [
                "a.example.com",
                "b.example.com",
            ]
            assert [listener["name"] for listener in listeners] == ["listener-0", "listener-1"]

    def test_duplicate_hostnames_collapse_into_one_listener(self) -> None:
        routes = [
            Route.from_object(_route("r1", ["x.example.com"])),
            Route.from_object(_route("r2", ["x.example.com"], kind=GRPC_ROUTE)),
        ]

        (sources,) = collect_hostnames(routes)

        assert sources.hostname == "x.example.com"
        assert sources.kinds == {
            ("gateway.networking.k8s.io", "HTTPRoute"),
            ("gateway.networking.k8s.io", "GRPCRoute"),
        }

    def test_listener_scoped_to_route_namespace_and_kind(self) -> None:
        route = _route("r1", ["x.example.com"], namespace="apps", kind=TLS_ROUTE)
        routes = [Route.from_object(route)]
        template = {"port": 443, "protocol": "TLS", "tls": {"mode": "Passthrough"}}

        (listener,) = build_listeners(template, collect_hostnames(routes))

        assert listener == {
            "name": "listener-0",
            "hostname": "x.example.com",
            "port": 443,
            "protocol": "TLS",
            "allowedRoutes": {
                "namespaces": {
                    "from": "Selector",
                    "selector": {"matchLabels": {NAMESPACE_NAME_LABEL: "apps"}},
                },
                "kinds": [{"group": "gateway.networking.k8s.io", "kind": "TLSRoute"}],
            },
            "tls": {"mode": "Passthrough"},
        }

    def test_shared_hostname_across_namespaces_uses_set_selector(self) -> None:
        routes = [
            Route.from_object(_route("r1", ["x.example.com"], namespace="b-team")),
            Route.from_object(_route("r2", ["x.example.com"], namespace="a-team")),
        ]

        (listener,) = build_listeners({"port": 80, "protocol": "HTTP"}, collect_hostnames(routes))

        assert listener["allowedRoutes"]["namespaces"]["selector"] == {
            "matchExpressions": [
                {"key": NAMESPACE_NAME_LABEL, "operator": "In", "values": ["a-team", "b-team"]}
            ]
        }
        assert "tls" not in listener


class TestBuildGateway:
    def test_copies_passthrough_spec_and_metadata(self) -> None:
        wrapped = make_wrapped_gateway(
            labels={"app": "edge"},
            annotations={
                "team": "networking",
                LAST_APPLIED_ANNOTATION: "{}",
                ANNOTATION_CHILD_MODIFIED_AT: NOW,
            },
        )
        wrapped["metadata"]["uid"] = "uid-1"
        wrapped["spec"]["addresses"] = [{"type": "IPAddress", "value": "10.0.0.1"}]
        wrapped["spec"]["infrastructure"] = {"labels": {"tier": "edge"}}

        gateway = build_gateway(wrapped, None, [])

        assert gateway["metadata"]["labels"] == {"app": "edge"}
        assert gateway["metadata"]["annotations"] == {"team": "networking"}
        assert gateway["metadata"]["ownerReferences"] == [
            {
                "apiVersion": "gateway-controller.homelab.io/v1",
                "kind": "WrappedGateway",
                "name": "gw",
                "uid": "uid-1",
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
        assert gateway["spec"] == {
            "addresses": [{"type": "IPAddress", "value": "10.0.0.1"}],
            "gatewayClassName": "cilium",
            "infrastructure": {"labels": {"tier": "edge"}},
            "listeners": [],
        }

    def test_rebuilds_listeners_and_keeps_foreign_owner_refs(self) -> None:
        wrapped = make_wrapped_gateway()
        wrapped["metadata"]["uid"] = "uid-1"
        existing = {
            "apiVersion": "gateway.networking.k8s.io/v1",
            "kind": "Gateway",
            "metadata": {
                "name": "gw",
                "namespace": "default",
                "resourceVersion": "7",
                "labels": {"stale": "label"},
                "ownerReferences": [{"kind": "ConfigMap", "name": "cm", "uid": "uid-9"}],
            },
            "spec": {
                "gatewayClassName": "old",
                "listeners": [{"name": "listener-0", "hostname": "gone.example.com"}],
            },
        }

        gateway = build_gateway(wrapped, existing, [])

        assert gateway["metadata"]["resourceVersion"] == "7"
        assert "labels" not in gateway["metadata"]
        assert [ref["uid"] for ref in gateway["metadata"]["ownerReferences"]] == ["uid-9", "uid-1"]
        assert gateway["spec"] == {"gatewayClassName": "cilium", "listeners": []}
        assert existing["spec"]["gatewayClassName"] == "old"


class TestWrappedGatewayReconciler:
    def test_first_reconcile_adds_finalizer_creates_gateway_and_reports_ready(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())

        _reconciler(store).reconcile(KEY)

        wrapped = store.stored(WRAPPED_GATEWAY, "default", "gw")
        assert wrapped is not None
        assert wrapped["metadata"]["finalizers"] == [FINALIZER]
        assert wrapped["status"]["observedGeneration"] == 1
        assert wrapped["status"]["lastReconciledTime"] == NOW
        assert _ready(store)["status"] == "True"
        assert _ready(store)["reason"] == REASON_RECONCILIATION_SUCCEEDED
        assert len(store.writes_of("create", GATEWAY)) == 1

    def test_no_dependents_yields_empty_listener_list(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())

        _reconciler(store).reconcile(KEY)

        assert gateway_listeners(store) == []

    def test_listeners_follow_referencing_routes_only(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.seed(HTTP_ROUTE, _route("web", ["b.example.com"]))
        store.seed(GRPC_ROUTE, _route("api", ["a.example.com"], kind=GRPC_ROUTE))
        store.seed(TLS_ROUTE, _route("db", ["db.example.com"], kind=TLS_ROUTE))
        store.seed(
            HTTP_ROUTE, _route("other", ["other.example.com"], parent_refs=[{"name": "not-gw"}])
        )

        _reconciler(store).reconcile(KEY)

        assert [listener["hostname"] for listener in gateway_listeners(store)] == [
            "a.example.com",
            "b.example.com",
            "db.example.com",
        ]

    def test_each_route_kind_is_listed_once(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())

        _reconciler(store).reconcile(KEY)

        assert store.lists == [(HTTP_ROUTE, None), (TLS_ROUTE, None), (GRPC_ROUTE, None)]

    def test_route_kinds_and_namespace_restrict_discovery(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())

        _reconciler(store, route_kinds=(HTTP_ROUTE,), namespace="default").reconcile(KEY)

        assert store.lists == [(HTTP_ROUTE, "default")]

    def test_second_reconcile_does_not_rewrite_gateway(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.seed(HTTP_ROUTE, _route("web", ["x.example.com"]))
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)
        before = store.stored(GATEWAY, "default", "gw")
        store.reset_records()

        reconciler.reconcile(KEY)

        assert store.writes_of(kind=GATEWAY) == []
        assert store.stored(GATEWAY, "default", "gw") == before

    def test_server_defaults_on_gateway_do_not_trigger_update(self) -> None:
        store = FakeStore()
        wrapped = make_wrapped_gateway(tls={"certificateRefs": [{"name": "wildcard"}]})
        wrapped["spec"]["addresses"] = [{"value": "10.0.0.10"}]
        store.seed(WRAPPED_GATEWAY, wrapped)
        store.seed(HTTP_ROUTE, _route("web", ["x.example.com"]))
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)

        def fill_defaults(gateway: dict[str, Any]) -> None:
            for address in gateway["spec"]["addresses"]:
                address["type"] = "IPAddress"
            for listener in gateway["spec"]["listeners"]:
                listener["tls"]["mode"] = "Terminate"

        store.edit(GATEWAY, "default", "gw", fill_defaults)
        store.reset_records()

        reconciler.reconcile(KEY)

        assert store.writes_of("update", GATEWAY) == []

    def test_changed_template_still_updates_defaulted_gateway(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway(tls={"mode": "Terminate"}))
        store.seed(HTTP_ROUTE, _route("web", ["x.example.com"]))
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)

        def passthrough(obj: dict[str, Any]) -> None:
            obj["spec"]["listenerTemplate"]["tls"] = {"mode": "Passthrough"}

        store.edit(WRAPPED_GATEWAY, "default", "gw", passthrough)
        store.reset_records()

        reconciler.reconcile(KEY)

        assert len(store.writes_of("update", GATEWAY)) == 1
        assert gateway_listeners(store)[0]["tls"] == {"mode": "Passthrough"}

    def test_existing_gateway_is_updated_when_routes_change(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)

        store.seed(HTTP_ROUTE, _route("web", ["x.example.com"]))
        reconciler.reconcile(KEY)

        assert [w.verb for w in store.writes_of(kind=GATEWAY)] == ["create", "update"]
        assert [listener["hostname"] for listener in gateway_listeners(store)] == ["x.example.com"]

    def test_unsupported_and_malformed_routes_are_skipped(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        broken = _route("broken", ["broken.example.com"], parent_refs=[{"namespace": "default"}])
        store.seed(HTTP_ROUTE, broken)
        store.seed(HTTP_ROUTE, _route("web", ["x.example.com"]))

        with caplog.at_level(logging.WARNING):
            _reconciler(store).reconcile(KEY)

        assert [listener["hostname"] for listener in gateway_listeners(store)] == ["x.example.com"]
        assert "malformed parentRefs" in caplog.text

    def test_listener_gauge_tracks_hostname_count(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway(name="gauge-gw"))
        store.seed(
            HTTP_ROUTE,
            make_route(
                "web",
                hostnames=["a.example.com", "b.example.com"],
                parent_refs=[{"name": "gauge-gw"}],
            ),
        )

        _reconciler(store).reconcile(ObjectKey("default", "gauge-gw"))

        assert METRICS.gateway_listeners.labels("default", "gauge-gw")._value.get() == 2

    def test_missing_wrapped_gateway_is_not_an_error(self) -> None:
        store = FakeStore()

        _reconciler(store).reconcile(KEY)

        assert store.writes == []

    def test_transport_failure_reading_gateway_is_recorded(self) -> None:
        wrapped = make_wrapped_gateway()
        wrapped["metadata"].update(finalizers=[FINALIZER], resourceVersion="3", generation=1)
        api = MagicMock()
        api.get_namespaced_custom_object.side_effect = [
            wrapped,
            MaxRetryError(None, "/apis/gateway.networking.k8s.io/v1"),
        ]
        reconciler = WrappedGatewayReconciler(ResourceStore(api), now_fn=lambda: NOW)

        with pytest.raises(StoreError):
            reconciler.reconcile(KEY)

        api.replace_namespaced_custom_object_status.assert_called_once()
        body = api.replace_namespaced_custom_object_status.call_args.kwargs["body"]
        condition = get_condition(body)
        assert condition is not None
        assert condition["status"] == "False"
        assert condition["reason"] == REASON_GATEWAY_FETCH_FAILED

    @pytest.mark.parametrize(
        ("verb", "kind", "reason"),
        [
            ("get", GATEWAY, REASON_GATEWAY_FETCH_FAILED),
            ("list", TLS_ROUTE, REASON_ROUTES_FETCH_FAILED),
            ("create", GATEWAY, REASON_GATEWAY_SYNC_FAILED),
        ],
    )
    def test_phase_failure_is_recorded_and_reraised(
        self, verb: str, kind: Any, reason: str
    ) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.fail(verb, kind)
        before = METRICS.reconcile_failures_total.labels(reason=reason)._value.get()

        with pytest.raises(StoreError, match="boom"):
            _reconciler(store).reconcile(KEY)

        condition = _ready(store)
        assert condition["status"] == "False"
        assert condition["reason"] == reason
        assert "boom" in condition["message"]
        assert condition["observedGeneration"] == 1
        assert METRICS.reconcile_failures_total.labels(reason=reason)._value.get() - before == 1

    def test_failure_does_not_advance_observed_generation(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.fail("create", GATEWAY)

        with pytest.raises(StoreError):
            _reconciler(store).reconcile(KEY)

        wrapped = store.stored(WRAPPED_GATEWAY, "default", "gw")
        assert wrapped is not None
        assert "observedGeneration" not in wrapped["status"]

    def test_finalizer_failure_is_recorded(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.fail("update", WRAPPED_GATEWAY)

        with pytest.raises(StoreError):
            _reconciler(store).reconcile(KEY)

        assert _ready(store)["reason"] == REASON_FINALIZER_FAILED
        assert store.stored(GATEWAY, "default", "gw") is None

    def test_status_failure_after_sync_is_surfaced(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.fail("update_status", WRAPPED_GATEWAY)

        with pytest.raises(StoreError):
            _reconciler(store).reconcile(KEY)

        # The Gateway write stands; only the status reports the failure.
        assert store.stored(GATEWAY, "default", "gw") is not None
        assert _ready(store)["reason"] == REASON_GATEWAY_STATUS_FAILED

    def test_status_recording_failure_does_not_mask_original_error(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.fail("get", GATEWAY)
        store.fail("update_status", WRAPPED_GATEWAY)

        with pytest.raises(StoreError, match="get Gateway"):
            _reconciler(store).reconcile(KEY)

    def test_conflicting_finalizer_write_is_retried_with_fresh_read(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.fail("update", WRAPPED_GATEWAY, ConflictError("stale", status=409))

        _reconciler(store).reconcile(KEY)

        assert _ready(store)["status"] == "True"

    def test_cancelled_context_aborts_without_recording_failure(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        stop = threading.Event()
        stop.set()

        with pytest.raises(ReconcileCancelled):
            _reconciler(store).reconcile(KEY, ReconcileContext(stop))

        wrapped = store.stored(WRAPPED_GATEWAY, "default", "gw")
        assert wrapped is not None
        assert "status" not in wrapped


class TestWrappedGatewayDeletion:
    def test_deletion_releases_finalizer_and_collects_gateway(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)
        assert store.stored(GATEWAY, "default", "gw") is not None

        store.delete(WRAPPED_GATEWAY, "default", "gw")
        assert store.stored(WRAPPED_GATEWAY, "default", "gw") is not None
        reconciler.reconcile(KEY)

        assert store.stored(WRAPPED_GATEWAY, "default", "gw") is None
        assert store.stored(GATEWAY, "default", "gw") is None

    def test_deletion_does_not_touch_gateway_or_routes(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        store.seed(HTTP_ROUTE, _route("web", ["x.example.com"]))
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)
        store.delete(WRAPPED_GATEWAY, "default", "gw")
        store.reset_records()

        reconciler.reconcile(KEY)

        assert store.lists == []
        assert [(w.verb, w.kind) for w in store.writes] == [("update", WRAPPED_GATEWAY)]

    def test_finalizer_release_failure_is_recorded(self) -> None:
        store = FakeStore()
        store.seed(WRAPPED_GATEWAY, make_wrapped_gateway())
        reconciler = _reconciler(store)
        reconciler.reconcile(KEY)
        store.delete(WRAPPED_GATEWAY, "default", "gw")
        store.fail("update", WRAPPED_GATEWAY)

        with pytest.raises(StoreError):
            reconciler.reconcile(KEY)

        assert _ready(store)["reason"] == REASON_FINALIZER_FAILED
