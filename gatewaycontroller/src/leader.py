from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from gatewaycontroller.src.config import LeaderElectionConfig
from gatewaycontroller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Lease-based leader election over the ``coordination.k8s.io/v1`` Lease API.

    Only the leader runs informers and reconcilers, so two replicas never
    race each other's writes.  Each cycle:

    1. Read the Lease; create it (and lead) when it does not exist.
    2. Renew it when we already hold it.
    3. Take it over once the other holder's ``renewTime`` is older than the
       lease duration.
    4. Treat ``409 Conflict`` as "someone else won this round".

    Leadership is given up after ``renew_deadline_seconds`` without a
    successful renewal, at which point ``on_stopped_leading`` runs.
    """

    def __init__(self, coordination_api: CoordinationV1Api, config: LeaderElectionConfig) -> None:
        self.coordination_api = coordination_api
        self.config = config
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _read_lease(self) -> V1Lease:
        return self.coordination_api.read_namespaced_lease(
            name=self.config.lease_name,
            namespace=self.config.namespace,
        )

    def try_acquire_or_renew(self) -> bool:
        """Attempt one acquire-or-renew cycle.  Returns True while we hold the lease."""
        now = self._now_utc()
        try:
            lease = self._read_lease()
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.config.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, self.config.identity):
            return self._write_lease(lease, now)

        if spec.renew_time is not None:
            renew_time = spec.renew_time
            if renew_time.tzinfo is None:
                renew_time = renew_time.replace(tzinfo=UTC)
            duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
            if (now - renew_time).total_seconds() < duration:
                return False

        LOGGER.info(
            "Lease %s held by %s has expired; taking over",
            self.config.lease_name,
            spec.holder_identity,
        )
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.config.lease_name, namespace=self.config.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.config.identity,
                lease_duration_seconds=self.config.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.config.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.config.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.config.lease_name)
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Claim or renew *lease*, moving ``acquireTime`` only on a change of holder."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        if lease.spec.holder_identity != self.config.identity or lease.spec.acquire_time is None:
            lease.spec.acquire_time = now
        lease.spec.holder_identity = self.config.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.config.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name,
                namespace=self.config.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.config.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` so another replica can take over immediately."""
        try:
            lease = self._read_lease()
            if lease.spec is None or lease.spec.holder_identity != self.config.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name,
                namespace=self.config.namespace,
                body=lease,
            )
            LOGGER.info("Released leader lease %s", self.config.lease_name)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to release leader lease %s: %s", self.config.lease_name, exc.reason
            )

    def _set_leader(self, leading: bool) -> None:
        self._is_leader = leading
        METRICS.leader_state.set(1 if leading else 0)
        METRICS.leader_transitions_total.labels(transition="acquired" if leading else "lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        """Block until *stop_event* is set, invoking the callbacks on every transition."""
        clock = monotonic or time.monotonic
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.config.namespace,
            self.config.lease_name,
            self.config.identity,
        )
        METRICS.leader_state.set(0)
        last_renew = clock()

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renew = clock()
                if not self._is_leader:
                    LOGGER.info("Became leader (identity=%s)", self.config.identity)
                    self._set_leader(True)
                    on_started_leading()
            elif self._is_leader:
                elapsed = clock() - last_renew
                if elapsed >= self.config.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", elapsed)
                    self._set_leader(False)
                    on_stopped_leading()
                else:
                    LOGGER.warning("Lease renewal failed; still leading (elapsed %.2fs)", elapsed)
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._set_leader(False)
            on_stopped_leading()
