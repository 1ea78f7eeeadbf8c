from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from gatewaycontroller.src.api import API_GROUP, ROUTE_KINDS, ROUTE_KINDS_BY_NAME, ResourceKind

LOGGER = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
LOG_FORMATS = {"json", "text"}


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int

    def __post_init__(self) -> None:
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace: Namespace the informers are restricted to, or
                         ``None`` to watch the whole cluster.
        route_kinds:     Route kinds watched and consulted for hostnames.
        workers:         Worker threads per reconciler.
        resync_seconds:  Interval between full re-lists of every watched kind.
        reconcile_timeout_seconds: Deadline for a single reconcile.
    """

    watch_namespace: str | None
    route_kinds: tuple[ResourceKind, ...]
    workers: int
    resync_seconds: int
    reconcile_timeout_seconds: int
    health_port: int
    metrics_port: int
    log_level: int
    log_format: str
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_route_kinds(raw: str | None) -> tuple[ResourceKind, ...]:
    """Resolve a comma-separated list of route kind names.

    Unknown names are logged and skipped; an empty result is an error since
    the controller could never discover a hostname.
    """
    if raw is None or not raw.strip():
        return ROUTE_KINDS

    kinds: list[ResourceKind] = []
    for name in raw.split(","):
        name = name.strip()
        if not name:
            continue
        kind = ROUTE_KINDS_BY_NAME.get(name)
        if kind is None:
            LOGGER.warning("Ignoring unsupported route kind %r", name)
            continue
        if kind not in kinds:
            kinds.append(kind)
    if not kinds:
        raise ConfigError(f"ROUTE_KINDS must name at least one supported kind, got: {raw!r}")
    return tuple(kinds)


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Every variable has a default suitable for an in-cluster deployment:
        ``WATCH_NAMESPACE``: restrict informers to one namespace (all).
        ``ROUTE_KINDS``: comma-separated route kinds (all supported).
        ``WORKERS``: worker threads per reconciler (``2``).
        ``RESYNC_SECONDS``: periodic full re-list (``300``).
        ``RECONCILE_TIMEOUT_SECONDS``: per-reconcile deadline (``30``).
        ``HEALTH_PORT`` / ``METRICS_PORT``: probe and metrics ports.
        ``LOG_LEVEL`` / ``LOG_FORMAT``: ``info`` / ``json``.
        ``LEADER_ELECTION_*``: lease-based leader election settings.
    """
    values = env if env is not None else os.environ

    log_level_name = values.get("LOG_LEVEL", "info").strip().lower()
    if log_level_name not in LOG_LEVELS:
        raise ConfigError(f"invalid log level {log_level_name!r}")
    log_format = values.get("LOG_FORMAT", "json").strip().lower()
    if log_format not in LOG_FORMATS:
        raise ConfigError(f"invalid log format {log_format!r}")

    leader_election = LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=values.get("LEADER_ELECTION_NAMESPACE", "default"),
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", API_GROUP),
        identity=values.get(
            "LEADER_ELECTION_IDENTITY",
            values.get("HOSTNAME", values.get("POD_NAME", "unknown")),
        ),
        lease_duration_seconds=env_int(
            values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1
        ),
        renew_deadline_seconds=env_int(
            values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1
        ),
        retry_period_seconds=env_int(values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
    )

    return ControllerConfig(
        watch_namespace=values.get("WATCH_NAMESPACE", "").strip() or None,
        route_kinds=parse_route_kinds(values.get("ROUTE_KINDS")),
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        resync_seconds=env_int(values, "RESYNC_SECONDS", 300, minimum=10),
        reconcile_timeout_seconds=env_int(values, "RECONCILE_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8081, minimum=1, maximum=65535),
        metrics_port=env_int(values, "METRICS_PORT", 8080, minimum=1, maximum=65535),
        log_level=LOG_LEVELS[log_level_name],
        log_format=log_format,
        leader_election=leader_election,
    )
