from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from gatewaycontroller.src.config import ConfigError, ControllerConfig, load_config
from gatewaycontroller.src.controller import GatewayController, build_controller
from gatewaycontroller.src.health import event_check, start_health_server, start_metrics_server
from gatewaycontroller.src.kube import ResourceStore, build_clients, load_kube_configuration
from gatewaycontroller.src.leader import LeaseLeaderElector
from gatewaycontroller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# Must exceed the watch timeout so a leadership handoff never leaves two
# sets of informers running.
CONTROLLER_STOP_TIMEOUT_SECONDS = 45
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)"
            r"(?!bearer\s)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(config: ControllerConfig) -> None:
    handler = logging.StreamHandler()
    if config.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
    logging.root.handlers = [handler]
    logging.root.setLevel(config.log_level)
    # The Kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(config.log_level, logging.INFO))


def run_with_leader_election(
    controller: GatewayController,
    elector: LeaseLeaderElector,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
) -> None:
    """Run *controller* only while *elector* holds the lease."""
    logger = logging.getLogger(__name__)
    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                logger.error(
                    "Refusing to start the controller while the previous run is still stopping"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run_forever(shutdown_event=controller_stop)
                    unexpected_exit = not controller_stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        logger.error("Controller exited without a stop signal; terminating process")
                except Exception:
                    unexpected_exit = True
                    logger.exception("Controller thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(target=_run_controller, daemon=True)
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return
            controller_thread.join(timeout=CONTROLLER_STOP_TIMEOUT_SECONDS)
            if controller_thread.is_alive():
                logger.error(
                    "Controller did not stop within %ss after losing leadership; shutting down",
                    CONTROLLER_STOP_TIMEOUT_SECONDS,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Controller entrypoint: load config, configure logging, and run until signalled."""
    try:
        config = load_config()
    except ConfigError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    custom_api, coordination_api = build_clients()
    controller = build_controller(config, ResourceStore(custom_api))

    checks = {"caches": event_check(controller.ready)}
    leader_ready = threading.Event()
    if config.leader_election.enabled:
        checks["leader"] = event_check(leader_ready)
    start_metrics_server(config.metrics_port)
    health_server = start_health_server(checks, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if config.leader_election.enabled:
        elector = LeaseLeaderElector(coordination_api, config.leader_election)
        run_with_leader_election(controller, elector, shutdown_event, leader_ready)
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
