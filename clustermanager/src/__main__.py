from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import ApiClient, AppsV1Api

from clustermanager.src.certrotation import CertRotationLoop
from clustermanager.src.controller import ClusterManagerController, ClusterManagerOperator
from clustermanager.src.health import start_health_server
from clustermanager.src.kube import ClusterManagerClient, KubeObjectStore, load_kube_configuration
from clustermanager.src.metrics import METRICS
from clustermanager.src.settings import load_settings

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)"
            r"([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----"),
        "[REDACTED PRIVATE KEY]",
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


def main() -> None:
    """Operator entrypoint: configure logging, start certificate rotation, and run the watches."""
    settings = load_settings()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    api_client = ApiClient()
    store = KubeObjectStore(api_client, request_timeout=settings.request_timeout_seconds)
    cluster_managers = ClusterManagerClient(
        api_client, request_timeout=settings.request_timeout_seconds
    )

    controller = ClusterManagerController(
        cluster_managers,
        store,
        hub_namespace=settings.hub_namespace,
        operator_namespace=settings.operator_namespace,
        agent_image=settings.agent_image,
        sync_labels=settings.sync_labels,
        request_timeout=settings.request_timeout_seconds,
    )
    operator = ClusterManagerOperator(
        controller,
        cluster_managers,
        AppsV1Api(api_client),
        workers=settings.reconcile_workers,
        resync_seconds=settings.resync_seconds,
        request_timeout=settings.request_timeout_seconds,
    )
    rotation = CertRotationLoop(
        store,
        cluster_managers,
        settings.rotation,
        settings.hub_namespace,
        on_bundle_change=operator.enqueue,
    )

    health_server = start_health_server(ready=operator.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        operator.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    rotation_thread = threading.Thread(
        target=rotation.run_forever, args=(shutdown_event,), daemon=True, name="cert-rotation"
    )
    rotation_thread.start()

    operator.run_forever(shutdown_event=shutdown_event)

    shutdown_event.set()
    rotation_thread.join(timeout=45)
    health_server.shutdown()
    logging.getLogger(__name__).info("Operator stopped")


if __name__ == "__main__":
    main()
