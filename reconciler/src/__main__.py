from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from hashlib import sha256
from typing import Any

from kubernetes.client import ApiException

from reconciler.src.applier import Supervisor
from reconciler.src.config import ReconcilerConfig, load_config
from reconciler.src.conflict import ConflictHandler
from reconciler.src.core import GroupVersionKind, resource_manager, sync_identity
from reconciler.src.declared import DeclaredResources
from reconciler.src.engine import KubeApplyEngine
from reconciler.src.finalizer import Finalizer
from reconciler.src.health import start_health_server
from reconciler.src.kube import (
    ClusterClient,
    TypeNotServedError,
    build_dynamic_client,
    load_kube_configuration,
)
from reconciler.src.metrics import METRICS
from reconciler.src.remediator import Remediator
from reconciler.src.source import SourceError, read_manifests
from reconciler.src.updater import Updater

RUNTIME_VERSION = "0.1.0"
SYNC_API_VERSION = "v1beta1"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


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


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def source_commit(objects: list[dict[str, Any]]) -> str:
    """Return a short content hash standing in for the source revision."""
    digest = sha256(json.dumps(objects, sort_keys=True, default=str).encode()).hexdigest()
    return digest[:12]


def read_sync_object(client: ClusterClient, config: ReconcilerConfig) -> dict[str, Any] | None:
    """Fetch the sync object that owns this reconciler, or None if it is unavailable."""
    identity = sync_identity(config.scope, config.sync_name)
    gvk = GroupVersionKind(group=identity.group, version=SYNC_API_VERSION, kind=identity.kind)
    try:
        return client.get(gvk, identity.namespace, identity.name)
    except TypeNotServedError:
        return None
    except ApiException as exc:
        LOGGER.warning("Failed to read sync object %s (status=%s)", identity, exc.status)
        return None


def run_sync_loop(
    config: ReconcilerConfig,
    client: ClusterClient,
    updater: Updater,
    finalizer: Finalizer,
    shutdown_event: threading.Event,
) -> None:
    """Run apply passes every ``sync_period_seconds`` until shutdown.

    A sync object marked for deletion switches the loop to finalization and
    no further apply passes run, including after the sync object is gone.
    Only a sync object that reappears without a deletion mark resumes them.
    """
    finalizing = False
    while not shutdown_event.is_set():
        sync_obj = read_sync_object(client, config)
        if sync_obj is not None and finalizer.reconcile(shutdown_event, sync_obj):
            finalizing = True
            shutdown_event.wait(timeout=config.sync_period_seconds)
            continue
        if finalizing:
            if sync_obj is None:
                LOGGER.debug("Sync object finalized; not applying")
                shutdown_event.wait(timeout=config.sync_period_seconds)
                continue
            LOGGER.info("Sync object recreated; resuming apply passes")
            finalizing = False

        try:
            objects = read_manifests(config.source_dir)
        except SourceError:
            LOGGER.exception("Failed to read declared manifests")
            METRICS.pass_errors_total.labels(kind="Source").inc()
            shutdown_event.wait(timeout=config.sync_period_seconds)
            continue

        try:
            updater.update(shutdown_event, objects, source_commit(objects))
        except Exception:
            LOGGER.exception("Sync pass crashed")
            METRICS.pass_errors_total.labels(kind="Crash").inc()
        shutdown_event.wait(timeout=config.sync_period_seconds)


def main() -> None:
    """Reconciler entrypoint: wire the components, then sync until signalled."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    manager = resource_manager(config.scope, config.sync_name)
    client = ClusterClient(build_dynamic_client(), field_manager=manager)

    resources = DeclaredResources()
    conflict_handler = ConflictHandler(manager)
    remediator = Remediator(
        client=client,
        resources=resources,
        conflict_handler=conflict_handler,
        scope=config.scope,
        sync_name=config.sync_name,
        workers=config.remediator_workers,
        label_selector=config.watch_label_selector,
    )
    supervisor = Supervisor(
        client=client,
        engine=KubeApplyEngine(client, conflict_handler),
        scope=config.scope,
        sync_name=config.sync_name,
        conflict_handler=conflict_handler,
        reconcile_timeout_seconds=config.reconcile_timeout_seconds,
        remediator=remediator,
    )
    updater = Updater(resources, supervisor, remediator)
    finalizer = Finalizer(
        client,
        supervisor,
        remediator,
        default_policy=config.deletion_propagation_policy,
    )

    health_server = start_health_server(
        ready=updater.ready, port=config.health_port, status_provider=updater.status
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    remediator.start(shutdown_event)
    try:
        run_sync_loop(config, client, updater, finalizer, shutdown_event)
    finally:
        remediator.stop()
        health_server.shutdown()
        LOGGER.info("Reconciler stopped")


if __name__ == "__main__":
    main()
