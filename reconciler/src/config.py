from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from reconciler.src.core import ROOT_SCOPE
from reconciler.src.metadata import DeletionPropagationPolicy

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(RuntimeError):
    """Raised when the reconciler's environment configuration is invalid."""


@dataclass(frozen=True)
class ReconcilerConfig:
    """Startup configuration for one reconciler process.

    ``scope`` is ``:root`` for the cluster-wide reconciler, otherwise the
    namespace a namespace reconciler is confined to.
    """

    scope: str
    sync_name: str
    source_dir: str
    sync_period_seconds: int = 15
    reconcile_timeout_seconds: int = 300
    remediator_workers: int = 4
    watch_label_selector: str | None = None
    health_port: int = 8080
    deletion_propagation_policy: DeletionPropagationPolicy = DeletionPropagationPolicy.FOREGROUND
    log_level: str = "INFO"

    @property
    def is_root(self) -> bool:
        return self.scope == ROOT_SCOPE


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
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


def load_config(env: Mapping[str, str] | None = None) -> ReconcilerConfig:
    """Build a :class:`ReconcilerConfig` from environment variables.

    Environment variables (with defaults):
        ``SYNC_SCOPE``: ``:root`` or a namespace name (``:root``).
        ``SYNC_NAME``: name of the sync object (required).
        ``SOURCE_DIR``: directory of rendered manifests (required).
        ``SYNC_PERIOD_SECONDS``: seconds between apply passes (``15``).
        ``RECONCILE_TIMEOUT_SECONDS``: per-pass readiness wait, 0 disables (``300``).
        ``REMEDIATOR_WORKERS``: drift-correction worker threads (``4``).
        ``WATCH_LABEL_SELECTOR``: optional selector narrowing remediator watches.
        ``HEALTH_PORT``: health/metrics port (``8080``).
        ``DELETION_PROPAGATION_POLICY``: ``Foreground`` or ``Orphan`` (``Foreground``).
        ``LOG_LEVEL``: root log level (``INFO``).
    """
    source = os.environ if env is None else env

    scope = source.get("SYNC_SCOPE", ROOT_SCOPE).strip()
    if not scope:
        raise ConfigError("SYNC_SCOPE must be ':root' or a namespace name")
    if scope != ROOT_SCOPE and (scope.startswith(":") or "_" in scope):
        raise ConfigError(f"SYNC_SCOPE must be ':root' or a namespace name, got: {scope!r}")

    sync_name = source.get("SYNC_NAME", "").strip()
    if not sync_name:
        raise ConfigError("SYNC_NAME must be a non-empty string")
    if "_" in sync_name:
        raise ConfigError(f"SYNC_NAME must not contain '_', got: {sync_name!r}")

    source_dir = source.get("SOURCE_DIR", "").strip()
    if not source_dir:
        raise ConfigError("SOURCE_DIR must be a non-empty path")

    raw_policy = source.get(
        "DELETION_PROPAGATION_POLICY", DeletionPropagationPolicy.FOREGROUND.value
    ).strip()
    try:
        policy = DeletionPropagationPolicy(raw_policy)
    except ValueError as exc:
        allowed = ", ".join(p.value for p in DeletionPropagationPolicy)
        raise ConfigError(
            f"DELETION_PROPAGATION_POLICY must be one of {allowed}, got: {raw_policy!r}"
        ) from exc

    log_level = source.get("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got: {log_level!r}")

    selector = source.get("WATCH_LABEL_SELECTOR", "").strip() or None

    return ReconcilerConfig(
        scope=scope,
        sync_name=sync_name,
        source_dir=source_dir,
        sync_period_seconds=env_int(source, "SYNC_PERIOD_SECONDS", 15, minimum=1),
        reconcile_timeout_seconds=env_int(source, "RECONCILE_TIMEOUT_SECONDS", 300, minimum=0),
        remediator_workers=env_int(source, "REMEDIATOR_WORKERS", 4, minimum=1, maximum=64),
        watch_label_selector=selector,
        health_port=env_int(source, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        deletion_propagation_policy=policy,
        log_level=log_level,
    )
