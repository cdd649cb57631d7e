from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from clustermanager.src.certrotation import RotationConfig
from clustermanager.src.resolver import DEFAULT_HUB_NAMESPACE


class ConfigError(RuntimeError):
    """Raised when operator environment configuration is invalid."""


@dataclass(frozen=True)
class OperatorSettings:
    operator_namespace: str
    hub_namespace: str
    agent_image: str
    sync_labels: bool
    resync_seconds: int
    request_timeout_seconds: int
    reconcile_workers: int
    rotation: RotationConfig
    health_port: int
    log_level: str


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    source = os.environ if env is None else env
    raw = source.get(name)
    if raw is None:
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


def env_bool(name: str, default: bool, env: Mapping[str, str] | None = None) -> bool:
    source = os.environ if env is None else env
    raw = source.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_name(name: str, default: str, env: Mapping[str, str]) -> str:
    value = env.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> OperatorSettings:
    """Build :class:`OperatorSettings` from environment variables.

    Environment variables (with defaults):
        ``OPERATOR_NAMESPACE`` - namespace holding source secrets (``open-cluster-management``).
        ``HUB_NAMESPACE`` - hub namespace in Default mode (``open-cluster-management-hub``).
        ``AGENT_IMAGE`` - image passed to the registration controller for cluster import.
        ``ENABLE_SYNC_LABELS`` - copy ClusterManager labels onto managed objects (``true``).
        ``RESYNC_SECONDS`` - periodic full resync (``60``).
        ``REQUEST_TIMEOUT_SECONDS`` - bound on each API request (``30``).
        ``RECONCILE_WORKERS`` - ClusterManagers reconciled concurrently (``2``).
        ``SIGNING_CERT_VALIDITY_SECONDS`` / ``TARGET_CERT_VALIDITY_SECONDS`` /
        ``CERT_RESYNC_SECONDS`` - certificate rotation windows.
        ``HEALTH_PORT`` - health and metrics port (``8080``).
        ``LOG_LEVEL`` - root log level (``INFO``).
    """
    source: Mapping[str, str] = os.environ if env is None else env

    signing = env_int("SIGNING_CERT_VALIDITY_SECONDS", 365 * 24 * 3600, minimum=2, env=source)
    target = env_int("TARGET_CERT_VALIDITY_SECONDS", 30 * 24 * 3600, minimum=1, env=source)
    cert_resync = env_int("CERT_RESYNC_SECONDS", 600, minimum=1, env=source)
    try:
        rotation = RotationConfig(
            signing_cert_validity=timedelta(seconds=signing),
            target_cert_validity=timedelta(seconds=target),
            resync_interval=timedelta(seconds=cert_resync),
        )
    except ValueError as exc:
        raise ConfigError(
            "TARGET_CERT_VALIDITY_SECONDS must be smaller than SIGNING_CERT_VALIDITY_SECONDS"
        ) from exc

    return OperatorSettings(
        operator_namespace=_env_name("OPERATOR_NAMESPACE", "open-cluster-management", source),
        hub_namespace=_env_name("HUB_NAMESPACE", DEFAULT_HUB_NAMESPACE, source),
        agent_image=source.get("AGENT_IMAGE", "").strip(),
        sync_labels=env_bool("ENABLE_SYNC_LABELS", True, env=source),
        resync_seconds=env_int("RESYNC_SECONDS", 60, minimum=1, env=source),
        request_timeout_seconds=env_int("REQUEST_TIMEOUT_SECONDS", 30, minimum=1, env=source),
        reconcile_workers=env_int("RECONCILE_WORKERS", 2, minimum=1, maximum=32, env=source),
        rotation=rotation,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=source),
        log_level=source.get("LOG_LEVEL", "INFO").upper(),
    )
