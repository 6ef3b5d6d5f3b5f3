from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from logctl.src.profiles import (
    DEFAULT_ANNOTATION_KEY,
    DEFAULT_BASE_URL,
    DEFAULT_ENV_NAME,
    LogProfiles,
    build_profiles,
)


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:            Namespace to watch; empty means all namespaces.
        workers:              Number of worker threads draining the queue.
        lookup_retry_limit:   Requeues allowed for cache lookup errors.
        mutation_retry_limit: Requeues allowed for failed Deployment updates.
        retry_base_delay:     First per-key backoff delay in seconds.
        retry_max_delay:      Cap on the per-key backoff delay in seconds.
        resync_seconds:       Period for re-delivering every cached object; 0 disables.
        health_port:          Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        kube_context:         kubeconfig context used outside a cluster; None means current.
        profiles:             Annotation value -> ``LOGGING_CONFIG`` table.
    """

    namespace: str = ""
    workers: int = 1
    lookup_retry_limit: int = 5
    mutation_retry_limit: int = 3
    retry_base_delay: float = 0.005
    retry_max_delay: float = 1000.0
    resync_seconds: int = 0
    health_port: int = 8080
    kube_context: str | None = None
    profiles: LogProfiles = field(default_factory=build_profiles)


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


def env_float(values: Mapping[str, str], name: str, default: float, *, minimum: float) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``          : namespace to watch (empty: all namespaces).
        ``WORKERS``                  : worker threads (``1``).
        ``LOOKUP_RETRY_LIMIT``       : cache lookup requeues (``5``).
        ``MUTATION_RETRY_LIMIT``     : update requeues (``3``).
        ``RETRY_BASE_DELAY_SECONDS`` : first backoff delay (``0.005``).
        ``RETRY_MAX_DELAY_SECONDS``  : backoff cap (``1000``).
        ``RESYNC_SECONDS``           : periodic resync, ``0`` disables (``0``).
        ``HEALTH_PORT``              : probe/metrics port (``8080``).
        ``KUBE_CONTEXT``             : kubeconfig context when running outside a cluster.
        ``LOG_LEVEL_ANNOTATION``     : opt-in annotation key.
        ``LOGGING_CONFIG_ENV_NAME``  : injected variable name (``LOGGING_CONFIG``).
        ``LOGGING_CONFIG_BASE_URL``  : config server URL holding the log4j2 files.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip()

    retry_base_delay = env_float(values, "RETRY_BASE_DELAY_SECONDS", 0.005, minimum=0.0)
    retry_max_delay = env_float(values, "RETRY_MAX_DELAY_SECONDS", 1000.0, minimum=0.0)
    if retry_max_delay < retry_base_delay:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS, "
            f"got: {retry_max_delay} < {retry_base_delay}"
        )

    annotation_key = values.get("LOG_LEVEL_ANNOTATION", DEFAULT_ANNOTATION_KEY).strip()
    if not annotation_key:
        raise ConfigError("LOG_LEVEL_ANNOTATION must be a non-empty string")

    env_name = values.get("LOGGING_CONFIG_ENV_NAME", DEFAULT_ENV_NAME).strip()
    if not env_name:
        raise ConfigError("LOGGING_CONFIG_ENV_NAME must be a non-empty string")

    base_url = values.get("LOGGING_CONFIG_BASE_URL", DEFAULT_BASE_URL).strip()
    if not base_url:
        raise ConfigError("LOGGING_CONFIG_BASE_URL must be a non-empty string")

    return ControllerConfig(
        namespace=namespace,
        workers=env_int(values, "WORKERS", 1, minimum=1),
        lookup_retry_limit=env_int(values, "LOOKUP_RETRY_LIMIT", 5, minimum=0),
        mutation_retry_limit=env_int(values, "MUTATION_RETRY_LIMIT", 3, minimum=0),
        retry_base_delay=retry_base_delay,
        retry_max_delay=retry_max_delay,
        resync_seconds=env_int(values, "RESYNC_SECONDS", 0, minimum=0),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        kube_context=values.get("KUBE_CONTEXT", "").strip() or None,
        profiles=build_profiles(
            base_url=base_url,
            annotation_key=annotation_key,
            env_name=env_name,
        ),
    )
