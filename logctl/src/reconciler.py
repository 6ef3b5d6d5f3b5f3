from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import AppsV1Api, V1EnvVar

from logctl.src.kube import replace_deployment
from logctl.src.profiles import LogProfiles


class UnsupportedLogLevelError(ValueError):
    """Raised when the log-level annotation holds a value with no profile.

    This is a permanent failure: retrying cannot help until someone edits
    the annotation, which produces a fresh watch event anyway.
    """

    def __init__(self, log_level: str, supported: list[str]) -> None:
        super().__init__(
            f"LogLevel {log_level!r} not supported (expected one of: {', '.join(supported)})"
        )
        self.log_level = log_level


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of a single reconciliation."""

    namespace: str
    name: str
    log_level: str | None
    updated: bool


def _containers(deployment: Any) -> list[Any]:
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)
    return list(getattr(pod_spec, "containers", None) or [])


def set_env_var(container: Any, name: str, value: str) -> None:
    """Overwrite the env entry called *name* on *container*, or append it.

    Extra entries with the same name are dropped so the container ends up
    with exactly one.
    """
    env = list(container.env or [])
    kept: list[Any] = []
    found = False
    for entry in env:
        if entry.name != name:
            kept.append(entry)
            continue
        if found:
            continue
        entry.value = value
        entry.value_from = None
        kept.append(entry)
        found = True

    if not found:
        kept.append(V1EnvVar(name=name, value=value))
    container.env = kept


class LogLevelReconciler:
    """Injects the logging configuration selected by a Deployment's annotation.

    The reconciler is pure with respect to the work queue and cache: it
    never retries, it only returns a result or raises.  The cached object is
    never mutated; all changes are made on a deep copy.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        profiles: LogProfiles,
        logger: logging.Logger | None = None,
        update_fn: Callable[[AppsV1Api, Any], Any] = replace_deployment,
    ) -> None:
        self.apps_api = apps_api
        self.profiles = profiles
        self.logger = logger or logging.getLogger(__name__)
        self.update_fn = update_fn

    def reconcile(self, deployment: Any) -> ReconcileResult:
        metadata = deployment.metadata
        namespace = metadata.namespace or ""
        name = metadata.name
        annotations = metadata.annotations or {}

        log_level = annotations.get(self.profiles.annotation_key)
        if log_level is None:
            self.logger.debug(
                "Skipping Deployment %s/%s: annotation %s not found",
                namespace,
                name,
                self.profiles.annotation_key,
            )
            return ReconcileResult(namespace=namespace, name=name, log_level=None, updated=False)

        value = self.profiles.resolve(log_level)
        if value is None:
            raise UnsupportedLogLevelError(log_level, self.profiles.supported_levels)

        desired = copy.deepcopy(deployment)
        for container in _containers(desired):
            set_env_var(container, self.profiles.env_name, value)

        self.logger.info(
            "Setting LogLevel to %s on Deployment %s/%s", log_level, namespace, name
        )
        self.update_fn(self.apps_api, desired)
        return ReconcileResult(namespace=namespace, name=name, log_level=log_level, updated=True)
