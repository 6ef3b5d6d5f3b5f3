from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, AppsV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(context: str | None = None) -> str:
    """Configure the default client and return where the configuration came from.

    Inside a pod the service account token is used. Outside one, the local
    kubeconfig is read, optionally pinned to *context*.
    """
    try:
        config.load_incluster_config()
    except ConfigException:
        config.load_kube_config(context=context)
        LOGGER.info("Using kubeconfig (context=%s)", context or "current")
        return "kubeconfig"
    LOGGER.info("Using in-cluster service account configuration")
    return "in-cluster"


def build_apps_api(api_client: ApiClient | None = None) -> AppsV1Api:
    return client.AppsV1Api(api_client)


def replace_deployment(apps_api: AppsV1Api, deployment: Any) -> Any:
    """PUT *deployment* back to its own namespace.

    The body carries the ``resourceVersion`` that was read, so a concurrent
    writer turns this into ``409 Conflict`` rather than a lost update.
    """
    return apps_api.replace_namespaced_deployment(
        name=deployment.metadata.name,
        namespace=deployment.metadata.namespace,
        body=deployment,
    )
