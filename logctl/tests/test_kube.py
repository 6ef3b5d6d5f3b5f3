from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from kubernetes.config.config_exception import ConfigException

from logctl.src.kube import build_apps_api, load_kube_configuration, replace_deployment


def test_in_cluster_configuration_wins_when_available() -> None:
    with (
        patch("logctl.src.kube.config.load_incluster_config") as mock_incluster,
        patch("logctl.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        source = load_kube_configuration()

    assert source == "in-cluster"
    mock_incluster.assert_called_once_with()
    mock_kubeconfig.assert_not_called()


def test_kubeconfig_fallback_honours_context() -> None:
    with (
        patch(
            "logctl.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("logctl.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        source = load_kube_configuration(context="kind-dev")

    assert source == "kubeconfig"
    mock_kubeconfig.assert_called_once_with(context="kind-dev")


def test_build_apps_api_passes_explicit_client_through() -> None:
    api_client = object()
    with patch("logctl.src.kube.client") as mock_client:
        mock_client.AppsV1Api.return_value = SimpleNamespace(kind="apps")
        apps = build_apps_api(api_client)  # type: ignore[arg-type]

    assert apps.kind == "apps"
    mock_client.AppsV1Api.assert_called_once_with(api_client)


def test_replace_deployment_uses_the_objects_own_namespace() -> None:
    apps_api = MagicMock()
    deployment = SimpleNamespace(metadata=SimpleNamespace(name="checkout", namespace="shop"))

    replace_deployment(apps_api, deployment)

    apps_api.replace_namespaced_deployment.assert_called_once_with(
        name="checkout",
        namespace="shop",
        body=deployment,
    )
