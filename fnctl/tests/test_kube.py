from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

from kubernetes.config.config_exception import ConfigException

from fnctl.src.kube import KubeClients, build_clients, load_kube_configuration


def test_load_kube_configuration_prefers_in_cluster() -> None:
    with (
        patch("fnctl.src.kube.config.load_incluster_config") as mock_incluster,
        patch("fnctl.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_falls_back_to_local_kubeconfig() -> None:
    with (
        patch(
            "fnctl.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("fnctl.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once_with()


def test_load_kube_configuration_with_explicit_path_skips_in_cluster() -> None:
    with (
        patch("fnctl.src.kube.config.load_incluster_config") as mock_incluster,
        patch("fnctl.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration("/tmp/kubeconfig")

    mock_incluster.assert_not_called()
    mock_kubeconfig.assert_called_once_with(config_file="/tmp/kubeconfig")


def test_build_clients_returns_every_api() -> None:
    with patch("fnctl.src.kube.client") as mock_client:
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AutoscalingV1Api.return_value = SimpleNamespace(name="autoscaling")
        mock_client.ApiextensionsV1Api.return_value = SimpleNamespace(name="apiextensions")
        clients = build_clients()

    assert isinstance(clients, KubeClients)
    assert clients.custom_api.name == "custom"
    assert clients.apps_api.name == "apps"
    assert clients.core_api.name == "core"
    assert clients.autoscaling_api.name == "autoscaling"
    assert clients.apiextensions_api.name == "apiextensions"
